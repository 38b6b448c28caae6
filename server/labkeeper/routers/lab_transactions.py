from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session

from labkeeper.auth import Identity, require_lab_staff, require_staff
from labkeeper.catalog.schemas import LabItemResponse, LabResponse
from labkeeper.catalog.service import list_other_labs, list_transferable_items
from labkeeper.db import get_db, run_in_transaction
from labkeeper.errors import LabkeeperError, to_http_exception
from labkeeper.notifications.service import decision_notice, dispatch_notification
from labkeeper.transactions import schemas
from labkeeper.transactions.service import (
    activate,
    complete_return,
    create_lab_session,
    create_transfer,
    decide_transfer,
    get_timeline,
    get_transaction,
    initiate_return,
    list_overdue,
    list_transactions,
    list_transfers,
)


router = APIRouter(prefix="/api/lab", tags=["lab-transactions"])


@router.get("/transactions", response_model=List[schemas.TransactionResponse])
def search_transactions(
    status_filter: Optional[schemas.TransactionStatus] = Query(None, alias="status"),
    transaction_type: Optional[schemas.TransactionType] = None,
    transaction_id: Optional[str] = None,
    student_reg_no: Optional[str] = None,
    faculty_email: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_staff),
):
    return list_transactions(
        db,
        identity,
        status=status_filter,
        transaction_type=transaction_type,
        transaction_id=transaction_id,
        student_reg_no=student_reg_no,
        faculty_email=faculty_email,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
        offset=offset,
    )


@router.get("/transactions/{transaction_id}", response_model=schemas.TransactionDetailResponse)
def get_lab_transaction(transaction_id: str, db: Session = Depends(get_db), identity: Identity = Depends(require_staff)):
    try:
        transaction = get_transaction(db, identity, transaction_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    return schemas.build_detail_response(transaction, get_timeline(db, transaction))


@router.post("/transactions/{transaction_id}/issue", response_model=schemas.TransactionResponse)
def issue_transaction(
    transaction_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_staff),
):
    try:
        transaction = run_in_transaction(db, activate, identity, transaction_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    background_tasks.add_task(dispatch_notification, decision_notice(transaction))
    return transaction


@router.post("/transactions/{transaction_id}/complete-return", response_model=schemas.TransactionResponse)
def complete_transaction_return(
    transaction_id: str,
    payload: schemas.CompleteReturnRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_staff),
):
    try:
        return run_in_transaction(
            db,
            complete_return,
            identity,
            transaction_id,
            damages=[damage.model_dump() for damage in payload.damages],
            damage_notes=payload.damage_notes,
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.get("/overdue", response_model=List[schemas.TransactionResponse])
def list_overdue_transactions(db: Session = Depends(get_db), identity: Identity = Depends(require_staff)):
    return list_overdue(db, identity)


@router.get("/sessions", response_model=List[schemas.TransactionResponse])
def list_lab_sessions(db: Session = Depends(get_db), identity: Identity = Depends(require_lab_staff)):
    return list_transactions(db, identity, transaction_type="lab_session")


@router.post("/sessions", response_model=schemas.TransactionResponse, status_code=status.HTTP_201_CREATED)
def issue_lab_session(
    payload: schemas.LabSessionCreate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_lab_staff),
):
    try:
        return run_in_transaction(
            db,
            create_lab_session,
            identity,
            student_reg_no=payload.student_reg_no,
            items=[line.model_dump() for line in payload.items],
            project_name=payload.project_name,
            expected_return_date=payload.expected_return_date,
            lab_slot=payload.lab_slot,
            faculty_email=payload.faculty_email,
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.get("/labs", response_model=List[LabResponse])
def list_labs(db: Session = Depends(get_db), identity: Identity = Depends(require_lab_staff)):
    return list_other_labs(db, identity)


@router.get("/labs/{lab_id}/items", response_model=List[LabItemResponse])
def list_lab_transferable_items(lab_id: int, db: Session = Depends(get_db), identity: Identity = Depends(require_lab_staff)):
    try:
        return list_transferable_items(db, lab_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.post("/transfers", response_model=schemas.TransactionResponse, status_code=status.HTTP_201_CREATED)
def request_transfer(payload: schemas.TransferCreate, db: Session = Depends(get_db), identity: Identity = Depends(require_lab_staff)):
    try:
        return run_in_transaction(
            db,
            create_transfer,
            identity,
            source_lab_id=payload.source_lab_id,
            items=[line.model_dump() for line in payload.items],
            transfer_type=payload.transfer_type,
            project_name=payload.project_name,
            expected_return_date=payload.expected_return_date,
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.get("/transfers", response_model=List[schemas.TransactionResponse])
def list_lab_transfers(
    direction: Literal["incoming", "outgoing"] = "incoming",
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_lab_staff),
):
    try:
        return list_transfers(db, identity, direction=direction)
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.post("/transfers/{transaction_id}/decision", response_model=schemas.TransactionResponse)
def decide_lab_transfer(
    transaction_id: str,
    payload: schemas.DecisionRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_staff),
):
    try:
        return run_in_transaction(
            db,
            decide_transfer,
            identity,
            transaction_id,
            decision=payload.decision,
            reason=payload.reason,
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.post("/transfers/{transaction_id}/initiate-return", response_model=schemas.TransactionResponse)
def initiate_transfer_return(transaction_id: str, db: Session = Depends(get_db), identity: Identity = Depends(require_staff)):
    try:
        return run_in_transaction(db, initiate_return, identity, transaction_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.post("/transfers/{transaction_id}/complete-return", response_model=schemas.TransactionResponse)
def complete_transfer_return(
    transaction_id: str,
    payload: schemas.CompleteReturnRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_staff),
):
    try:
        return run_in_transaction(
            db,
            complete_return,
            identity,
            transaction_id,
            damages=[damage.model_dump() for damage in payload.damages],
            damage_notes=payload.damage_notes,
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)
