from typing import List, Literal

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from labkeeper.approvals.service import approve_by_token, get_transaction_by_token, reject_by_token
from labkeeper.auth import Identity, require_roles
from labkeeper.db import get_db, run_in_transaction
from labkeeper.errors import LabkeeperError, to_http_exception
from labkeeper.notifications.service import decision_notice, dispatch_notification
from labkeeper.transactions import schemas
from labkeeper.transactions.service import decide, get_timeline, get_transaction, list_faculty_transactions


router = APIRouter(prefix="/api/faculty", tags=["faculty"])

require_faculty = require_roles("faculty")


@router.get("/approval", response_model=schemas.TransactionResponse)
def preview_approval(token: str = Query(...), db: Session = Depends(get_db)):
    try:
        return get_transaction_by_token(db, token)
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.post("/approval/approve", response_model=schemas.TransactionResponse)
def approve_with_token(background_tasks: BackgroundTasks, token: str = Query(...), db: Session = Depends(get_db)):
    try:
        transaction = run_in_transaction(db, approve_by_token, token)
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    background_tasks.add_task(dispatch_notification, decision_notice(transaction))
    return transaction


@router.post("/approval/reject", response_model=schemas.TransactionResponse)
def reject_with_token(
    payload: schemas.RejectRequest,
    background_tasks: BackgroundTasks,
    token: str = Query(...),
    db: Session = Depends(get_db),
):
    try:
        transaction = run_in_transaction(db, reject_by_token, token, reason=payload.reason)
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    background_tasks.add_task(dispatch_notification, decision_notice(transaction))
    return transaction


@router.get("/transactions", response_model=List[schemas.TransactionResponse])
def list_dashboard_transactions(
    bucket: Literal["all", "pending", "history"] = "all",
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_faculty),
):
    return list_faculty_transactions(db, identity, bucket=bucket)


@router.get("/transactions/{transaction_id}", response_model=schemas.TransactionDetailResponse)
def get_dashboard_transaction(transaction_id: str, db: Session = Depends(get_db), identity: Identity = Depends(require_faculty)):
    try:
        transaction = get_transaction(db, identity, transaction_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    return schemas.build_detail_response(transaction, get_timeline(db, transaction))


@router.post("/transactions/{transaction_id}/decision", response_model=schemas.TransactionResponse)
def decide_dashboard_transaction(
    transaction_id: str,
    payload: schemas.DecisionRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_faculty),
):
    try:
        transaction = run_in_transaction(
            db,
            decide,
            identity,
            transaction_id,
            decision=payload.decision,
            reason=payload.reason,
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    background_tasks.add_task(dispatch_notification, decision_notice(transaction))
    return transaction
