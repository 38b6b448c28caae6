from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session

from labkeeper.auth import Identity, require_roles
from labkeeper.catalog import schemas as catalog_schemas
from labkeeper.catalog.service import list_item_labs, list_student_catalog
from labkeeper.db import get_db, run_in_transaction
from labkeeper.errors import LabkeeperError, to_http_exception
from labkeeper.inventory.schemas import LabAvailabilityResponse
from labkeeper.notifications.service import approval_request, dispatch_notification
from labkeeper.transactions import schemas
from labkeeper.transactions.service import extend_return, get_timeline, get_transaction, list_transactions, raise_request


router = APIRouter(prefix="/api/student", tags=["student"])

require_student = require_roles("student")


@router.get("/items", response_model=List[catalog_schemas.CatalogItemResponse])
def list_items(
    search: Optional[str] = None,
    category: Optional[str] = None,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_student),
):
    return list_student_catalog(db, search=search, category=category)


@router.get("/items/{item_id}/labs", response_model=List[LabAvailabilityResponse])
def list_labs_for_item(item_id: int, db: Session = Depends(get_db), identity: Identity = Depends(require_student)):
    try:
        return list_item_labs(db, item_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.post("/transactions", response_model=schemas.TransactionResponse, status_code=status.HTTP_201_CREATED)
def raise_transaction(
    payload: schemas.TransactionCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_student),
):
    try:
        transaction = run_in_transaction(
            db,
            raise_request,
            student_id=identity.user_id,
            items=[line.model_dump() for line in payload.items],
            faculty_email=payload.faculty_email,
            faculty_id=payload.faculty_id,
            expected_return_date=payload.expected_return_date,
            project_name=payload.project_name,
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    background_tasks.add_task(dispatch_notification, approval_request(transaction))
    return transaction


@router.get("/transactions", response_model=List[schemas.TransactionResponse])
def list_my_transactions(
    status_filter: Optional[schemas.TransactionStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_student),
):
    return list_transactions(db, identity, status=status_filter)


@router.get("/transactions/{transaction_id}", response_model=schemas.TransactionDetailResponse)
def get_my_transaction(transaction_id: str, db: Session = Depends(get_db), identity: Identity = Depends(require_student)):
    try:
        transaction = get_transaction(db, identity, transaction_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    return schemas.build_detail_response(transaction, get_timeline(db, transaction))


@router.post("/transactions/{transaction_id}/extend", response_model=schemas.TransactionResponse)
def extend_my_transaction(
    transaction_id: str,
    payload: schemas.ExtendReturnRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_student),
):
    try:
        return run_in_transaction(db, extend_return, identity, transaction_id, payload.new_return_date)
    except LabkeeperError as exc:
        raise to_http_exception(exc)
