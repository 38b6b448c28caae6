from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from labkeeper.auth import Identity, require_lab_staff, require_roles
from labkeeper.component_requests import schemas
from labkeeper.component_requests.service import (
    create_component_request,
    get_lab_component_request,
    list_lab_component_requests,
    list_my_component_requests,
    update_component_request_status,
)
from labkeeper.db import get_db, run_in_transaction
from labkeeper.errors import LabkeeperError, to_http_exception


router = APIRouter(tags=["component-requests"])

require_student = require_roles("student")


@router.post(
    "/api/student/component-requests",
    response_model=schemas.ComponentRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
def file_component_request(
    payload: schemas.ComponentRequestCreate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_student),
):
    try:
        return run_in_transaction(db, create_component_request, identity, **payload.model_dump())
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.get("/api/student/component-requests", response_model=List[schemas.ComponentRequestResponse])
def list_my_requests(db: Session = Depends(get_db), identity: Identity = Depends(require_student)):
    return list_my_component_requests(db, identity)


@router.get("/api/lab/component-requests", response_model=List[schemas.ComponentRequestResponse])
def list_lab_requests(
    status_filter: Optional[schemas.ComponentRequestStatus] = Query(None, alias="status"),
    urgency: Optional[schemas.Urgency] = None,
    category: Optional[str] = None,
    student_reg_no: Optional[str] = None,
    component_name: Optional[str] = None,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_lab_staff),
):
    return list_lab_component_requests(
        db,
        identity,
        status=status_filter,
        urgency=urgency,
        category=category,
        student_reg_no=student_reg_no,
        component_name=component_name,
    )


@router.get("/api/lab/component-requests/{request_id}", response_model=schemas.ComponentRequestResponse)
def get_lab_request(request_id: int, db: Session = Depends(get_db), identity: Identity = Depends(require_lab_staff)):
    try:
        return get_lab_component_request(db, identity, request_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.patch("/api/lab/component-requests/{request_id}", response_model=schemas.ComponentRequestResponse)
def update_lab_request(
    request_id: int,
    payload: schemas.ComponentRequestStatusUpdate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_lab_staff),
):
    try:
        return run_in_transaction(
            db,
            update_component_request_status,
            identity,
            request_id,
            status=payload.status,
            admin_remarks=payload.admin_remarks,
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)
