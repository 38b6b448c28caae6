import logging
from typing import Optional

from sqlalchemy.orm import Session

from labkeeper.auth import Identity
from labkeeper.errors import ConflictError, NotFoundError, ValidationError
from labkeeper.models import ComponentRequest, Lab, User


logger = logging.getLogger(__name__)

URGENCY_LEVELS = ("low", "medium", "high")
STAFF_DECISIONS = ("reviewed", "approved", "rejected")
FINAL_STATUSES = ("approved", "rejected")


def create_component_request(
    db: Session,
    identity: Identity,
    *,
    lab_id: int,
    component_name: str,
    quantity_requested: int,
    use_case: str,
    category: Optional[str] = None,
    urgency: str = "medium",
) -> ComponentRequest:
    if not component_name or not component_name.strip():
        raise ValidationError("Component name is required.")
    if not use_case or not use_case.strip():
        raise ValidationError("Use case is required.")
    if quantity_requested is None or quantity_requested < 1:
        raise ValidationError("Quantity must be at least 1.")
    if urgency not in URGENCY_LEVELS:
        raise ValidationError("Urgency must be low, medium or high.")

    lab = db.query(Lab).filter(Lab.id == lab_id, Lab.is_active.is_(True)).first()
    if not lab:
        raise NotFoundError("Lab not found.")
    student = db.query(User).filter(User.id == identity.user_id).first()
    if not student:
        raise NotFoundError("Student not found.")

    request = ComponentRequest(
        lab_id=lab.id,
        lab_name_snapshot=lab.name,
        student_id=student.id,
        student_reg_no=student.reg_no or "",
        student_email=student.email,
        component_name=component_name.strip(),
        category=category,
        quantity_requested=quantity_requested,
        use_case=use_case.strip(),
        urgency=urgency,
        status="pending",
    )
    db.add(request)
    db.flush()
    logger.info("Component request %s for '%s' filed with lab_id=%s", request.id, request.component_name, lab.id)
    return request


def list_my_component_requests(db: Session, identity: Identity) -> list[ComponentRequest]:
    return (
        db.query(ComponentRequest)
        .filter(ComponentRequest.student_id == identity.user_id)
        .order_by(ComponentRequest.created_at.desc(), ComponentRequest.id.desc())
        .all()
    )


def list_lab_component_requests(
    db: Session,
    identity: Identity,
    *,
    status: Optional[str] = None,
    urgency: Optional[str] = None,
    category: Optional[str] = None,
    student_reg_no: Optional[str] = None,
    component_name: Optional[str] = None,
) -> list[ComponentRequest]:
    query = db.query(ComponentRequest).filter(ComponentRequest.lab_id == identity.lab_id)
    if status:
        query = query.filter(ComponentRequest.status == status)
    if urgency:
        query = query.filter(ComponentRequest.urgency == urgency)
    if category:
        query = query.filter(ComponentRequest.category == category)
    if student_reg_no:
        query = query.filter(ComponentRequest.student_reg_no == student_reg_no)
    if component_name:
        query = query.filter(ComponentRequest.component_name.ilike(f"%{component_name.strip()}%"))
    return query.order_by(ComponentRequest.created_at.desc(), ComponentRequest.id.desc()).all()


def get_lab_component_request(db: Session, identity: Identity, request_id: int, *, lock: bool = False) -> ComponentRequest:
    query = db.query(ComponentRequest).filter(
        ComponentRequest.id == request_id,
        ComponentRequest.lab_id == identity.lab_id,
    )
    if lock:
        query = query.with_for_update()
    request = query.first()
    if not request:
        raise NotFoundError("Component request not found.")
    return request


def update_component_request_status(
    db: Session,
    identity: Identity,
    request_id: int,
    *,
    status: str,
    admin_remarks: Optional[str] = None,
) -> ComponentRequest:
    if status not in STAFF_DECISIONS:
        raise ValidationError("Invalid status.")
    request = get_lab_component_request(db, identity, request_id, lock=True)
    if request.status in FINAL_STATUSES:
        raise ConflictError("Request already finalized.")
    request.status = status
    request.admin_remarks = admin_remarks or None
    logger.info("Component request %s marked %s by user_id=%s", request.id, status, identity.user_id)
    return request
