from datetime import datetime, timedelta
import logging
import secrets
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from labkeeper.approvals.tokens import generate_approval_token
from labkeeper.assets import service as asset_service
from labkeeper.auth import Identity
from labkeeper.config import settings
from labkeeper.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from labkeeper.inventory import service as inventory_service
from labkeeper.models import AuditEvent, Item, Lab, Transaction, TransactionItem, User
from labkeeper.utils.dates import add_months, as_naive_utc


logger = logging.getLogger(__name__)

TRANSACTION_ID_PREFIXES = {
    "regular": "TXN",
    "lab_session": "LS",
    "lab_transfer": "TR",
}
ONE_ACTIVE_STATUSES = ("raised", "approved", "active", "overdue")
OPEN_STATUSES = ("raised", "approved", "active", "overdue", "return_requested")
DECIDABLE_STATUSES = ("raised", "approved")
RETURNABLE_STATUSES = ("active", "overdue")
TERMINAL_STATUSES = ("completed", "rejected")
ENTITY_TYPE = "transaction"


def generate_transaction_id(transaction_type: str) -> str:
    prefix = TRANSACTION_ID_PREFIXES[transaction_type]
    return f"{prefix}-{datetime.utcnow():%Y%m%d}-{secrets.token_hex(4).upper()}"


def record_status_transition(
    db: Session,
    *,
    transaction: Transaction,
    from_status: Optional[str],
    to_status: str,
    user_id: Optional[int] = None,
) -> None:
    db.add(
        AuditEvent(
            user_id=user_id,
            entity_type=ENTITY_TYPE,
            entity_id=transaction.transaction_id,
            action="STATUS_TRANSITION",
            event_metadata=f"{from_status or 'new'}->{to_status}",
            created_at=datetime.utcnow(),
        )
    )


def _set_status(db: Session, transaction: Transaction, to_status: str, *, user_id: Optional[int] = None) -> None:
    from_status = transaction.status
    transaction.status = to_status
    record_status_transition(db, transaction=transaction, from_status=from_status, to_status=to_status, user_id=user_id)
    logger.info("Transaction %s moved %s -> %s", transaction.transaction_id, from_status, to_status)


def get_timeline(db: Session, transaction: Transaction) -> list[AuditEvent]:
    return (
        db.query(AuditEvent)
        .filter(AuditEvent.entity_type == ENTITY_TYPE, AuditEvent.entity_id == transaction.transaction_id)
        .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        .all()
    )


def _involved_lab_ids(transaction: Transaction) -> set[int]:
    lab_ids = {line.lab_id for line in transaction.items}
    lab_ids.update(lab_id for lab_id in (transaction.source_lab_id, transaction.target_lab_id) if lab_id)
    return lab_ids


def is_visible_to(transaction: Transaction, identity: Identity) -> bool:
    if identity.role == "super_admin":
        return True
    if identity.role == "student":
        return transaction.student_id == identity.user_id
    if identity.role == "faculty":
        return bool(identity.email) and (transaction.faculty_email or "").lower() == identity.email.lower()
    if identity.is_staff:
        return identity.lab_id in _involved_lab_ids(transaction)
    return False


def _load(db: Session, transaction_id: str, *, lock: bool = False) -> Optional[Transaction]:
    query = db.query(Transaction).filter(Transaction.transaction_id == transaction_id)
    if lock:
        query = query.with_for_update()
    else:
        query = query.options(selectinload(Transaction.items).selectinload(TransactionItem.assets))
    return query.first()


def get_transaction(db: Session, identity: Identity, transaction_id: str, *, lock: bool = False) -> Transaction:
    """Fetch a transaction the caller may see; anything else is reported as missing."""
    transaction = _load(db, transaction_id, lock=lock)
    if not transaction or not is_visible_to(transaction, identity):
        raise NotFoundError("Transaction not found.")
    return transaction


def _normalize_lines(items: list[dict], *, lab_id: Optional[int] = None) -> list[dict]:
    if not items:
        raise ValidationError("At least one item is required.")
    lines: list[dict] = []
    seen: set[tuple[int, int]] = set()
    for raw in items:
        line_lab_id = lab_id if lab_id is not None else raw.get("lab_id")
        item_id = raw.get("item_id")
        quantity = raw.get("quantity")
        if not line_lab_id or not item_id:
            raise ValidationError("Each item needs a lab and an item.")
        if quantity is None or int(quantity) < 1:
            raise ValidationError("Quantity must be at least 1.")
        key = (int(line_lab_id), int(item_id))
        if key in seen:
            raise ValidationError("Each item may appear only once per lab in a request.")
        seen.add(key)
        lines.append({"lab_id": key[0], "item_id": key[1], "quantity": int(quantity)})
    return lines


def _validate_catalog(db: Session, lines: list[dict], *, student_facing: bool) -> dict[int, Item]:
    item_ids = {line["item_id"] for line in lines}
    lab_ids = {line["lab_id"] for line in lines}
    items = {item.id: item for item in db.query(Item).filter(Item.id.in_(item_ids)).all()}
    labs = {lab.id: lab for lab in db.query(Lab).filter(Lab.id.in_(lab_ids)).all()}
    for line in lines:
        item = items.get(line["item_id"])
        if not item or not item.is_active or (student_facing and not item.is_student_visible):
            raise NotFoundError("Item not found.")
        lab = labs.get(line["lab_id"])
        if not lab or not lab.is_active:
            raise NotFoundError("Lab not found.")
    return items


def _collect_violations(db: Session, lines: list[dict], *, held: Optional[dict[tuple[int, int], int]] = None) -> list[dict]:
    """Usable-stock check for every line at once, against rows the caller already locked."""
    held = held or {}
    violations = []
    for line in lines:
        key = (line["lab_id"], line["item_id"])
        usable = inventory_service.get_usable_qty(db, *key) + held.get(key, 0)
        if usable < line["quantity"]:
            violations.append(
                {
                    "lab_id": line["lab_id"],
                    "item_id": line["item_id"],
                    "requested_qty": line["quantity"],
                    "usable_qty": max(usable, 0),
                }
            )
    return violations


def _require_future(value: Optional[datetime], now: datetime, field_label: str) -> datetime:
    if value is None:
        raise ValidationError(f"{field_label} is required.")
    value = as_naive_utc(value)
    if value <= now:
        raise ValidationError(f"{field_label} must be in the future.")
    return value


def raise_request(
    db: Session,
    *,
    student_id: int,
    items: list[dict],
    faculty_email: Optional[str],
    expected_return_date: Optional[datetime],
    project_name: Optional[str],
    faculty_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """Place a student borrow request and hold the requested stock until a decision."""
    now = now or datetime.utcnow()
    if not project_name or not project_name.strip():
        raise ValidationError("Project name is required.")
    if not faculty_email or not faculty_email.strip():
        raise ValidationError("Faculty email is required.")
    expected_return_date = _require_future(expected_return_date, now, "Expected return date")
    lines = _normalize_lines(items)
    if len({line["lab_id"] for line in lines}) > 1:
        raise ValidationError("All items in a request must come from the same lab.")

    student = db.query(User).filter(User.id == student_id).with_for_update().first()
    if not student or student.role != "student" or not student.is_active:
        raise NotFoundError("Student not found.")

    existing = (
        db.query(Transaction.transaction_id)
        .filter(
            Transaction.student_id == student.id,
            Transaction.transaction_type == "regular",
            Transaction.status.in_(ONE_ACTIVE_STATUSES),
        )
        .first()
    )
    if existing:
        raise ConflictError(f"You already have an active transaction ({existing[0]}).")

    _validate_catalog(db, lines, student_facing=True)
    inventory_service.lock_lab_inventories(db, [(line["lab_id"], line["item_id"]) for line in lines])
    violations = _collect_violations(db, lines)
    if violations:
        raise InsufficientStockError("Insufficient stock in selected lab.", violations=violations)

    transaction = Transaction(
        transaction_id=generate_transaction_id("regular"),
        project_name=project_name.strip(),
        transaction_type="regular",
        status="raised",
        student_id=student.id,
        student_reg_no=student.reg_no,
        faculty_email=faculty_email.strip().lower(),
        faculty_id=faculty_id,
        approval_token=generate_approval_token(),
        expected_return_date=expected_return_date,
        created_at=now,
        updated_at=now,
    )
    for line in sorted(lines, key=lambda entry: (entry["lab_id"], entry["item_id"])):
        inventory_service.reserve_temp(
            db,
            lab_id=line["lab_id"],
            item_id=line["item_id"],
            quantity=line["quantity"],
            reference_id=transaction.transaction_id,
        )
        transaction.items.append(
            TransactionItem(
                lab_id=line["lab_id"],
                item_id=line["item_id"],
                quantity=line["quantity"],
                temp_reserved_quantity=line["quantity"],
            )
        )
    db.add(transaction)
    db.flush()
    record_status_transition(db, transaction=transaction, from_status=None, to_status="raised", user_id=student.id)
    logger.info(
        "Transaction %s raised by student_id=%s with %s lines",
        transaction.transaction_id,
        student.id,
        len(lines),
    )
    return transaction


def _release_holds(db: Session, transaction: Transaction) -> int:
    keys = [(line.lab_id, line.item_id) for line in transaction.items if line.temp_reserved_quantity]
    inventory_service.lock_lab_inventories(db, keys)
    released_total = 0
    for line in transaction.items:
        if not line.temp_reserved_quantity:
            continue
        released_total += inventory_service.release_temp(
            db,
            lab_id=line.lab_id,
            item_id=line.item_id,
            quantity=line.temp_reserved_quantity,
            reference_id=transaction.transaction_id,
        )
        line.temp_reserved_quantity = 0
    return released_total


def approve_transaction(
    db: Session,
    transaction: Transaction,
    *,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    if transaction.status != "raised":
        raise ConflictError("Transaction already finalized.")
    transaction.approval_approved = True
    transaction.approval_decided_at = now or datetime.utcnow()
    transaction.approval_token = None
    _set_status(db, transaction, "approved", user_id=user_id)
    return transaction


def reject_transaction(
    db: Session,
    transaction: Transaction,
    *,
    reason: Optional[str] = None,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    if transaction.status not in DECIDABLE_STATUSES:
        raise ConflictError("Transaction already finalized.")
    released = _release_holds(db, transaction)
    transaction.approval_approved = False
    transaction.approval_decided_at = now or datetime.utcnow()
    transaction.approval_token = None
    transaction.rejected_reason = reason
    _set_status(db, transaction, "rejected", user_id=user_id)
    logger.info("Transaction %s rejected, released %s held units", transaction.transaction_id, released)
    return transaction


def decide(
    db: Session,
    identity: Identity,
    transaction_id: str,
    *,
    decision: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """Faculty dashboard decision on a borrow request addressed to them."""
    transaction = get_transaction(db, identity, transaction_id, lock=True)
    if transaction.transaction_type != "regular":
        raise NotFoundError("Transaction not found.")
    if decision == "approve":
        return approve_transaction(db, transaction, user_id=identity.user_id, now=now)
    if decision == "reject":
        return reject_transaction(db, transaction, reason=reason, user_id=identity.user_id, now=now)
    raise ValidationError("Decision must be 'approve' or 'reject'.")


def _activate(
    db: Session,
    transaction: Transaction,
    *,
    user_id: Optional[int],
    now: datetime,
) -> Transaction:
    """Issue every line in one unit: stock, assets and status move together or not at all."""
    permanent = transaction.transaction_type == "lab_transfer" and transaction.transfer_type == "permanent"
    destination = transaction.target_lab_id if permanent else None

    keys = [(line.lab_id, line.item_id) for line in transaction.items]
    if destination is not None:
        keys.extend((destination, line.item_id) for line in transaction.items)
    inventory_service.lock_lab_inventories(db, keys)

    lines = [{"lab_id": line.lab_id, "item_id": line.item_id, "quantity": line.quantity} for line in transaction.items]
    held = {(line.lab_id, line.item_id): line.temp_reserved_quantity for line in transaction.items}
    violations = _collect_violations(db, lines, held=held)
    if violations:
        raise InsufficientStockError("Insufficient stock at issue time.", violations=violations)

    for line in transaction.items:
        if line.temp_reserved_quantity:
            inventory_service.release_temp(
                db,
                lab_id=line.lab_id,
                item_id=line.item_id,
                quantity=line.temp_reserved_quantity,
                reference_id=transaction.transaction_id,
            )
            line.temp_reserved_quantity = 0
        inventory_service.commit_issue(
            db,
            lab_id=line.lab_id,
            item_id=line.item_id,
            quantity=line.quantity,
            reference_id=transaction.transaction_id,
            transfer_to_lab_id=destination,
        )
        item = db.get(Item, line.item_id)
        if item.tracking_type == "asset":
            assets = asset_service.allocate(db, item_id=line.item_id, lab_id=line.lab_id, count=line.quantity)
            asset_ids = [asset.id for asset in assets]
            if permanent:
                asset_service.transfer_lab(db, asset_ids, destination)
            else:
                asset_service.mark_issued(db, asset_ids, transaction_pk=transaction.id)
            line.assets = list(assets)
            if len(line.assets) != line.quantity:
                raise ConflictError("Allocated assets do not match the requested quantity.")
        line.issued_quantity = line.quantity

    transaction.issued_at = now
    transaction.issued_by_id = user_id
    _set_status(db, transaction, "active", user_id=user_id)
    if permanent:
        transaction.actual_return_date = now
        _set_status(db, transaction, "completed", user_id=user_id)
    return transaction


def _require_lab_scope(transaction: Transaction, identity: Identity) -> None:
    if identity.role == "super_admin":
        return
    line_labs = {line.lab_id for line in transaction.items}
    if identity.lab_id not in line_labs:
        raise NotFoundError("Transaction not found.")
    if line_labs != {identity.lab_id}:
        raise ConflictError("Transaction includes items held by another lab.")


def activate(db: Session, identity: Identity, transaction_id: str, *, now: Optional[datetime] = None) -> Transaction:
    """Staff issue an approved borrow request."""
    transaction = get_transaction(db, identity, transaction_id, lock=True)
    if transaction.transaction_type != "regular":
        raise ConflictError("Only borrow requests are issued here.")
    _require_lab_scope(transaction, identity)
    if transaction.status != "approved":
        raise ConflictError(f"Cannot issue a transaction in '{transaction.status}' state.")
    return _activate(db, transaction, user_id=identity.user_id, now=now or datetime.utcnow())


def create_lab_session(
    db: Session,
    identity: Identity,
    *,
    student_reg_no: str,
    items: list[dict],
    project_name: Optional[str],
    expected_return_date: Optional[datetime],
    lab_slot: Optional[str] = None,
    faculty_email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """Issue lab stock straight to a student for an in-lab slot."""
    now = now or datetime.utcnow()
    if not project_name or not project_name.strip():
        raise ValidationError("Project name is required.")
    expected_return_date = _require_future(expected_return_date, now, "Expected return date")
    lines = _normalize_lines(items, lab_id=identity.lab_id)

    student = db.query(User).filter(User.reg_no == (student_reg_no or "").strip(), User.role == "student").first()
    if not student or not student.is_active:
        raise NotFoundError("Student not found.")
    _validate_catalog(db, lines, student_facing=False)

    transaction = Transaction(
        transaction_id=generate_transaction_id("lab_session"),
        project_name=project_name.strip(),
        transaction_type="lab_session",
        status="raised",
        source_lab_id=identity.lab_id,
        student_id=student.id,
        student_reg_no=student.reg_no,
        faculty_email=faculty_email.strip().lower() if faculty_email else None,
        issued_directly=True,
        lab_slot=lab_slot,
        expected_return_date=expected_return_date,
        created_at=now,
        updated_at=now,
    )
    for line in lines:
        transaction.items.append(TransactionItem(lab_id=line["lab_id"], item_id=line["item_id"], quantity=line["quantity"]))
    db.add(transaction)
    db.flush()
    record_status_transition(db, transaction=transaction, from_status=None, to_status="raised", user_id=identity.user_id)
    return _activate(db, transaction, user_id=identity.user_id, now=now)


def create_transfer(
    db: Session,
    identity: Identity,
    *,
    source_lab_id: int,
    items: list[dict],
    transfer_type: str,
    project_name: Optional[str],
    expected_return_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """The requesting lab asks another lab to lend or give it stock."""
    now = now or datetime.utcnow()
    if transfer_type not in ("temporary", "permanent"):
        raise ValidationError("Transfer type must be 'temporary' or 'permanent'.")
    if not project_name or not project_name.strip():
        raise ValidationError("Purpose is required.")
    if source_lab_id == identity.lab_id:
        raise ValidationError("Cannot request a transfer from your own lab.")
    if transfer_type == "temporary":
        expected_return_date = _require_future(expected_return_date, now, "Expected return date")
    else:
        expected_return_date = None
    lines = _normalize_lines(items, lab_id=source_lab_id)
    _validate_catalog(db, lines, student_facing=False)

    violations = _collect_violations(db, lines)
    if violations:
        raise InsufficientStockError("Insufficient stock in the lending lab.", violations=violations)

    transaction = Transaction(
        transaction_id=generate_transaction_id("lab_transfer"),
        project_name=project_name.strip(),
        transaction_type="lab_transfer",
        transfer_type=transfer_type,
        status="raised",
        source_lab_id=source_lab_id,
        target_lab_id=identity.lab_id,
        expected_return_date=expected_return_date,
        created_at=now,
        updated_at=now,
    )
    for line in lines:
        transaction.items.append(TransactionItem(lab_id=line["lab_id"], item_id=line["item_id"], quantity=line["quantity"]))
    db.add(transaction)
    db.flush()
    record_status_transition(db, transaction=transaction, from_status=None, to_status="raised", user_id=identity.user_id)
    logger.info(
        "Transfer %s (%s) requested by lab_id=%s from lab_id=%s",
        transaction.transaction_id,
        transfer_type,
        identity.lab_id,
        source_lab_id,
    )
    return transaction


def _get_transfer(db: Session, identity: Identity, transaction_id: str) -> Transaction:
    transaction = get_transaction(db, identity, transaction_id, lock=True)
    if transaction.transaction_type != "lab_transfer":
        raise NotFoundError("Transaction not found.")
    return transaction


def decide_transfer(
    db: Session,
    identity: Identity,
    transaction_id: str,
    *,
    decision: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """The lending lab approves (and thereby issues) or rejects a transfer."""
    now = now or datetime.utcnow()
    transaction = _get_transfer(db, identity, transaction_id)
    if identity.role != "super_admin" and transaction.source_lab_id != identity.lab_id:
        raise ConflictError("Only the lending lab can decide this transfer.")
    if decision == "reject":
        return reject_transaction(db, transaction, reason=reason, user_id=identity.user_id, now=now)
    if decision != "approve":
        raise ValidationError("Decision must be 'approve' or 'reject'.")
    approve_transaction(db, transaction, user_id=identity.user_id, now=now)
    return _activate(db, transaction, user_id=identity.user_id, now=now)


def initiate_return(db: Session, identity: Identity, transaction_id: str) -> Transaction:
    transaction = get_transaction(db, identity, transaction_id, lock=True)
    if transaction.transaction_type != "lab_transfer" or transaction.transfer_type != "temporary":
        raise ConflictError("Only temporary transfers are returned.")
    if identity.role != "super_admin" and transaction.target_lab_id != identity.lab_id:
        raise ConflictError("Only the lab holding the stock can initiate the return.")
    if transaction.status not in RETURNABLE_STATUSES:
        raise ConflictError(f"Cannot initiate a return from '{transaction.status}' state.")
    _set_status(db, transaction, "return_requested", user_id=identity.user_id)
    return transaction


def _damage_by_line(transaction: Transaction, damages: Optional[list[dict]]) -> dict[int, dict]:
    lines_by_id = {line.id: line for line in transaction.items}
    damage_by_line: dict[int, dict] = {}
    for entry in damages or []:
        line = lines_by_id.get(entry.get("line_id"))
        if not line:
            raise ValidationError("Damage reported for an unknown item line.")
        damage_by_line[line.id] = {
            "damaged_quantity": int(entry.get("damaged_quantity") or 0),
            "damaged_asset_ids": list(entry.get("damaged_asset_ids") or []),
            "damage_reason": entry.get("damage_reason"),
        }
    return damage_by_line


def complete_return(
    db: Session,
    identity: Identity,
    transaction_id: str,
    *,
    damages: Optional[list[dict]] = None,
    damage_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """Bring everything on the transaction back to the lab that gave it out."""
    now = now or datetime.utcnow()
    transaction = get_transaction(db, identity, transaction_id, lock=True)

    if transaction.transaction_type == "lab_transfer":
        if transaction.transfer_type != "temporary":
            raise ConflictError("Permanent transfers are not returned.")
        if identity.role != "super_admin" and transaction.source_lab_id != identity.lab_id:
            raise ConflictError("Only the lending lab can complete the return.")
        if transaction.status != "return_requested":
            raise ConflictError(f"Cannot complete a return from '{transaction.status}' state.")
    else:
        _require_lab_scope(transaction, identity)
        if transaction.status not in RETURNABLE_STATUSES:
            raise ConflictError(f"Cannot complete a return from '{transaction.status}' state.")

    damage_by_line = _damage_by_line(transaction, damages)
    inventory_service.lock_lab_inventories(db, [(line.lab_id, line.item_id) for line in transaction.items])

    for line in transaction.items:
        outstanding = line.issued_quantity - line.returned_quantity
        if outstanding <= 0:
            continue
        damage = damage_by_line.get(line.id, {"damaged_quantity": 0, "damaged_asset_ids": [], "damage_reason": None})
        line_asset_ids = set(line.asset_ids)
        if line_asset_ids:
            damaged_ids = set(damage["damaged_asset_ids"])
            if not damaged_ids.issubset(line_asset_ids):
                raise ValidationError("Damaged assets must belong to this transaction.")
            damaged_qty = len(damaged_ids)
            returned_ids = line_asset_ids - damaged_ids
            if returned_ids:
                asset_service.mark_available(db, returned_ids)
            if damaged_ids:
                damaged_assets = asset_service.mark_damaged(db, damaged_ids)
                asset_service.record_damage(
                    db,
                    damaged_assets,
                    transaction=transaction,
                    reason=damage["damage_reason"],
                    remarks=damage_notes,
                    reported_by_id=identity.user_id,
                    now=now,
                )
        else:
            damaged_qty = damage["damaged_quantity"]
            if damaged_qty < 0 or damaged_qty > outstanding:
                raise ValidationError("Damaged quantity must be between 0 and the issued quantity.")

        inventory_service.commit_return(
            db,
            lab_id=line.lab_id,
            item_id=line.item_id,
            quantity=outstanding,
            damaged_quantity=damaged_qty,
            reference_id=transaction.transaction_id,
        )
        line.returned_quantity += outstanding
        line.damaged_quantity += damaged_qty

    transaction.actual_return_date = now
    if damage_notes:
        transaction.damage_notes = damage_notes
    _set_status(db, transaction, "completed", user_id=identity.user_id)
    return transaction


def extend_return(
    db: Session,
    identity: Identity,
    transaction_id: str,
    new_date: Optional[datetime],
) -> Transaction:
    """Student pushes back the expected return date of an issued borrow."""
    transaction = get_transaction(db, identity, transaction_id, lock=True)
    if identity.role != "student":
        raise NotFoundError("Transaction not found.")
    if transaction.status != "active":
        raise ConflictError("Only active transactions can be extended.")
    if not transaction.issued_at:
        raise ConflictError("Transaction has not been issued yet.")
    if new_date is None:
        raise ValidationError("New return date is required.")
    new_date = as_naive_utc(new_date)
    if transaction.expected_return_date and new_date <= transaction.expected_return_date:
        raise ValidationError("New return date must be after the current expected return date.")
    ceiling = add_months(transaction.issued_at, settings.MAX_EXTENSION_MONTHS)
    if new_date > ceiling:
        raise ValidationError(
            f"Return date cannot exceed {settings.MAX_EXTENSION_MONTHS} months from issue date."
        )
    transaction.expected_return_date = new_date
    db.add(
        AuditEvent(
            user_id=identity.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=transaction.transaction_id,
            action="RETURN_DATE_EXTENDED",
            event_metadata=new_date.isoformat(),
            created_at=datetime.utcnow(),
        )
    )
    return transaction


def _expiry_filter(now: datetime):
    raised_cutoff = now - timedelta(hours=settings.RAISED_EXPIRY_HOURS)
    approved_cutoff = now - timedelta(hours=settings.APPROVED_EXPIRY_HOURS)
    decided_at = func.coalesce(Transaction.approval_decided_at, Transaction.updated_at)
    return or_(
        (Transaction.status == "raised") & (Transaction.created_at < raised_cutoff),
        (Transaction.status == "approved") & (decided_at < approved_cutoff),
    )


def find_expired_transaction_ids(db: Session, *, now: Optional[datetime] = None) -> list[str]:
    now = now or datetime.utcnow()
    rows = (
        db.query(Transaction.transaction_id)
        .filter(_expiry_filter(now))
        .order_by(Transaction.created_at.asc())
        .all()
    )
    return [row[0] for row in rows]


def auto_reject_transaction(db: Session, transaction_id: str, *, now: Optional[datetime] = None) -> Optional[Transaction]:
    """Reject one expired transaction; returns None when it is no longer eligible."""
    now = now or datetime.utcnow()
    transaction = (
        db.query(Transaction)
        .filter(Transaction.transaction_id == transaction_id, _expiry_filter(now))
        .with_for_update()
        .first()
    )
    if not transaction:
        return None
    hours = settings.RAISED_EXPIRY_HOURS if transaction.status == "raised" else settings.APPROVED_EXPIRY_HOURS
    return reject_transaction(
        db,
        transaction,
        reason=f"Auto-rejected: no action within {hours} hours.",
        now=now,
    )


def _overdue_filter(now: datetime):
    return (
        (Transaction.status == "active")
        & (Transaction.expected_return_date.isnot(None))
        & (Transaction.expected_return_date < now)
        & or_(Transaction.transfer_type.is_(None), Transaction.transfer_type != "permanent")
    )


def find_overdue_transaction_ids(db: Session, *, now: Optional[datetime] = None) -> list[str]:
    now = now or datetime.utcnow()
    rows = db.query(Transaction.transaction_id).filter(_overdue_filter(now)).order_by(Transaction.id.asc()).all()
    return [row[0] for row in rows]


def mark_transaction_overdue(db: Session, transaction_id: str, *, now: Optional[datetime] = None) -> Optional[Transaction]:
    now = now or datetime.utcnow()
    transaction = (
        db.query(Transaction)
        .filter(Transaction.transaction_id == transaction_id, _overdue_filter(now))
        .with_for_update()
        .first()
    )
    if not transaction:
        return None
    _set_status(db, transaction, "overdue")
    return transaction


def _lab_scope_filter(lab_id: int):
    return or_(
        Transaction.source_lab_id == lab_id,
        Transaction.target_lab_id == lab_id,
        Transaction.items.any(TransactionItem.lab_id == lab_id),
    )


def list_transactions(
    db: Session,
    identity: Identity,
    *,
    status: Optional[str] = None,
    transaction_type: Optional[str] = None,
    transaction_id: Optional[str] = None,
    student_reg_no: Optional[str] = None,
    faculty_email: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Transaction]:
    query = db.query(Transaction).options(selectinload(Transaction.items).selectinload(TransactionItem.assets))
    if identity.role == "student":
        query = query.filter(Transaction.student_id == identity.user_id)
    elif identity.role == "faculty":
        query = query.filter(func.lower(Transaction.faculty_email) == (identity.email or "").lower())
    elif identity.role != "super_admin":
        query = query.filter(_lab_scope_filter(identity.lab_id))

    if status:
        query = query.filter(Transaction.status == status)
    if transaction_type:
        query = query.filter(Transaction.transaction_type == transaction_type)
    if transaction_id:
        query = query.filter(Transaction.transaction_id.ilike(f"%{transaction_id.strip()}%"))
    if student_reg_no:
        query = query.filter(Transaction.student_reg_no.ilike(f"%{student_reg_no.strip()}%"))
    if faculty_email:
        query = query.filter(Transaction.faculty_email.ilike(f"%{faculty_email.strip()}%"))
    if created_from:
        query = query.filter(Transaction.created_at >= as_naive_utc(created_from))
    if created_to:
        query = query.filter(Transaction.created_at <= as_naive_utc(created_to))
    return query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).offset(offset).limit(limit).all()


def list_faculty_transactions(db: Session, identity: Identity, *, bucket: str = "all") -> list[Transaction]:
    if bucket == "pending":
        return list_transactions(db, identity, status="raised", transaction_type="regular")
    transactions = list_transactions(db, identity, transaction_type="regular")
    if bucket == "history":
        return [transaction for transaction in transactions if transaction.status != "raised"]
    return transactions


def list_overdue(db: Session, identity: Identity) -> list[Transaction]:
    query = db.query(Transaction).filter(Transaction.status == "overdue")
    if identity.role != "super_admin":
        query = query.filter(_lab_scope_filter(identity.lab_id))
    return query.order_by(Transaction.expected_return_date.asc(), Transaction.id.asc()).all()


def list_transfers(db: Session, identity: Identity, *, direction: str) -> list[Transaction]:
    """Transfers this lab lends out ("outgoing") or asked for ("incoming")."""
    query = db.query(Transaction).filter(Transaction.transaction_type == "lab_transfer")
    if direction == "outgoing":
        query = query.filter(Transaction.source_lab_id == identity.lab_id)
    elif direction == "incoming":
        query = query.filter(Transaction.target_lab_id == identity.lab_id)
    else:
        raise ValidationError("Direction must be 'incoming' or 'outgoing'.")
    return query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).all()
