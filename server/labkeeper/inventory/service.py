from datetime import datetime
import logging
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from labkeeper.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from labkeeper.models import InventoryMovement, Item, LabInventory


logger = logging.getLogger(__name__)

REFERENCE_TRANSACTION = "transaction"
REFERENCE_ADJUSTMENT = "adjustment"


def _usable_expression():
    return (
        LabInventory.total_quantity
        - LabInventory.reserved_quantity
        - LabInventory.issued_quantity
        - LabInventory.temp_reserved_quantity
    )


def get_lab_inventory(db: Session, lab_id: int, item_id: int, *, lock: bool = False) -> Optional[LabInventory]:
    query = db.query(LabInventory).filter(LabInventory.lab_id == lab_id, LabInventory.item_id == item_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def lock_items(db: Session, item_ids: Iterable[int]) -> list[Item]:
    ids = sorted(set(item_ids))
    if not ids:
        return []
    return db.query(Item).filter(Item.id.in_(ids)).order_by(Item.id.asc()).with_for_update().all()


def lock_lab_inventories(db: Session, keys: Iterable[tuple[int, int]]) -> dict[tuple[int, int], LabInventory]:
    """Lock every (lab_id, item_id) row up front, always in ascending key order.

    The item rows are locked after all lab rows, so the aggregate counters
    rebuilt by ``reconcile_item_totals`` are summed under the same locks.
    """
    keys = sorted(set(keys))
    locked: dict[tuple[int, int], LabInventory] = {}
    for lab_id, item_id in keys:
        inventory = get_lab_inventory(db, lab_id, item_id, lock=True)
        if inventory is not None:
            locked[(lab_id, item_id)] = inventory
    lock_items(db, [item_id for _, item_id in keys])
    return locked


def _get_or_create_lab_inventory(db: Session, lab_id: int, item_id: int) -> LabInventory:
    inventory = get_lab_inventory(db, lab_id, item_id, lock=True)
    if inventory:
        return inventory
    inventory = LabInventory(
        lab_id=lab_id,
        item_id=item_id,
        total_quantity=0,
        reserved_quantity=0,
        temp_reserved_quantity=0,
        issued_quantity=0,
        available_quantity=0,
        damaged_quantity=0,
    )
    db.add(inventory)
    db.flush()
    return inventory


def get_usable_qty(db: Session, lab_id: int, item_id: int) -> int:
    """Single source of truth for what a new request may claim from a lab."""
    inventory = get_lab_inventory(db, lab_id, item_id)
    usable = inventory.usable_quantity if inventory else 0
    logger.debug(
        "Usable stock lookup: lab_id=%s item_id=%s total=%s reserved=%s issued=%s temp_reserved=%s usable=%s",
        lab_id,
        item_id,
        inventory.total_quantity if inventory else 0,
        inventory.reserved_quantity if inventory else 0,
        inventory.issued_quantity if inventory else 0,
        inventory.temp_reserved_quantity if inventory else 0,
        usable,
    )
    return usable


def get_usable_qty_map(db: Session, item_ids: list[int], lab_id: int | None = None) -> dict[int, int]:
    if not item_ids:
        return {}
    query = (
        db.query(LabInventory.item_id, func.coalesce(func.sum(_usable_expression()), 0))
        .filter(LabInventory.item_id.in_(item_ids))
    )
    if lab_id is not None:
        query = query.filter(LabInventory.lab_id == lab_id)
    rows = query.group_by(LabInventory.item_id).all()
    usable_by_id = {item_id: int(total or 0) for item_id, total in rows}
    for item_id in item_ids:
        usable_by_id.setdefault(item_id, 0)
    logger.debug("Bulk usable stock lookup: item_ids=%s lab_id=%s usable_by_id=%s", item_ids, lab_id, usable_by_id)
    return usable_by_id


def create_inventory_movement(
    db: Session,
    *,
    inventory: LabInventory,
    movement_type: str,
    qty_delta: int,
    reference_type: str | None = None,
    reference_id: str | None = None,
    notes: str | None = None,
) -> InventoryMovement:
    movement = InventoryMovement(
        lab_id=inventory.lab_id,
        item_id=inventory.item_id,
        movement_type=movement_type,
        qty_delta=qty_delta,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        created_at=datetime.utcnow(),
    )
    db.add(movement)
    return movement


def _settle(inventory: LabInventory) -> LabInventory:
    inventory.recompute_available()
    counters = (
        inventory.total_quantity,
        inventory.reserved_quantity,
        inventory.temp_reserved_quantity,
        inventory.issued_quantity,
        inventory.damaged_quantity,
    )
    if any(value < 0 for value in counters):
        raise ConflictError("Stock counters cannot go negative.")
    if inventory.reserved_quantity > inventory.total_quantity:
        raise ConflictError("Reserved quantity exceeds total stock.")
    if inventory.usable_quantity < 0:
        raise ConflictError("Stock on hold or issued exceeds what the lab holds.")
    return inventory


def reconcile_item_totals(db: Session, item_id: int) -> Item:
    """Rebuild the global Item counters from its lab rows.

    The item row is locked before summing, so concurrent writers to different
    labs of the same item apply their totals one after the other.
    """
    db.flush()
    item = db.query(Item).filter(Item.id == item_id).with_for_update().first()
    if not item:
        raise NotFoundError("Item not found.")
    total, available, temp_reserved, damaged = (
        db.query(
            func.coalesce(func.sum(LabInventory.total_quantity), 0),
            func.coalesce(func.sum(LabInventory.available_quantity), 0),
            func.coalesce(func.sum(LabInventory.temp_reserved_quantity), 0),
            func.coalesce(func.sum(LabInventory.damaged_quantity), 0),
        )
        .filter(LabInventory.item_id == item_id)
        .one()
    )
    item.total_quantity = int(total)
    item.available_quantity = int(available)
    item.temp_reserved_quantity = int(temp_reserved)
    item.damaged_quantity = int(damaged)
    return item


def add_stock(
    db: Session,
    *,
    lab_id: int,
    item_id: int,
    quantity: int,
    reserved_quantity: int = 0,
    notes: str | None = None,
) -> LabInventory:
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be greater than 0.")
    if reserved_quantity < 0 or reserved_quantity > quantity:
        raise ValidationError("Reserved quantity must be between 0 and the added quantity.")

    inventory = _get_or_create_lab_inventory(db, lab_id, item_id)
    inventory.total_quantity += quantity
    create_inventory_movement(
        db,
        inventory=inventory,
        movement_type="STOCK_ADD",
        qty_delta=quantity,
        reference_type=REFERENCE_ADJUSTMENT,
        notes=notes,
    )
    if reserved_quantity:
        inventory.reserved_quantity += reserved_quantity
        create_inventory_movement(
            db,
            inventory=inventory,
            movement_type="RESERVE_SET",
            qty_delta=reserved_quantity,
            reference_type=REFERENCE_ADJUSTMENT,
        )
    _settle(inventory)
    reconcile_item_totals(db, item_id)
    logger.info("Stock added: lab_id=%s item_id=%s qty=%s reserved=%s", lab_id, item_id, quantity, reserved_quantity)
    return inventory


def adjust_stock(
    db: Session,
    *,
    lab_id: int,
    item_id: int,
    delta: int = 0,
    new_reserved: int | None = None,
    notes: str | None = None,
) -> LabInventory:
    """Apply a signed change to total stock and/or set the durable reservation."""
    inventory = get_lab_inventory(db, lab_id, item_id, lock=True)
    if not inventory:
        raise NotFoundError("Item not found in this lab.")

    if delta > 0:
        inventory.total_quantity += delta
        create_inventory_movement(
            db,
            inventory=inventory,
            movement_type="STOCK_ADD",
            qty_delta=delta,
            reference_type=REFERENCE_ADJUSTMENT,
            notes=notes,
        )
    elif delta < 0:
        remove_qty = -delta
        if remove_qty > inventory.total_quantity - inventory.reserved_quantity:
            raise ConflictError("Cannot remove reserved stock.")
        if remove_qty > inventory.usable_quantity:
            raise ConflictError("Cannot remove stock that is on hold or issued.")
        inventory.total_quantity -= remove_qty
        create_inventory_movement(
            db,
            inventory=inventory,
            movement_type="STOCK_REMOVE",
            qty_delta=delta,
            reference_type=REFERENCE_ADJUSTMENT,
            notes=notes,
        )

    if new_reserved is not None:
        if new_reserved < 0 or new_reserved > inventory.total_quantity:
            raise ValidationError("Reserved quantity must be between 0 and total quantity.")
        change = new_reserved - inventory.reserved_quantity
        if change > inventory.usable_quantity:
            raise ConflictError("Cannot reserve stock that is on hold or issued.")
        inventory.reserved_quantity = new_reserved
        if change:
            create_inventory_movement(
                db,
                inventory=inventory,
                movement_type="RESERVE_SET",
                qty_delta=change,
                reference_type=REFERENCE_ADJUSTMENT,
                notes=notes,
            )

    _settle(inventory)
    reconcile_item_totals(db, item_id)
    return inventory


def reserve_temp(db: Session, *, lab_id: int, item_id: int, quantity: int, reference_id: str | None = None) -> LabInventory:
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be greater than 0.")
    inventory = get_lab_inventory(db, lab_id, item_id, lock=True)
    usable = inventory.usable_quantity if inventory else 0
    if usable < quantity:
        raise InsufficientStockError(
            "Insufficient stock in selected lab.",
            violations=[
                {"lab_id": lab_id, "item_id": item_id, "requested_qty": quantity, "usable_qty": max(usable, 0)}
            ],
        )
    inventory.temp_reserved_quantity += quantity
    create_inventory_movement(
        db,
        inventory=inventory,
        movement_type="TEMP_HOLD",
        qty_delta=quantity,
        reference_type=REFERENCE_TRANSACTION,
        reference_id=reference_id,
    )
    _settle(inventory)
    reconcile_item_totals(db, item_id)
    return inventory


def release_temp(db: Session, *, lab_id: int, item_id: int, quantity: int, reference_id: str | None = None) -> int:
    """Release up to ``quantity`` of a temp hold; never drives the counter below zero."""
    if quantity is None or quantity <= 0:
        return 0
    inventory = get_lab_inventory(db, lab_id, item_id, lock=True)
    if not inventory:
        return 0
    released = min(quantity, inventory.temp_reserved_quantity)
    if released <= 0:
        return 0
    inventory.temp_reserved_quantity -= released
    create_inventory_movement(
        db,
        inventory=inventory,
        movement_type="TEMP_RELEASE",
        qty_delta=-released,
        reference_type=REFERENCE_TRANSACTION,
        reference_id=reference_id,
    )
    _settle(inventory)
    reconcile_item_totals(db, item_id)
    return released


def commit_issue(
    db: Session,
    *,
    lab_id: int,
    item_id: int,
    quantity: int,
    reference_id: str | None = None,
    transfer_to_lab_id: int | None = None,
) -> LabInventory:
    """Take ``quantity`` out of a lab's usable stock.

    Without ``transfer_to_lab_id`` the units stay owned by the lab and are
    counted as issued. With it (permanent transfer) ownership moves: the
    source total drops and the target lab's total grows by the same amount.
    """
    inventory = get_lab_inventory(db, lab_id, item_id, lock=True)
    usable = inventory.usable_quantity if inventory else 0
    if usable < quantity:
        raise InsufficientStockError(
            "Insufficient stock at issue time.",
            violations=[
                {"lab_id": lab_id, "item_id": item_id, "requested_qty": quantity, "usable_qty": max(usable, 0)}
            ],
        )

    if transfer_to_lab_id is None:
        inventory.issued_quantity += quantity
        create_inventory_movement(
            db,
            inventory=inventory,
            movement_type="ISSUE",
            qty_delta=-quantity,
            reference_type=REFERENCE_TRANSACTION,
            reference_id=reference_id,
        )
        _settle(inventory)
    else:
        inventory.total_quantity -= quantity
        create_inventory_movement(
            db,
            inventory=inventory,
            movement_type="TRANSFER_OUT",
            qty_delta=-quantity,
            reference_type=REFERENCE_TRANSACTION,
            reference_id=reference_id,
        )
        _settle(inventory)
        target = _get_or_create_lab_inventory(db, transfer_to_lab_id, item_id)
        target.total_quantity += quantity
        create_inventory_movement(
            db,
            inventory=target,
            movement_type="TRANSFER_IN",
            qty_delta=quantity,
            reference_type=REFERENCE_TRANSACTION,
            reference_id=reference_id,
        )
        _settle(target)

    reconcile_item_totals(db, item_id)
    return inventory


def commit_return(
    db: Session,
    *,
    lab_id: int,
    item_id: int,
    quantity: int,
    damaged_quantity: int = 0,
    reference_id: str | None = None,
) -> LabInventory:
    """Bring issued units back; damaged ones are written off the lab's total."""
    if damaged_quantity < 0 or damaged_quantity > quantity:
        raise ValidationError("Damaged quantity must be between 0 and the returned quantity.")
    inventory = get_lab_inventory(db, lab_id, item_id, lock=True)
    if not inventory:
        raise NotFoundError("Item not found in this lab.")
    if inventory.issued_quantity < quantity:
        raise ConflictError("Cannot return more units than are issued.")

    inventory.issued_quantity -= quantity
    create_inventory_movement(
        db,
        inventory=inventory,
        movement_type="RETURN",
        qty_delta=quantity,
        reference_type=REFERENCE_TRANSACTION,
        reference_id=reference_id,
    )
    if damaged_quantity:
        inventory.total_quantity -= damaged_quantity
        inventory.damaged_quantity += damaged_quantity
        create_inventory_movement(
            db,
            inventory=inventory,
            movement_type="DAMAGE",
            qty_delta=-damaged_quantity,
            reference_type=REFERENCE_TRANSACTION,
            reference_id=reference_id,
        )
    _settle(inventory)
    reconcile_item_totals(db, item_id)
    return inventory


def list_lab_inventory(db: Session, lab_id: int, *, active_only: bool = True) -> list[LabInventory]:
    query = db.query(LabInventory).join(Item, Item.id == LabInventory.item_id).filter(LabInventory.lab_id == lab_id)
    if active_only:
        query = query.filter(Item.is_active.is_(True))
    return query.order_by(LabInventory.created_at.desc(), LabInventory.id.desc()).all()


def list_labs_with_usable_stock(db: Session, item_id: int) -> list[LabInventory]:
    return (
        db.query(LabInventory)
        .filter(LabInventory.item_id == item_id, _usable_expression() > 0)
        .order_by(LabInventory.lab_id.asc())
        .all()
    )
