from dataclasses import dataclass, field
import logging
from typing import Optional

from sqlalchemy.orm import Session

from labkeeper.assets import service as asset_service
from labkeeper.auth import Identity
from labkeeper.errors import ConflictError, NotFoundError, ValidationError
from labkeeper.inventory import service as inventory_service
from labkeeper.models import TRACKING_TYPES, Item, ItemAsset, Lab, LabInventory, Transaction, TransactionItem
from labkeeper.transactions.service import OPEN_STATUSES


logger = logging.getLogger(__name__)


@dataclass
class StockAdjustment:
    """Whitelisted changes staff may apply to one item in their lab."""

    delta: int = 0
    reserved_quantity: Optional[int] = None
    remove_asset_tags: list[str] = field(default_factory=list)
    vendor: Optional[str] = None
    invoice_number: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    is_student_visible: Optional[bool] = None
    tracking_type: Optional[str] = None


def list_student_catalog(db: Session, *, search: Optional[str] = None, category: Optional[str] = None) -> list[dict]:
    query = db.query(Item).filter(Item.is_active.is_(True), Item.is_student_visible.is_(True))
    if search:
        like_value = f"%{search.strip()}%"
        query = query.filter(Item.name.ilike(like_value) | Item.sku.ilike(like_value))
    if category:
        query = query.filter(Item.category == category)
    items = query.order_by(Item.name.asc()).all()
    usable_by_id = inventory_service.get_usable_qty_map(db, [item.id for item in items])
    return [
        {
            "id": item.id,
            "sku": item.sku,
            "name": item.name,
            "category": item.category,
            "description": item.description,
            "tracking_type": item.tracking_type,
            "usable_quantity": max(usable_by_id.get(item.id, 0), 0),
        }
        for item in items
    ]


def list_item_labs(db: Session, item_id: int) -> list[dict]:
    """Labs a student may request this item from, with what each can still lend."""
    item = db.query(Item).filter(Item.id == item_id, Item.is_active.is_(True), Item.is_student_visible.is_(True)).first()
    if not item:
        raise NotFoundError("Item not found.")
    rows = inventory_service.list_labs_with_usable_stock(db, item.id)
    labs = {lab.id: lab for lab in db.query(Lab).filter(Lab.id.in_([row.lab_id for row in rows])).all()}
    return [
        {
            "lab_id": row.lab_id,
            "lab_name": labs[row.lab_id].name,
            "lab_code": labs[row.lab_id].code,
            "usable_quantity": row.usable_quantity,
        }
        for row in rows
        if row.lab_id in labs and labs[row.lab_id].is_active
    ]


def get_lab_item(db: Session, identity: Identity, item_id: int) -> LabInventory:
    inventory = inventory_service.get_lab_inventory(db, identity.lab_id, item_id)
    if not inventory:
        raise NotFoundError("Item not found in this lab.")
    return inventory


def list_lab_item_assets(db: Session, identity: Identity, item_id: int, *, status: Optional[str] = None) -> list[ItemAsset]:
    inventory = get_lab_item(db, identity, item_id)
    if inventory.item.tracking_type != "asset":
        raise ValidationError("This item does not support asset tracking.")
    return asset_service.list_assets(db, lab_id=identity.lab_id, item_id=item_id, status=status)


def add_item_stock(
    db: Session,
    identity: Identity,
    *,
    sku: str,
    quantity: int,
    name: Optional[str] = None,
    category: Optional[str] = None,
    description: Optional[str] = None,
    tracking_type: Optional[str] = None,
    is_student_visible: bool = True,
    reserved_quantity: int = 0,
    vendor: Optional[str] = None,
    invoice_number: Optional[str] = None,
    asset_prefix: Optional[str] = None,
) -> tuple[LabInventory, list[ItemAsset]]:
    """Stock a lab with an item, creating the catalogue entry on first sight of its SKU."""
    sku = (sku or "").strip()
    if not sku:
        raise ValidationError("SKU is required.")

    item = db.query(Item).filter(Item.sku == sku).first()
    if item is None:
        tracking_type = tracking_type or "bulk"
        if not name or not name.strip():
            raise ValidationError("Name is required for a new item.")
        if tracking_type not in TRACKING_TYPES:
            raise ValidationError("Tracking type must be 'bulk' or 'asset'.")
        item = Item(
            sku=sku,
            name=name.strip(),
            category=category,
            description=description,
            tracking_type=tracking_type,
            is_student_visible=is_student_visible,
            is_active=True,
            last_asset_seq=0,
            total_quantity=0,
            available_quantity=0,
            temp_reserved_quantity=0,
            damaged_quantity=0,
        )
        db.add(item)
        db.flush()
        logger.info("Created catalogue item %s (%s)", item.sku, item.tracking_type)
    elif tracking_type and tracking_type != item.tracking_type:
        raise ValidationError("Tracking type cannot be changed after item creation.")
    elif not item.is_active:
        item.is_active = True
    inventory_service.lock_lab_inventories(db, [(identity.lab_id, item.id)])

    created_assets: list[ItemAsset] = []
    if item.tracking_type == "asset":
        if quantity is None or quantity <= 0:
            raise ValidationError("Quantity must be greater than 0.")
        created_assets = asset_service.mint_sequential(
            db,
            item_id=item.id,
            lab_id=identity.lab_id,
            count=quantity,
            vendor=vendor,
            invoice_number=invoice_number,
            prefix=asset_prefix,
        )
    inventory = inventory_service.add_stock(
        db,
        lab_id=identity.lab_id,
        item_id=item.id,
        quantity=quantity,
        reserved_quantity=reserved_quantity or 0,
        notes=f"Vendor: {vendor}" if vendor else None,
    )
    return inventory, created_assets


def update_item(
    db: Session,
    identity: Identity,
    item_id: int,
    adjustment: StockAdjustment,
) -> tuple[LabInventory, list[ItemAsset]]:
    item = db.query(Item).filter(Item.id == item_id).first()
    if not item:
        raise NotFoundError("Item not found.")
    if adjustment.tracking_type and adjustment.tracking_type != item.tracking_type:
        raise ValidationError("Tracking type cannot be changed after item creation.")
    if not inventory_service.lock_lab_inventories(db, [(identity.lab_id, item.id)]):
        raise NotFoundError("Item not found in this lab.")

    created_assets: list[ItemAsset] = []
    delta = adjustment.delta or 0
    if delta > 0:
        if not adjustment.vendor:
            raise ValidationError("Vendor is required when adding new stock.")
        if item.tracking_type == "asset":
            created_assets = asset_service.mint_sequential(
                db,
                item_id=item.id,
                lab_id=identity.lab_id,
                count=delta,
                vendor=adjustment.vendor,
                invoice_number=adjustment.invoice_number,
            )
    elif delta < 0 and item.tracking_type == "asset":
        if len(set(adjustment.remove_asset_tags)) != -delta:
            raise ValidationError("Select exactly the assets to remove.")
        assets = asset_service.find_available_by_tags(
            db,
            lab_id=identity.lab_id,
            item_id=item.id,
            asset_tags=adjustment.remove_asset_tags,
        )
        asset_service.mark_retired(db, [asset.id for asset in assets])

    inventory = inventory_service.adjust_stock(
        db,
        lab_id=identity.lab_id,
        item_id=item.id,
        delta=delta,
        new_reserved=adjustment.reserved_quantity,
        notes=f"Vendor: {adjustment.vendor}" if adjustment.vendor else None,
    )

    if adjustment.name is not None:
        if not adjustment.name.strip():
            raise ValidationError("Name cannot be empty.")
        item.name = adjustment.name.strip()
    if adjustment.category is not None:
        item.category = adjustment.category
    if adjustment.description is not None:
        item.description = adjustment.description
    if adjustment.is_student_visible is not None:
        item.is_student_visible = adjustment.is_student_visible
    return inventory, created_assets


def remove_item_from_lab(db: Session, identity: Identity, item_id: int) -> Item:
    inventory = inventory_service.get_lab_inventory(db, identity.lab_id, item_id, lock=True)
    if not inventory:
        raise NotFoundError("Item not found in this lab.")

    open_line = (
        db.query(TransactionItem.id)
        .join(Transaction, Transaction.id == TransactionItem.transaction_pk)
        .filter(
            TransactionItem.lab_id == identity.lab_id,
            TransactionItem.item_id == item_id,
            Transaction.status.in_(OPEN_STATUSES),
        )
        .first()
    )
    if open_line:
        raise ConflictError("Cannot remove item with active transactions.")
    if asset_service.count_issued(db, lab_id=identity.lab_id, item_id=item_id):
        raise ConflictError("Cannot remove item with issued assets.")

    asset_service.retire_lab_assets(db, lab_id=identity.lab_id, item_id=item_id)
    db.delete(inventory)
    db.flush()

    item = inventory_service.reconcile_item_totals(db, item_id)
    if not db.query(LabInventory.id).filter(LabInventory.item_id == item_id).first():
        item.is_active = False
        logger.info("Item %s deactivated, no lab carries it", item.sku)
    logger.info("Item %s removed from lab_id=%s", item.sku, identity.lab_id)
    return item


def list_other_labs(db: Session, identity: Identity) -> list[Lab]:
    query = db.query(Lab).filter(Lab.is_active.is_(True))
    if identity.lab_id is not None:
        query = query.filter(Lab.id != identity.lab_id)
    return query.order_by(Lab.name.asc()).all()


def list_transferable_items(db: Session, lab_id: int) -> list[LabInventory]:
    lab = db.query(Lab).filter(Lab.id == lab_id, Lab.is_active.is_(True)).first()
    if not lab:
        raise NotFoundError("Lab not found.")
    return [row for row in inventory_service.list_lab_inventory(db, lab.id) if row.usable_quantity > 0]
