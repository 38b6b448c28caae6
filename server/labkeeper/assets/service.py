from datetime import datetime
import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session, selectinload

from labkeeper.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from labkeeper.models import DAMAGE_LOG_STATUSES, DamagedAssetLog, Item, ItemAsset, Transaction
from labkeeper.utils.dates import as_naive_utc


logger = logging.getLogger(__name__)


def format_asset_tag(prefix: str, sequence: int) -> str:
    return f"{prefix}-{sequence:04d}"


def list_assets(db: Session, *, lab_id: int, item_id: int, status: Optional[str] = None) -> list[ItemAsset]:
    query = db.query(ItemAsset).filter(ItemAsset.lab_id == lab_id, ItemAsset.item_id == item_id)
    if status:
        query = query.filter(ItemAsset.status == status)
    return query.order_by(ItemAsset.asset_tag.asc()).all()


def _load_for_update(db: Session, asset_ids: Iterable[int]) -> list[ItemAsset]:
    ids = sorted(set(asset_ids))
    if not ids:
        return []
    assets = db.query(ItemAsset).filter(ItemAsset.id.in_(ids)).order_by(ItemAsset.id.asc()).with_for_update().all()
    if len(assets) != len(ids):
        raise NotFoundError("One or more assets were not found.")
    return assets


def mint_sequential(
    db: Session,
    *,
    item_id: int,
    lab_id: int,
    count: int,
    vendor: str | None,
    invoice_number: str | None = None,
    prefix: str | None = None,
) -> list[ItemAsset]:
    """Create ``count`` new assets tagged from the item's running sequence.

    The sequence lives on the item row and only ever moves forward, so a tag
    is never handed out twice, even after its asset has been retired.
    """
    if count <= 0:
        raise ValidationError("Asset count must be greater than 0.")
    if not vendor:
        raise ValidationError("Vendor is required when adding new stock.")

    item = db.query(Item).filter(Item.id == item_id).with_for_update().first()
    if not item:
        raise NotFoundError("Item not found.")
    if item.tracking_type != "asset":
        raise ValidationError("This item does not support asset tracking.")

    tag_prefix = prefix or item.sku
    sequence = item.last_asset_seq or 0

    created: list[ItemAsset] = []
    for _ in range(count):
        sequence += 1
        asset = ItemAsset(
            lab_id=lab_id,
            item_id=item.id,
            asset_tag=format_asset_tag(tag_prefix, sequence),
            vendor=vendor,
            invoice_number=invoice_number,
            status="available",
            condition="good",
        )
        db.add(asset)
        created.append(asset)
    item.last_asset_seq = sequence
    db.flush()
    logger.info("Minted %s assets for item_id=%s lab_id=%s up to sequence %s", count, item.id, lab_id, sequence)
    return created


def allocate(db: Session, *, item_id: int, lab_id: int, count: int) -> list[ItemAsset]:
    """Pick ``count`` available assets of an item in a lab, lowest tags first."""
    if count <= 0:
        raise ValidationError("Asset count must be greater than 0.")
    assets = (
        db.query(ItemAsset)
        .filter(ItemAsset.lab_id == lab_id, ItemAsset.item_id == item_id, ItemAsset.status == "available")
        .order_by(ItemAsset.asset_tag.asc())
        .limit(count)
        .with_for_update()
        .all()
    )
    if len(assets) < count:
        raise InsufficientStockError(
            "Not enough assets available.",
            violations=[{"lab_id": lab_id, "item_id": item_id, "requested_qty": count, "usable_qty": len(assets)}],
        )
    return assets


def find_available_by_tags(db: Session, *, lab_id: int, item_id: int, asset_tags: list[str]) -> list[ItemAsset]:
    tags = list(dict.fromkeys(asset_tags))
    assets = (
        db.query(ItemAsset)
        .filter(
            ItemAsset.lab_id == lab_id,
            ItemAsset.item_id == item_id,
            ItemAsset.asset_tag.in_(tags),
            ItemAsset.status == "available",
        )
        .with_for_update()
        .all()
    )
    if len(assets) != len(tags):
        raise ValidationError("One or more selected assets are not available.")
    return assets


def mark_issued(db: Session, asset_ids: Iterable[int], *, transaction_pk: int | None = None) -> list[ItemAsset]:
    assets = _load_for_update(db, asset_ids)
    for asset in assets:
        if asset.status != "available":
            raise ConflictError(f"Asset {asset.asset_tag} is not available.")
        asset.status = "issued"
        if transaction_pk is not None:
            asset.last_transaction_id = transaction_pk
    return assets


def mark_available(db: Session, asset_ids: Iterable[int]) -> list[ItemAsset]:
    assets = _load_for_update(db, asset_ids)
    for asset in assets:
        if asset.status != "issued":
            raise ConflictError(f"Asset {asset.asset_tag} is not issued.")
        asset.status = "available"
    return assets


def mark_damaged(db: Session, asset_ids: Iterable[int]) -> list[ItemAsset]:
    assets = _load_for_update(db, asset_ids)
    for asset in assets:
        if asset.status == "retired":
            raise ConflictError(f"Asset {asset.asset_tag} is retired.")
        asset.status = "damaged"
        asset.condition = "faulty"
    return assets


def mark_retired(db: Session, asset_ids: Iterable[int]) -> list[ItemAsset]:
    assets = _load_for_update(db, asset_ids)
    for asset in assets:
        if asset.status == "issued":
            raise ConflictError(f"Asset {asset.asset_tag} is issued and cannot be retired.")
        asset.status = "retired"
        asset.condition = "broken"
    return assets


def transfer_lab(db: Session, asset_ids: Iterable[int], new_lab_id: int) -> list[ItemAsset]:
    assets = _load_for_update(db, asset_ids)
    for asset in assets:
        if asset.status == "issued":
            raise ConflictError(f"Asset {asset.asset_tag} is issued and cannot change labs.")
        asset.lab_id = new_lab_id
    return assets


def count_issued(db: Session, *, lab_id: int, item_id: int) -> int:
    return (
        db.query(ItemAsset)
        .filter(ItemAsset.lab_id == lab_id, ItemAsset.item_id == item_id, ItemAsset.status == "issued")
        .count()
    )


def retire_lab_assets(db: Session, *, lab_id: int, item_id: int) -> list[ItemAsset]:
    assets = (
        db.query(ItemAsset)
        .filter(ItemAsset.lab_id == lab_id, ItemAsset.item_id == item_id, ItemAsset.status != "retired")
        .all()
    )
    return mark_retired(db, [asset.id for asset in assets])


DAMAGE_STATUS_FLOW = {
    "reported": ("under_repair", "written_off"),
    "under_repair": ("written_off",),
    "written_off": (),
}


def record_damage(
    db: Session,
    assets: Iterable[ItemAsset],
    *,
    transaction: Optional[Transaction] = None,
    reason: Optional[str] = None,
    remarks: Optional[str] = None,
    reported_by_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[DamagedAssetLog]:
    """Write one history row per damaged asset, tied to the borrow that damaged it."""
    now = now or datetime.utcnow()
    logs = []
    for asset in assets:
        log = DamagedAssetLog(
            asset_id=asset.id,
            item_id=asset.item_id,
            lab_id=asset.lab_id,
            transaction_pk=transaction.id if transaction else None,
            student_id=transaction.student_id if transaction else None,
            faculty_email=transaction.faculty_email if transaction else None,
            faculty_id=transaction.faculty_id if transaction else None,
            reported_by_id=reported_by_id,
            damage_reason=reason,
            remarks=remarks,
            status="reported",
            reported_at=now,
            updated_at=now,
        )
        db.add(log)
        logs.append(log)
    if logs:
        logger.info(
            "Damage reported for %s assets (%s)",
            len(logs),
            transaction.transaction_id if transaction else "no transaction",
        )
    return logs


def list_damage_history(
    db: Session,
    *,
    lab_id: int,
    item_name: Optional[str] = None,
    vendor: Optional[str] = None,
    status: Optional[str] = None,
    reported_from: Optional[datetime] = None,
    reported_to: Optional[datetime] = None,
) -> list[DamagedAssetLog]:
    query = (
        db.query(DamagedAssetLog)
        .join(ItemAsset, ItemAsset.id == DamagedAssetLog.asset_id)
        .join(Item, Item.id == DamagedAssetLog.item_id)
        .filter(DamagedAssetLog.lab_id == lab_id)
        .options(
            selectinload(DamagedAssetLog.asset),
            selectinload(DamagedAssetLog.item),
            selectinload(DamagedAssetLog.transaction),
            selectinload(DamagedAssetLog.student),
        )
    )
    if item_name:
        query = query.filter(Item.name.ilike(f"%{item_name.strip()}%"))
    if vendor:
        query = query.filter(ItemAsset.vendor.ilike(f"%{vendor.strip()}%"))
    if status:
        query = query.filter(DamagedAssetLog.status == status)
    if reported_from:
        query = query.filter(DamagedAssetLog.reported_at >= as_naive_utc(reported_from))
    if reported_to:
        query = query.filter(DamagedAssetLog.reported_at <= as_naive_utc(reported_to))
    return query.order_by(DamagedAssetLog.reported_at.desc(), DamagedAssetLog.id.desc()).all()


def update_damage_status(
    db: Session,
    *,
    lab_id: int,
    log_id: int,
    status: str,
    remarks: Optional[str] = None,
) -> DamagedAssetLog:
    """Move a damage record along; writing it off retires the asset for good."""
    if status not in DAMAGE_LOG_STATUSES:
        raise ValidationError("Unknown damage status.")
    log = (
        db.query(DamagedAssetLog)
        .filter(DamagedAssetLog.id == log_id, DamagedAssetLog.lab_id == lab_id)
        .with_for_update()
        .first()
    )
    if not log:
        raise NotFoundError("Damage record not found.")
    if status not in DAMAGE_STATUS_FLOW[log.status]:
        raise ConflictError(f"Cannot move a damage record from '{log.status}' to '{status}'.")

    if status == "written_off":
        mark_retired(db, [log.asset_id])
    log.status = status
    if remarks is not None:
        log.remarks = remarks
    log.updated_at = datetime.utcnow()
    return log
