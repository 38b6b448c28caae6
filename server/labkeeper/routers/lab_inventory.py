from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from labkeeper.assets.schemas import AssetStatus, ItemAssetResponse
from labkeeper.auth import Identity, require_lab_staff
from labkeeper.catalog import schemas
from labkeeper.catalog.service import (
    StockAdjustment,
    add_item_stock,
    get_lab_item,
    list_lab_item_assets,
    remove_item_from_lab,
    update_item,
)
from labkeeper.db import get_db, run_in_transaction
from labkeeper.errors import LabkeeperError, to_http_exception
from labkeeper.inventory.service import list_lab_inventory


router = APIRouter(prefix="/api/lab/items", tags=["lab-inventory"])


@router.get("", response_model=List[schemas.LabItemResponse])
def list_items(db: Session = Depends(get_db), identity: Identity = Depends(require_lab_staff)):
    return list_lab_inventory(db, identity.lab_id)


@router.post("", response_model=schemas.LabItemMutationResponse, status_code=status.HTTP_201_CREATED)
def add_item(payload: schemas.ItemStockCreate, db: Session = Depends(get_db), identity: Identity = Depends(require_lab_staff)):
    try:
        inventory, created_assets = run_in_transaction(db, add_item_stock, identity, **payload.model_dump())
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    return {"inventory": inventory, "created_assets": created_assets}


@router.get("/{item_id}", response_model=schemas.LabItemResponse)
def get_item(item_id: int, db: Session = Depends(get_db), identity: Identity = Depends(require_lab_staff)):
    try:
        return get_lab_item(db, identity, item_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.patch("/{item_id}", response_model=schemas.LabItemMutationResponse)
def patch_item(
    item_id: int,
    payload: schemas.ItemUpdate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_lab_staff),
):
    try:
        inventory, created_assets = run_in_transaction(
            db,
            update_item,
            identity,
            item_id,
            StockAdjustment(**payload.model_dump()),
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)
    return {"inventory": inventory, "created_assets": created_assets}


@router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_item(item_id: int, db: Session = Depends(get_db), identity: Identity = Depends(require_lab_staff)):
    try:
        run_in_transaction(db, remove_item_from_lab, identity, item_id)
    except LabkeeperError as exc:
        raise to_http_exception(exc)


@router.get("/{item_id}/assets", response_model=List[ItemAssetResponse])
def list_item_assets(
    item_id: int,
    status_filter: Optional[AssetStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_lab_staff),
):
    try:
        return list_lab_item_assets(db, identity, item_id, status=status_filter)
    except LabkeeperError as exc:
        raise to_http_exception(exc)
