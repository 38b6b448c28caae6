from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from labkeeper.assets.schemas import DamagedAssetLogResponse, DamageLogStatus, DamageStatusUpdate
from labkeeper.assets.service import list_damage_history, update_damage_status
from labkeeper.auth import Identity, require_lab_staff
from labkeeper.db import get_db, run_in_transaction
from labkeeper.errors import LabkeeperError, to_http_exception


router = APIRouter(prefix="/api/lab/damaged-assets", tags=["damaged-assets"])


@router.get("", response_model=List[DamagedAssetLogResponse])
def damaged_asset_history(
    item: Optional[str] = None,
    vendor: Optional[str] = None,
    status_filter: Optional[DamageLogStatus] = Query(None, alias="status"),
    reported_from: Optional[datetime] = Query(None, alias="from"),
    reported_to: Optional[datetime] = Query(None, alias="to"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_lab_staff),
):
    return list_damage_history(
        db,
        lab_id=identity.lab_id,
        item_name=item,
        vendor=vendor,
        status=status_filter,
        reported_from=reported_from,
        reported_to=reported_to,
    )


@router.patch("/{log_id}", response_model=DamagedAssetLogResponse)
def change_damage_status(
    log_id: int,
    payload: DamageStatusUpdate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_lab_staff),
):
    try:
        return run_in_transaction(
            db,
            update_damage_status,
            lab_id=identity.lab_id,
            log_id=log_id,
            status=payload.status,
            remarks=payload.remarks,
        )
    except LabkeeperError as exc:
        raise to_http_exception(exc)
