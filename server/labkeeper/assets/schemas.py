from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


AssetStatus = Literal["available", "issued", "damaged", "retired"]
AssetCondition = Literal["good", "faulty", "broken"]


class ItemAssetResponse(BaseModel):
    id: int
    lab_id: int
    item_id: int
    asset_tag: str
    serial_no: Optional[str] = None
    vendor: str
    invoice_number: Optional[str] = None
    status: AssetStatus
    condition: AssetCondition
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


DamageLogStatus = Literal["reported", "under_repair", "written_off"]


class DamagedAssetLogResponse(BaseModel):
    id: int
    asset_id: int
    asset_tag: Optional[str] = None
    vendor: Optional[str] = None
    item_id: int
    item_name: Optional[str] = None
    sku: Optional[str] = None
    lab_id: int
    transaction_id: Optional[str] = None
    student_id: Optional[int] = None
    student_reg_no: Optional[str] = None
    faculty_email: Optional[str] = None
    faculty_id: Optional[str] = None
    damage_reason: Optional[str] = None
    remarks: Optional[str] = None
    status: DamageLogStatus
    reported_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DamageStatusUpdate(BaseModel):
    status: DamageLogStatus
    remarks: Optional[str] = None
