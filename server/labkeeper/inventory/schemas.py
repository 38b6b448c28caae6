from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class LabInventoryResponse(BaseModel):
    id: int
    lab_id: int
    item_id: int
    total_quantity: int
    reserved_quantity: int
    temp_reserved_quantity: int
    issued_quantity: int
    available_quantity: int
    damaged_quantity: int
    usable_quantity: int
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LabAvailabilityResponse(BaseModel):
    lab_id: int
    lab_name: Optional[str] = None
    lab_code: Optional[str] = None
    usable_quantity: int
