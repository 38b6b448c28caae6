from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


Urgency = Literal["low", "medium", "high"]
ComponentRequestStatus = Literal["pending", "reviewed", "approved", "rejected"]


class ComponentRequestCreate(BaseModel):
    lab_id: int
    component_name: str
    category: Optional[str] = None
    quantity_requested: int = 1
    use_case: str
    urgency: Urgency = "medium"


class ComponentRequestStatusUpdate(BaseModel):
    status: Literal["reviewed", "approved", "rejected"]
    admin_remarks: Optional[str] = None


class ComponentRequestResponse(BaseModel):
    id: int
    lab_id: int
    lab_name_snapshot: str
    student_id: int
    student_reg_no: str
    student_email: str
    component_name: str
    category: Optional[str] = None
    quantity_requested: int
    use_case: str
    urgency: Urgency
    status: ComponentRequestStatus
    admin_remarks: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
