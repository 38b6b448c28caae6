from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


TransactionStatus = Literal["raised", "approved", "active", "return_requested", "completed", "overdue", "rejected"]
TransactionType = Literal["regular", "lab_session", "lab_transfer"]
TransferType = Literal["temporary", "permanent"]
Decision = Literal["approve", "reject"]


class TransactionLineCreate(BaseModel):
    lab_id: int
    item_id: int
    quantity: int


class LabLineCreate(BaseModel):
    item_id: int
    quantity: int


class TransactionCreate(BaseModel):
    project_name: str
    faculty_email: str
    faculty_id: Optional[str] = None
    expected_return_date: datetime
    items: List[TransactionLineCreate]


class LabSessionCreate(BaseModel):
    student_reg_no: str
    project_name: str
    expected_return_date: datetime
    lab_slot: Optional[str] = None
    faculty_email: Optional[str] = None
    items: List[LabLineCreate]


class TransferCreate(BaseModel):
    source_lab_id: int
    transfer_type: TransferType
    project_name: str
    expected_return_date: Optional[datetime] = None
    items: List[LabLineCreate]


class DecisionRequest(BaseModel):
    decision: Decision
    reason: Optional[str] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class ExtendReturnRequest(BaseModel):
    new_return_date: datetime


class LineDamage(BaseModel):
    line_id: int
    damaged_quantity: int = Field(0, ge=0)
    damaged_asset_ids: List[int] = Field(default_factory=list)
    damage_reason: Optional[str] = None


class CompleteReturnRequest(BaseModel):
    damages: List[LineDamage] = Field(default_factory=list)
    damage_notes: Optional[str] = None


class TransactionLineResponse(BaseModel):
    id: int
    lab_id: int
    item_id: int
    quantity: int
    temp_reserved_quantity: int
    issued_quantity: int
    returned_quantity: int
    damaged_quantity: int
    asset_ids: List[int] = Field(default_factory=list)
    asset_tags: List[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class TransactionResponse(BaseModel):
    id: int
    transaction_id: str
    project_name: str
    transaction_type: TransactionType
    transfer_type: Optional[TransferType] = None
    status: TransactionStatus
    source_lab_id: Optional[int] = None
    target_lab_id: Optional[int] = None
    student_id: Optional[int] = None
    student_reg_no: Optional[str] = None
    faculty_email: Optional[str] = None
    issued_directly: bool
    lab_slot: Optional[str] = None
    approval_approved: bool
    approval_decided_at: Optional[datetime] = None
    rejected_reason: Optional[str] = None
    issued_by_id: Optional[int] = None
    issued_at: Optional[datetime] = None
    expected_return_date: Optional[datetime] = None
    actual_return_date: Optional[datetime] = None
    damage_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[TransactionLineResponse]

    model_config = ConfigDict(from_attributes=True)


class TimelineEntry(BaseModel):
    action: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    detail: Optional[str] = None
    user_id: Optional[int] = None
    occurred_at: datetime


class TransactionDetailResponse(TransactionResponse):
    timeline: List[TimelineEntry] = Field(default_factory=list)


def build_timeline(events) -> List[TimelineEntry]:
    entries = []
    for event in events:
        from_status = to_status = detail = None
        if event.action == "STATUS_TRANSITION" and event.event_metadata and "->" in event.event_metadata:
            from_status, to_status = (part.strip() for part in event.event_metadata.split("->", 1))
            if from_status == "new":
                from_status = None
        else:
            detail = event.event_metadata
        entries.append(
            TimelineEntry(
                action=event.action,
                from_status=from_status,
                to_status=to_status,
                detail=detail,
                user_id=event.user_id,
                occurred_at=event.created_at,
            )
        )
    return entries


def build_detail_response(transaction, events) -> TransactionDetailResponse:
    base = TransactionResponse.model_validate(transaction)
    return TransactionDetailResponse(**base.model_dump(), timeline=build_timeline(events))
