from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from labkeeper.assets.schemas import ItemAssetResponse
from labkeeper.inventory.schemas import LabInventoryResponse


TrackingType = Literal["bulk", "asset"]


class CatalogItemResponse(BaseModel):
    id: int
    sku: str
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    tracking_type: TrackingType
    usable_quantity: int


class ItemResponse(BaseModel):
    id: int
    sku: str
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    tracking_type: TrackingType
    is_student_visible: bool
    is_active: bool
    total_quantity: int
    available_quantity: int
    temp_reserved_quantity: int
    damaged_quantity: int
    usable_quantity: int
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LabItemResponse(LabInventoryResponse):
    item: ItemResponse


class ItemStockCreate(BaseModel):
    sku: str
    quantity: int
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    tracking_type: Optional[TrackingType] = None
    is_student_visible: bool = True
    reserved_quantity: int = 0
    vendor: Optional[str] = None
    invoice_number: Optional[str] = None
    asset_prefix: Optional[str] = None


class ItemUpdate(BaseModel):
    delta: int = 0
    reserved_quantity: Optional[int] = None
    remove_asset_tags: List[str] = Field(default_factory=list)
    vendor: Optional[str] = None
    invoice_number: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    is_student_visible: Optional[bool] = None
    tracking_type: Optional[TrackingType] = None


class LabItemMutationResponse(BaseModel):
    inventory: LabItemResponse
    created_assets: List[ItemAssetResponse] = Field(default_factory=list)


class LabResponse(BaseModel):
    id: int
    name: str
    code: str
    location: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
