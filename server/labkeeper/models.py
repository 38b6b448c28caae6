from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


USER_ROLES = ("student", "faculty", "incharge", "assistant", "super_admin")
STAFF_ROLES = ("incharge", "assistant", "super_admin")
TRACKING_TYPES = ("bulk", "asset")
ASSET_STATUSES = ("available", "issued", "damaged", "retired")
ASSET_CONDITIONS = ("good", "faulty", "broken")
TRANSACTION_TYPES = ("regular", "lab_session", "lab_transfer")
TRANSFER_TYPES = ("temporary", "permanent")
TRANSACTION_STATUSES = (
    "raised",
    "approved",
    "active",
    "return_requested",
    "completed",
    "overdue",
    "rejected",
)
DAMAGE_LOG_STATUSES = ("reported", "under_repair", "written_off")


class Lab(Base):
    __tablename__ = "labs"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False, unique=True)
    code = Column(String(50), nullable=False, unique=True)
    location = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(Enum(*USER_ROLES, name="user_role"), nullable=False)
    lab_id = Column(Integer, ForeignKey("labs.id"), nullable=True, index=True)
    reg_no = Column(String(50), nullable=True, unique=True)
    faculty_code = Column(String(50), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lab = relationship("Lab")


class Item(Base):
    __tablename__ = "items"

    id = Column(Integer, primary_key=True)
    sku = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    category = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    tracking_type = Column(Enum(*TRACKING_TYPES, name="item_tracking_type"), nullable=False, default="bulk")
    is_student_visible = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    min_threshold_quantity = Column(Integer, nullable=False, default=5)
    last_asset_seq = Column(Integer, nullable=False, default=0)
    # Aggregates over lab_inventory rows, reconciled on every lab mutation.
    total_quantity = Column(Integer, nullable=False, default=0)
    available_quantity = Column(Integer, nullable=False, default=0)
    temp_reserved_quantity = Column(Integer, nullable=False, default=0)
    damaged_quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    lab_inventories = relationship("LabInventory", back_populates="item")

    @property
    def usable_quantity(self):
        return max((self.available_quantity or 0) - (self.temp_reserved_quantity or 0), 0)


class LabInventory(Base):
    __tablename__ = "lab_inventory"

    id = Column(Integer, primary_key=True)
    lab_id = Column(Integer, ForeignKey("labs.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    total_quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    temp_reserved_quantity = Column(Integer, nullable=False, default=0)
    issued_quantity = Column(Integer, nullable=False, default=0)
    available_quantity = Column(Integer, nullable=False, default=0)
    damaged_quantity = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    lab = relationship("Lab")
    item = relationship("Item", back_populates="lab_inventories")

    __table_args__ = (
        UniqueConstraint("lab_id", "item_id", name="uq_lab_inventory_lab_item"),
        CheckConstraint("reserved_quantity >= 0 AND reserved_quantity <= total_quantity", name="ck_lab_inventory_reserved"),
        CheckConstraint(
            "total_quantity - reserved_quantity - issued_quantity - temp_reserved_quantity >= 0",
            name="ck_lab_inventory_usable_non_negative",
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    def recompute_available(self) -> int:
        self.available_quantity = (
            (self.total_quantity or 0) - (self.reserved_quantity or 0) - (self.issued_quantity or 0)
        )
        return self.available_quantity

    @property
    def usable_quantity(self):
        return (
            (self.total_quantity or 0)
            - (self.reserved_quantity or 0)
            - (self.issued_quantity or 0)
            - (self.temp_reserved_quantity or 0)
        )


class ItemAsset(Base):
    __tablename__ = "item_assets"

    id = Column(Integer, primary_key=True)
    lab_id = Column(Integer, ForeignKey("labs.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    asset_tag = Column(String(120), nullable=False, unique=True)
    serial_no = Column(String(120), nullable=True)
    vendor = Column(String(200), nullable=False)
    invoice_number = Column(String(100), nullable=True)
    purchase_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    status = Column(Enum(*ASSET_STATUSES, name="item_asset_status"), nullable=False, default="available", index=True)
    condition = Column(Enum(*ASSET_CONDITIONS, name="item_asset_condition"), nullable=False, default="good")
    last_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    item = relationship("Item")
    lab = relationship("Lab")

    __mapper_args__ = {"version_id_col": version}


transaction_item_assets = Table(
    "transaction_item_assets",
    Base.metadata,
    Column("transaction_item_id", Integer, ForeignKey("transaction_items.id", ondelete="CASCADE"), primary_key=True),
    Column("asset_id", Integer, ForeignKey("item_assets.id"), primary_key=True),
)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String(40), nullable=False, unique=True, index=True)
    project_name = Column(String(200), nullable=False)
    transaction_type = Column(Enum(*TRANSACTION_TYPES, name="transaction_type"), nullable=False, default="regular", index=True)
    transfer_type = Column(Enum(*TRANSFER_TYPES, name="transfer_type"), nullable=True)
    status = Column(Enum(*TRANSACTION_STATUSES, name="transaction_status"), nullable=False, default="raised", index=True)

    source_lab_id = Column(Integer, ForeignKey("labs.id"), nullable=True, index=True)
    target_lab_id = Column(Integer, ForeignKey("labs.id"), nullable=True, index=True)

    student_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    student_reg_no = Column(String(50), nullable=True, index=True)
    faculty_email = Column(String(255), nullable=True, index=True)
    faculty_id = Column(String(50), nullable=True)

    issued_directly = Column(Boolean, default=False, nullable=False)
    lab_slot = Column(String(100), nullable=True)

    approval_token = Column(String(128), nullable=True, unique=True)
    approval_approved = Column(Boolean, default=False, nullable=False)
    approval_decided_at = Column(DateTime, nullable=True)
    rejected_reason = Column(Text, nullable=True)

    issued_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    issued_at = Column(DateTime, nullable=True)
    expected_return_date = Column(DateTime, nullable=True, index=True)
    actual_return_date = Column(DateTime, nullable=True)
    damage_notes = Column(Text, nullable=True)
    overdue_notified = Column(Boolean, default=False, nullable=False)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship(
        "TransactionItem",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionItem.id",
    )
    student = relationship("User", foreign_keys=[student_id])
    issued_by = relationship("User", foreign_keys=[issued_by_id])
    source_lab = relationship("Lab", foreign_keys=[source_lab_id])
    target_lab = relationship("Lab", foreign_keys=[target_lab_id])

    __mapper_args__ = {"version_id_col": version}


class TransactionItem(Base):
    __tablename__ = "transaction_items"

    id = Column(Integer, primary_key=True)
    transaction_pk = Column(Integer, ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True)
    lab_id = Column(Integer, ForeignKey("labs.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    # Temp hold this line currently owns in lab_inventory.temp_reserved_quantity.
    temp_reserved_quantity = Column(Integer, nullable=False, default=0)
    issued_quantity = Column(Integer, nullable=False, default=0)
    returned_quantity = Column(Integer, nullable=False, default=0)
    damaged_quantity = Column(Integer, nullable=False, default=0)

    transaction = relationship("Transaction", back_populates="items")
    item = relationship("Item")
    lab = relationship("Lab")
    assets = relationship("ItemAsset", secondary=transaction_item_assets, order_by="ItemAsset.asset_tag")

    @property
    def asset_ids(self):
        return [asset.id for asset in self.assets]

    @property
    def asset_tags(self):
        return [asset.asset_tag for asset in self.assets]


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"

    id = Column(Integer, primary_key=True)
    lab_id = Column(Integer, ForeignKey("labs.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    movement_type = Column(
        Enum(
            "STOCK_ADD",
            "STOCK_REMOVE",
            "RESERVE_SET",
            "TEMP_HOLD",
            "TEMP_RELEASE",
            "ISSUE",
            "RETURN",
            "TRANSFER_OUT",
            "TRANSFER_IN",
            "DAMAGE",
            name="inventory_movement_type",
        ),
        nullable=False,
    )
    qty_delta = Column(Integer, nullable=False)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(String(40), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(40), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    event_metadata = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ComponentRequest(Base):
    __tablename__ = "component_requests"

    id = Column(Integer, primary_key=True)
    lab_id = Column(Integer, ForeignKey("labs.id"), nullable=False, index=True)
    lab_name_snapshot = Column(String(200), nullable=False)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    student_reg_no = Column(String(50), nullable=False)
    student_email = Column(String(255), nullable=False)
    component_name = Column(String(200), nullable=False, index=True)
    category = Column(String(100), nullable=True)
    quantity_requested = Column(Integer, nullable=False, default=1)
    use_case = Column(Text, nullable=False)
    urgency = Column(Enum("low", "medium", "high", name="component_request_urgency"), nullable=False, default="medium")
    status = Column(
        Enum("pending", "reviewed", "approved", "rejected", name="component_request_status"),
        nullable=False,
        default="pending",
        index=True,
    )
    admin_remarks = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (CheckConstraint("quantity_requested >= 1", name="ck_component_requests_quantity"),)


class DamagedAssetLog(Base):
    __tablename__ = "damaged_asset_logs"

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey("item_assets.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    # Lab that owned the asset when the damage was reported.
    lab_id = Column(Integer, ForeignKey("labs.id"), nullable=False, index=True)
    transaction_pk = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    faculty_email = Column(String(255), nullable=True)
    faculty_id = Column(String(50), nullable=True)
    reported_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    damage_reason = Column(Text, nullable=True)
    remarks = Column(Text, nullable=True)
    status = Column(
        Enum(*DAMAGE_LOG_STATUSES, name="damaged_asset_log_status"),
        nullable=False,
        default="reported",
        index=True,
    )
    reported_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    asset = relationship("ItemAsset")
    item = relationship("Item")
    transaction = relationship("Transaction")
    student = relationship("User", foreign_keys=[student_id])

    @property
    def asset_tag(self):
        return self.asset.asset_tag if self.asset else None

    @property
    def vendor(self):
        return self.asset.vendor if self.asset else None

    @property
    def item_name(self):
        return self.item.name if self.item else None

    @property
    def sku(self):
        return self.item.sku if self.item else None

    @property
    def transaction_id(self):
        return self.transaction.transaction_id if self.transaction else None

    @property
    def student_reg_no(self):
        return self.student.reg_no if self.student else None
