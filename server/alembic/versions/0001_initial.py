"""initial labs, catalogue, lab inventory and transactions

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


USER_ROLE = sa.Enum("student", "faculty", "incharge", "assistant", "super_admin", name="user_role")
TRACKING_TYPE = sa.Enum("bulk", "asset", name="item_tracking_type")
ASSET_STATUS = sa.Enum("available", "issued", "damaged", "retired", name="item_asset_status")
ASSET_CONDITION = sa.Enum("good", "faulty", "broken", name="item_asset_condition")
TRANSACTION_TYPE = sa.Enum("regular", "lab_session", "lab_transfer", name="transaction_type")
TRANSFER_TYPE = sa.Enum("temporary", "permanent", name="transfer_type")
TRANSACTION_STATUS = sa.Enum(
    "raised",
    "approved",
    "active",
    "return_requested",
    "completed",
    "overdue",
    "rejected",
    name="transaction_status",
)
MOVEMENT_TYPE = sa.Enum(
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
)


def upgrade() -> None:
    op.create_table(
        "labs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False, unique=True),
        sa.Column("code", sa.String(length=50), nullable=False, unique=True),
        sa.Column("location", sa.String(length=255)),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("role", USER_ROLE, nullable=False),
        sa.Column("lab_id", sa.Integer(), sa.ForeignKey("labs.id")),
        sa.Column("reg_no", sa.String(length=50), unique=True),
        sa.Column("faculty_code", sa.String(length=50)),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_lab_id", "users", ["lab_id"])

    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sku", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=100)),
        sa.Column("description", sa.Text()),
        sa.Column("tracking_type", TRACKING_TYPE, nullable=False),
        sa.Column("is_student_visible", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("min_threshold_quantity", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("last_asset_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("temp_reserved_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("damaged_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_items_sku", "items", ["sku"], unique=True)

    op.create_table(
        "lab_inventory",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("lab_id", sa.Integer(), sa.ForeignKey("labs.id"), nullable=False),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("total_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("temp_reserved_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issued_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("damaged_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("lab_id", "item_id", name="uq_lab_inventory_lab_item"),
        sa.CheckConstraint("reserved_quantity >= 0 AND reserved_quantity <= total_quantity", name="ck_lab_inventory_reserved"),
        sa.CheckConstraint(
            "total_quantity - reserved_quantity - issued_quantity - temp_reserved_quantity >= 0",
            name="ck_lab_inventory_usable_non_negative",
        ),
    )
    op.create_index("ix_lab_inventory_lab_id", "lab_inventory", ["lab_id"])
    op.create_index("ix_lab_inventory_item_id", "lab_inventory", ["item_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("transaction_id", sa.String(length=40), nullable=False),
        sa.Column("project_name", sa.String(length=200), nullable=False),
        sa.Column("transaction_type", TRANSACTION_TYPE, nullable=False),
        sa.Column("transfer_type", TRANSFER_TYPE),
        sa.Column("status", TRANSACTION_STATUS, nullable=False),
        sa.Column("source_lab_id", sa.Integer(), sa.ForeignKey("labs.id")),
        sa.Column("target_lab_id", sa.Integer(), sa.ForeignKey("labs.id")),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("student_reg_no", sa.String(length=50)),
        sa.Column("faculty_email", sa.String(length=255)),
        sa.Column("faculty_id", sa.String(length=50)),
        sa.Column("issued_directly", sa.Boolean(), nullable=False),
        sa.Column("lab_slot", sa.String(length=100)),
        sa.Column("approval_token", sa.String(length=128), unique=True),
        sa.Column("approval_approved", sa.Boolean(), nullable=False),
        sa.Column("approval_decided_at", sa.DateTime()),
        sa.Column("rejected_reason", sa.Text()),
        sa.Column("issued_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("issued_at", sa.DateTime()),
        sa.Column("expected_return_date", sa.DateTime()),
        sa.Column("actual_return_date", sa.DateTime()),
        sa.Column("damage_notes", sa.Text()),
        sa.Column("overdue_notified", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_transactions_transaction_id", "transactions", ["transaction_id"], unique=True)
    op.create_index("ix_transactions_transaction_type", "transactions", ["transaction_type"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_source_lab_id", "transactions", ["source_lab_id"])
    op.create_index("ix_transactions_target_lab_id", "transactions", ["target_lab_id"])
    op.create_index("ix_transactions_student_id", "transactions", ["student_id"])
    op.create_index("ix_transactions_student_reg_no", "transactions", ["student_reg_no"])
    op.create_index("ix_transactions_faculty_email", "transactions", ["faculty_email"])
    op.create_index("ix_transactions_expected_return_date", "transactions", ["expected_return_date"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])

    op.create_table(
        "item_assets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("lab_id", sa.Integer(), sa.ForeignKey("labs.id"), nullable=False),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("asset_tag", sa.String(length=120), nullable=False, unique=True),
        sa.Column("serial_no", sa.String(length=120)),
        sa.Column("vendor", sa.String(length=200), nullable=False),
        sa.Column("invoice_number", sa.String(length=100)),
        sa.Column("purchase_date", sa.DateTime(), nullable=False),
        sa.Column("status", ASSET_STATUS, nullable=False),
        sa.Column("condition", ASSET_CONDITION, nullable=False),
        sa.Column("last_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_item_assets_lab_id", "item_assets", ["lab_id"])
    op.create_index("ix_item_assets_item_id", "item_assets", ["item_id"])
    op.create_index("ix_item_assets_status", "item_assets", ["status"])

    op.create_table(
        "transaction_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_pk",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("lab_id", sa.Integer(), sa.ForeignKey("labs.id"), nullable=False),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("temp_reserved_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issued_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("returned_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("damaged_quantity", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_transaction_items_transaction_pk", "transaction_items", ["transaction_pk"])
    op.create_index("ix_transaction_items_lab_id", "transaction_items", ["lab_id"])
    op.create_index("ix_transaction_items_item_id", "transaction_items", ["item_id"])

    op.create_table(
        "transaction_item_assets",
        sa.Column(
            "transaction_item_id",
            sa.Integer(),
            sa.ForeignKey("transaction_items.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("asset_id", sa.Integer(), sa.ForeignKey("item_assets.id"), primary_key=True),
    )

    op.create_table(
        "inventory_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("lab_id", sa.Integer(), sa.ForeignKey("labs.id"), nullable=False),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("movement_type", MOVEMENT_TYPE, nullable=False),
        sa.Column("qty_delta", sa.Integer(), nullable=False),
        sa.Column("reference_type", sa.String(length=50)),
        sa.Column("reference_id", sa.String(length=40)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_inventory_movements_lab_id", "inventory_movements", ["lab_id"])
    op.create_index("ix_inventory_movements_item_id", "inventory_movements", ["item_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=40), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("event_metadata", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_entity_id", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_inventory_movements_item_id", table_name="inventory_movements")
    op.drop_index("ix_inventory_movements_lab_id", table_name="inventory_movements")
    op.drop_table("inventory_movements")
    op.drop_table("transaction_item_assets")
    op.drop_index("ix_transaction_items_item_id", table_name="transaction_items")
    op.drop_index("ix_transaction_items_lab_id", table_name="transaction_items")
    op.drop_index("ix_transaction_items_transaction_pk", table_name="transaction_items")
    op.drop_table("transaction_items")
    op.drop_index("ix_item_assets_status", table_name="item_assets")
    op.drop_index("ix_item_assets_item_id", table_name="item_assets")
    op.drop_index("ix_item_assets_lab_id", table_name="item_assets")
    op.drop_table("item_assets")
    for index_name in (
        "ix_transactions_created_at",
        "ix_transactions_expected_return_date",
        "ix_transactions_faculty_email",
        "ix_transactions_student_reg_no",
        "ix_transactions_student_id",
        "ix_transactions_target_lab_id",
        "ix_transactions_source_lab_id",
        "ix_transactions_status",
        "ix_transactions_transaction_type",
        "ix_transactions_transaction_id",
    ):
        op.drop_index(index_name, table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_lab_inventory_item_id", table_name="lab_inventory")
    op.drop_index("ix_lab_inventory_lab_id", table_name="lab_inventory")
    op.drop_table("lab_inventory")
    op.drop_index("ix_items_sku", table_name="items")
    op.drop_table("items")
    op.drop_index("ix_users_lab_id", table_name="users")
    op.drop_table("users")
    op.drop_table("labs")
    for enum_type in (
        MOVEMENT_TYPE,
        TRANSACTION_STATUS,
        TRANSFER_TYPE,
        TRANSACTION_TYPE,
        ASSET_CONDITION,
        ASSET_STATUS,
        TRACKING_TYPE,
        USER_ROLE,
    ):
        enum_type.drop(op.get_bind(), checkfirst=True)
