"""damaged asset history

Revision ID: 0003_damaged_asset_logs
Revises: 0002_component_requests
Create Date: 2026-10-19 00:00:02.000000
"""
from alembic import op
import sqlalchemy as sa

revision = "0003_damaged_asset_logs"
down_revision = "0002_component_requests"
branch_labels = None
depends_on = None


STATUS = sa.Enum("reported", "under_repair", "written_off", name="damaged_asset_log_status")


def upgrade() -> None:
    op.create_table(
        "damaged_asset_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("asset_id", sa.Integer(), sa.ForeignKey("item_assets.id"), nullable=False),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("lab_id", sa.Integer(), sa.ForeignKey("labs.id"), nullable=False),
        sa.Column("transaction_pk", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("faculty_email", sa.String(length=255)),
        sa.Column("faculty_id", sa.String(length=50)),
        sa.Column("reported_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("damage_reason", sa.Text()),
        sa.Column("remarks", sa.Text()),
        sa.Column("status", STATUS, nullable=False),
        sa.Column("reported_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_damaged_asset_logs_asset_id", "damaged_asset_logs", ["asset_id"])
    op.create_index("ix_damaged_asset_logs_item_id", "damaged_asset_logs", ["item_id"])
    op.create_index("ix_damaged_asset_logs_lab_id", "damaged_asset_logs", ["lab_id"])
    op.create_index("ix_damaged_asset_logs_status", "damaged_asset_logs", ["status"])
    op.create_index("ix_damaged_asset_logs_reported_at", "damaged_asset_logs", ["reported_at"])


def downgrade() -> None:
    op.drop_index("ix_damaged_asset_logs_reported_at", table_name="damaged_asset_logs")
    op.drop_index("ix_damaged_asset_logs_status", table_name="damaged_asset_logs")
    op.drop_index("ix_damaged_asset_logs_lab_id", table_name="damaged_asset_logs")
    op.drop_index("ix_damaged_asset_logs_item_id", table_name="damaged_asset_logs")
    op.drop_index("ix_damaged_asset_logs_asset_id", table_name="damaged_asset_logs")
    op.drop_table("damaged_asset_logs")
    STATUS.drop(op.get_bind(), checkfirst=True)
