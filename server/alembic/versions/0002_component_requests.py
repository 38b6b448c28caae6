"""student component procurement requests

Revision ID: 0002_component_requests
Revises: 0001_initial
Create Date: 2026-10-19 00:00:01.000000
"""
from alembic import op
import sqlalchemy as sa

revision = "0002_component_requests"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


URGENCY = sa.Enum("low", "medium", "high", name="component_request_urgency")
STATUS = sa.Enum("pending", "reviewed", "approved", "rejected", name="component_request_status")


def upgrade() -> None:
    op.create_table(
        "component_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("lab_id", sa.Integer(), sa.ForeignKey("labs.id"), nullable=False),
        sa.Column("lab_name_snapshot", sa.String(length=200), nullable=False),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("student_reg_no", sa.String(length=50), nullable=False),
        sa.Column("student_email", sa.String(length=255), nullable=False),
        sa.Column("component_name", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=100)),
        sa.Column("quantity_requested", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("use_case", sa.Text(), nullable=False),
        sa.Column("urgency", URGENCY, nullable=False),
        sa.Column("status", STATUS, nullable=False),
        sa.Column("admin_remarks", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("quantity_requested >= 1", name="ck_component_requests_quantity"),
    )
    op.create_index("ix_component_requests_lab_id", "component_requests", ["lab_id"])
    op.create_index("ix_component_requests_student_id", "component_requests", ["student_id"])
    op.create_index("ix_component_requests_component_name", "component_requests", ["component_name"])
    op.create_index("ix_component_requests_status", "component_requests", ["status"])


def downgrade() -> None:
    op.drop_index("ix_component_requests_status", table_name="component_requests")
    op.drop_index("ix_component_requests_component_name", table_name="component_requests")
    op.drop_index("ix_component_requests_student_id", table_name="component_requests")
    op.drop_index("ix_component_requests_lab_id", table_name="component_requests")
    op.drop_table("component_requests")
    STATUS.drop(op.get_bind(), checkfirst=True)
    URGENCY.drop(op.get_bind(), checkfirst=True)
