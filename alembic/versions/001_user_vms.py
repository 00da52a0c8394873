"""User VMs: one personal machine per user.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_vms",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False, unique=True),
        sa.Column("instance_id", sa.String(255), nullable=True),
        sa.Column(
            "status", sa.String(30), nullable=False, server_default="provisioning"
        ),
        sa.Column("status_message", sa.Text(), nullable=False, server_default=""),
        # Sizing
        sa.Column("vcpus", sa.Integer(), nullable=False),
        sa.Column("memory_mb", sa.Integer(), nullable=False),
        sa.Column("disk_gb", sa.Integer(), nullable=False),
        sa.Column(
            "environment_vars",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        # Network
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("ssh_port", sa.Integer(), nullable=True),
        sa.Column("ssh_username", sa.String(64), nullable=True),
        # Auto-stop
        sa.Column(
            "auto_stop", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        sa.Column(
            "auto_stop_minutes", sa.Integer(), nullable=False, server_default="60"
        ),
        # Usage
        sa.Column(
            "total_runtime_minutes", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_stopped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_user_vms_status_updated_at", "user_vms", ["status", "updated_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_user_vms_status_updated_at", table_name="user_vms")
    op.drop_table("user_vms")
