"""tenant contacts and module ordering

Revision ID: 0002_tenant_contacts
Revises: 0001_init
Create Date: 2026-10-18 15:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_tenant_contacts"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "tenant_modules",
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "tenant_contacts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_tenant_contacts_tenant_id", "tenant_contacts", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_tenant_contacts_tenant_id", table_name="tenant_contacts")
    op.drop_table("tenant_contacts")
    op.drop_column("tenant_modules", "position")
