"""add managed admin role definitions

Revision ID: 0002_admin_roles
Revises: 0001_init
Create Date: 2026-10-20
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_admin_roles"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Role definitions with single-parent inheritance for the admin portal.
    op.create_table(
        "admin_roles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "permissions_json",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("parent_role_id", sa.String(), nullable=True),
        sa.Column("is_system", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["parent_role_id"], ["admin_roles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admin_roles_name", "admin_roles", ["name"], unique=True)
    op.create_index("ix_admin_roles_parent_role_id", "admin_roles", ["parent_role_id"], unique=False)

    op.add_column("super_admins", sa.Column("admin_role_id", sa.String(), nullable=True))
    op.create_foreign_key(
        "fk_super_admins_admin_role_id",
        "super_admins",
        "admin_roles",
        ["admin_role_id"],
        ["id"],
    )
    op.create_index("ix_super_admins_admin_role_id", "super_admins", ["admin_role_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_super_admins_admin_role_id", table_name="super_admins")
    op.drop_constraint("fk_super_admins_admin_role_id", "super_admins", type_="foreignkey")
    op.drop_column("super_admins", "admin_role_id")
    op.drop_index("ix_admin_roles_parent_role_id", table_name="admin_roles")
    op.drop_index("ix_admin_roles_name", table_name="admin_roles")
    op.drop_table("admin_roles")
