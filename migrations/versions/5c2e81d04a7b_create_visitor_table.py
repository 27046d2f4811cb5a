"""create visitor table

Revision ID: 5c2e81d04a7b
Revises:
Create Date: 2026-10-19 09:12:41.318204

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5c2e81d04a7b"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the visitor presence table."""
    op.create_table(
        "visitor",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=128), nullable=False),
        sa.Column("socket_id", sa.String(length=64), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=False),
        sa.Column("country", sa.String(length=64), nullable=False),
        sa.Column("city", sa.String(length=128), nullable=False),
        sa.Column("page", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False),
        sa.Column("first_visit", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id"),
    )
    op.create_index("ix_visitor_socket_id", "visitor", ["socket_id"])
    op.create_index("ix_visitor_is_active", "visitor", ["is_active"])
    op.create_index("ix_visitor_first_visit", "visitor", ["first_visit"])
    op.create_index(
        "ix_visitor_last_activity_is_active",
        "visitor",
        ["last_activity", "is_active"],
    )


def downgrade() -> None:
    """Drop the visitor presence table."""
    op.drop_index("ix_visitor_last_activity_is_active", table_name="visitor")
    op.drop_index("ix_visitor_first_visit", table_name="visitor")
    op.drop_index("ix_visitor_is_active", table_name="visitor")
    op.drop_index("ix_visitor_socket_id", table_name="visitor")
    op.drop_table("visitor")
