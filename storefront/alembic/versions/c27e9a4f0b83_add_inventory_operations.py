"""add inventory_operations (idempotency keys for stock batches)

Revision ID: c27e9a4f0b83
Revises: 8f3b6d21c5e4
Create Date: 2026-09-22
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "c27e9a4f0b83"
down_revision: Union[str, Sequence[str], None] = "8f3b6d21c5e4"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPERATION_TYPE = sa.Enum("decrement", "increment", name="inventory_operation_type")


def upgrade() -> None:
    op.create_table(
        "inventory_operations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("operation_key", sa.String(128), nullable=False),
        sa.Column("operation_type", OPERATION_TYPE, nullable=False),
        sa.Column("request_hash", sa.String(64), nullable=False),
        sa.Column("item_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("operation_key", name="uq_inventory_operations_key"),
    )


def downgrade() -> None:
    op.drop_table("inventory_operations")
    OPERATION_TYPE.drop(op.get_bind(), checkfirst=True)
