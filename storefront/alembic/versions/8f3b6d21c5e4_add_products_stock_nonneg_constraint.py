"""add products stock nonneg constraint

Revision ID: 8f3b6d21c5e4
Revises: 4a1c0e7d2b10
Create Date: 2026-09-15
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8f3b6d21c5e4"
down_revision: Union[str, Sequence[str], None] = "4a1c0e7d2b10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TABLE_NAME = "products"
CK_STOCK = "ck_products_stock_nonneg"


def upgrade() -> None:
    # Données importées avant la contrainte : on clampe pour ne pas casser la migration
    op.execute(
        f"""
        UPDATE {TABLE_NAME}
        SET stock = 0
        WHERE stock < 0;
        """
    )

    # Idempotent Postgres
    op.execute(
        f"""
        DO $$
        BEGIN
            IF NOT EXISTS (
                SELECT 1
                FROM pg_constraint c
                JOIN pg_class t ON t.oid = c.conrelid
                WHERE t.relname = '{TABLE_NAME}'
                  AND c.conname = '{CK_STOCK}'
            ) THEN
                ALTER TABLE {TABLE_NAME}
                ADD CONSTRAINT {CK_STOCK}
                CHECK (stock >= 0);
            END IF;
        END $$;
        """
    )


def downgrade() -> None:
    op.execute(f"ALTER TABLE {TABLE_NAME} DROP CONSTRAINT IF EXISTS {CK_STOCK};")
