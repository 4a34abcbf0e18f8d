"""Track ledger rows folded into the materialized views

Revision ID: 002
Revises: 001
Create Date: 2024-03-04 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table(
        "applied_attributions",
        sa.Column("attribution_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("applied_by", sa.String(length=20), nullable=False),
        sa.Column(
            "applied_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "applied_by IN ('payment', 'reconciliation')", name="valid_applied_by"
        ),
        sa.PrimaryKeyConstraint("attribution_id"),
    )

    # Rows recorded before this revision are already reflected in the views
    op.execute(
        "INSERT INTO applied_attributions (attribution_id, applied_by) "
        "SELECT id, 'reconciliation' FROM payment_attributions WHERE creator_id IS NOT NULL"
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("applied_attributions")
