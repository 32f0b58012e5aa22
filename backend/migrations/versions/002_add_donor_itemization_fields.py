"""Add donor name, address, employer and occupation to donations

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 09:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

COLUMNS = (
    ('donor_name', sa.String(length=255)),
    ('donor_address', sa.Text()),
    ('donor_employer', sa.String(length=255)),
    ('donor_occupation', sa.String(length=255)),
)


def upgrade() -> None:
    # Columns exist already when Base.metadata.create_all built the table
    existing = {c['name'] for c in inspect(op.get_bind()).get_columns('donations')}
    for name, column_type in COLUMNS:
        if name not in existing:
            op.add_column('donations', sa.Column(name, column_type, nullable=True))


def downgrade() -> None:
    for name, _ in reversed(COLUMNS):
        op.drop_column('donations', name)
