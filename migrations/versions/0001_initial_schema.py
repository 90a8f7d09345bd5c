"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-02-02 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create every table declared on the model metadata."""
    from app.polimaks.models import Base

    # Check if tables already exist (idempotent)
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())
    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            table.create(bind=conn)


def downgrade() -> None:
    from app.polimaks.models import Base

    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())
    for table in reversed(Base.metadata.sorted_tables):
        if table.name in existing_tables:
            table.drop(bind=conn)
