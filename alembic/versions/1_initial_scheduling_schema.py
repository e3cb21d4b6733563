"""initial scheduling schema

Revision ID: 1
Revises:
Create Date: 2025-01-06 09:00:00.000000

"""
from alembic import op

from app.database import Base
from app import models  # noqa: F401


# revision identifiers, used by Alembic.
revision = '1'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Baseline: every table as declared in app.models at this revision
    Base.metadata.create_all(bind=op.get_bind())


def downgrade():
    Base.metadata.drop_all(bind=op.get_bind())
