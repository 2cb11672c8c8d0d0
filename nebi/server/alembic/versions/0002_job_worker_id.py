"""record the instance that claimed a job

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19 12:00:00.000000
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "0002"
down_revision: str | None = "0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("jobs", sa.Column("worker_id", sa.String(), nullable=True))


def downgrade() -> None:
    op.drop_column("jobs", "worker_id")
