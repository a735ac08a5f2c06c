"""index document relationship fields

Revision ID: 202610200001
Revises: 202610190001
Create Date: 2026-10-20 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610200001"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

RELATIONSHIP_FIELDS = ("user1_id", "user2_id", "status", "conversation_id", "sender_id", "user_id")


def _extract(field: str) -> sa.TextClause:
    if op.get_bind().dialect.name == "postgresql":
        return sa.text(f"(body ->> '{field}')")
    return sa.text(f"json_extract(body, '$.\"{field}\"')")


def upgrade() -> None:
    for field in RELATIONSHIP_FIELDS:
        op.create_index(f"ix_documents_body_{field}", "documents", ["collection", _extract(field)], unique=False)


def downgrade() -> None:
    for field in RELATIONSHIP_FIELDS:
        op.drop_index(f"ix_documents_body_{field}", table_name="documents")
