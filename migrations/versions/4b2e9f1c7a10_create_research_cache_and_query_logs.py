"""Create research_cache and query_logs tables.

research_cache holds one serialized result per request fingerprint; expired
rows are removed lazily on read. query_logs is append-only.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "4b2e9f1c7a10"
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "research_cache",
        sa.Column("cache_key", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.LargeBinary(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cache_key", name="pk_research_cache"),
    )
    op.create_index("ix_research_cache_expires_at", "research_cache", ["expires_at"], unique=False)

    op.create_table(
        "query_logs",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("trace_id", sa.String(length=64), nullable=False),
        sa.Column("model", sa.String(length=128), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("inputs", JSON_TYPE, nullable=False),
        sa.Column("search_params", JSON_TYPE, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("duration_ms", sa.Float(), nullable=False),
        sa.Column("source_count", sa.Integer(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_query_logs"),
    )
    op.create_index("ix_query_logs_fingerprint", "query_logs", ["fingerprint"], unique=False)
    op.create_index("ix_query_logs_trace_id", "query_logs", ["trace_id"], unique=False)
    logger.info("research.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.drop_index("ix_query_logs_trace_id", table_name="query_logs")
    op.drop_index("ix_query_logs_fingerprint", table_name="query_logs")
    op.drop_table("query_logs")
    op.drop_index("ix_research_cache_expires_at", table_name="research_cache")
    op.drop_table("research_cache")
    logger.info("research.migration.reverted", extra={"revision": revision})
