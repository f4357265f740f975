"""Initial PostgreSQL schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create initial schema for the Sales Celebration Bot."""

    # 1. estimates: one row per upstream estimate, insert-once
    op.create_table(
        "estimates",
        sa.Column("estimate_id", sa.String(length=64), nullable=False),
        sa.Column("salesperson", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("customer_name", sa.String(length=300), nullable=False, server_default=""),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("sold_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("option_name", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_tgl", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_big_sale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("raw_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("poll_run_id", sa.String(length=64), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("estimate_id"),
    )
    op.create_index("idx_estimates_sold_at", "estimates", ["sold_at"])

    # 2. delivery_claims: claim-before-send ledger
    op.create_table(
        "delivery_claims",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("estimate_id", sa.String(length=64), nullable=False),
        sa.Column("celebration_type", sa.String(length=20), nullable=False),
        sa.Column("channel_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("message_text", sa.Text(), nullable=True),
        sa.Column("gif_url", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'success', 'failed')",
            name="ck_delivery_claims_status",
        ),
    )
    op.create_index(
        "uq_delivery_claims_key",
        "delivery_claims",
        ["estimate_id", "celebration_type", "channel_id"],
        unique=True,
    )
    op.create_index("idx_delivery_claims_status", "delivery_claims", ["status"])

    # 3. content_items: message templates and GIFs
    op.create_table(
        "content_items",
        sa.Column("content_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column("assigned_to", sa.String(length=200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_for", sa.String(length=200), nullable=True),
        sa.Column("use_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paired_gif_id", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("content_id"),
    )
    op.create_index(
        "idx_content_items_lookup", "content_items", ["kind", "category", "is_active"]
    )

    # 4. channels: chat webhooks
    op.create_table(
        "channels",
        sa.Column("channel_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column(
            "tags",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("channel_id"),
    )

    # 5. salespeople
    op.create_table(
        "salespeople",
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("gender", sa.String(length=20), nullable=True),
        sa.PrimaryKeyConstraint("name"),
    )

    # 6. poll_runs: audit trail
    op.create_table(
        "poll_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("variant", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("events_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("celebrations_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("idx_poll_runs_started_at", "poll_runs", ["started_at"])

    # 7. poll_watermarks
    op.create_table(
        "poll_watermarks",
        sa.Column("poller_key", sa.String(length=50), nullable=False),
        sa.Column("last_poll_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recent_ids", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("poller_key"),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("poll_watermarks")
    op.drop_index("idx_poll_runs_started_at", table_name="poll_runs")
    op.drop_table("poll_runs")
    op.drop_table("salespeople")
    op.drop_table("channels")
    op.drop_index("idx_content_items_lookup", table_name="content_items")
    op.drop_table("content_items")
    op.drop_index("idx_delivery_claims_status", table_name="delivery_claims")
    op.drop_index("uq_delivery_claims_key", table_name="delivery_claims")
    op.drop_table("delivery_claims")
    op.drop_index("idx_estimates_sold_at", table_name="estimates")
    op.drop_table("estimates")
