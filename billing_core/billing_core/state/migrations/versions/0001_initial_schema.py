"""Initial billing schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

_json = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")
_ts = sa.DateTime(timezone=True)


def upgrade() -> None:
    op.create_table(
        "inbound_events",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("account_id", sa.String(128), nullable=True),
        sa.Column("payload", _json, nullable=False),
        sa.Column("signature_valid", sa.Boolean(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("created_at", _ts, nullable=False),
        sa.Column("processed_at", _ts, nullable=True),
        sa.UniqueConstraint("event_id", name="uq_inbound_events_event_id"),
    )
    op.create_index("ix_inbound_events_account_type", "inbound_events", ["account_id", "event_type"])
    op.create_index("ix_inbound_events_processed", "inbound_events", ["processed", "created_at"])

    op.create_table(
        "businesses",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("contact_email", sa.String(320), nullable=True),
        sa.Column("status", sa.String(64), nullable=False),
        sa.Column("stripe_account_id", sa.String(128), nullable=True, unique=True),
        sa.Column("charges_enabled", sa.Boolean(), nullable=False),
        sa.Column("details_submitted", sa.Boolean(), nullable=False),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False),
        sa.Column("requirements_json", _json, nullable=True),
        sa.Column("last_processed_event_id", sa.String(128), nullable=True),
        sa.Column("created_at", _ts, nullable=False),
        sa.Column("updated_at", _ts, nullable=False),
    )

    op.create_table(
        "business_transitions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("business_id", sa.String(64), sa.ForeignKey("businesses.id"), nullable=False),
        sa.Column("from_status", sa.String(64), nullable=True),
        sa.Column("to_status", sa.String(64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("source_event_id", sa.String(128), nullable=True),
        sa.Column("created_at", _ts, nullable=False),
    )
    op.create_index(
        "ix_business_transitions_business_created",
        "business_transitions",
        ["business_id", "created_at"],
    )

    op.create_table(
        "consumers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("business_id", sa.String(64), sa.ForeignKey("businesses.id"), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("stripe_customer_id", sa.String(128), nullable=True),
        sa.Column("created_at", _ts, nullable=False),
        sa.UniqueConstraint("business_id", "email", name="uq_consumers_business_email"),
    )

    op.create_table(
        "membership_plans",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("business_id", sa.String(64), sa.ForeignKey("businesses.id"), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("pricing_type", sa.String(16), nullable=False),
        sa.Column("base_price", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("interval", sa.String(16), nullable=False),
        sa.Column("stripe_product_id", sa.String(128), nullable=True),
        sa.Column("stripe_price_id", sa.String(128), nullable=True),
        sa.Column("created_at", _ts, nullable=False),
        sa.Column("updated_at", _ts, nullable=False),
    )
    op.create_index("ix_membership_plans_business", "membership_plans", ["business_id", "status"])

    op.create_table(
        "price_queue_items",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("plan_id", sa.String(64), sa.ForeignKey("membership_plans.id"), nullable=False),
        sa.Column("effective_month", sa.Date(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("applied", sa.Boolean(), nullable=False),
        sa.Column("stripe_price_id", sa.String(128), nullable=True),
        sa.Column("applied_at", _ts, nullable=True),
        sa.Column("archived_at", _ts, nullable=True),
        sa.Column("created_at", _ts, nullable=False),
        sa.UniqueConstraint("plan_id", "effective_month", name="uq_price_queue_plan_month"),
    )
    op.create_index("ix_price_queue_plan_applied", "price_queue_items", ["plan_id", "applied"])

    for table_name in ("plan_subscriptions", "legacy_subscriptions"):
        columns = [
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("stripe_subscription_id", sa.String(128), nullable=False, unique=True),
            sa.Column("business_id", sa.String(64), sa.ForeignKey("businesses.id"), nullable=False),
            sa.Column("consumer_id", sa.String(64), sa.ForeignKey("consumers.id"), nullable=False),
            sa.Column("plan_id", sa.String(64), sa.ForeignKey("membership_plans.id"), nullable=False),
            sa.Column("status", sa.String(32), nullable=False),
            sa.Column("current_period_end", _ts, nullable=True),
            sa.Column("paused_at", _ts, nullable=True),
            sa.Column("last_synced_at", _ts, nullable=True),
            sa.Column("created_at", _ts, nullable=False),
        ]
        if table_name == "plan_subscriptions":
            columns += [
                sa.Column("current_period_start", _ts, nullable=True),
                sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
            ]
        op.create_table(table_name, *columns)

    op.create_index("ix_plan_subscriptions_plan_status", "plan_subscriptions", ["plan_id", "status"])
    op.create_index("ix_plan_subscriptions_paused", "plan_subscriptions", ["plan_id", "paused_at"])
    op.create_index("ix_legacy_subscriptions_plan_status", "legacy_subscriptions", ["plan_id", "status"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("business_id", sa.String(64), sa.ForeignKey("businesses.id"), nullable=False),
        sa.Column("alert_type", sa.String(64), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("subject_type", sa.String(32), nullable=True),
        sa.Column("subject_id", sa.String(128), nullable=True),
        sa.Column("metadata_json", _json, nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False),
        sa.Column("resolved_at", _ts, nullable=True),
        sa.Column("resolved_by", sa.String(256), nullable=True),
        sa.Column("created_at", _ts, nullable=False),
    )
    op.create_index("ix_alerts_business_resolved", "alerts", ["business_id", "resolved", "created_at"])
    op.create_index("ix_alerts_subject", "alerts", ["alert_type", "subject_type", "subject_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("business_id", sa.String(64), nullable=False),
        sa.Column("actor", sa.String(256), nullable=False),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(512), nullable=True),
        sa.Column("metadata_json", _json, nullable=True),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("created_at", _ts, nullable=False),
    )
    op.create_index("ix_audit_business_created", "audit_log", ["business_id", "created_at"])
    op.create_index("ix_audit_entity", "audit_log", ["business_id", "entity_type", "entity_id"])


def downgrade() -> None:
    for table_name in (
        "audit_log",
        "alerts",
        "legacy_subscriptions",
        "plan_subscriptions",
        "price_queue_items",
        "membership_plans",
        "consumers",
        "business_transitions",
        "businesses",
        "inbound_events",
    ):
        op.drop_table(table_name)
