"""initial escrow schema

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 09:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


ORDER_STATUS = sa.Enum(
    "AWAITING_PAYMENT",
    "IN_ESCROW",
    "DELIVERED",
    "COMPLETED",
    "CANCELLED",
    "DISPUTED",
    "ESCALATED",
    "RESOLVED_REFUND",
    "RESOLVED_RELEASE",
    name="order_status",
)
SETTLEMENT_STATUS = sa.Enum("PENDING", "CONFIRMED", "FAILED_SETTLEMENT", name="settlement_status")
LEDGER_ENTRY_KIND = sa.Enum("HOLD", "RELEASE", "REFUND", "PARTIAL_REFUND", name="ledger_entry_kind")
INTENT_KIND = sa.Enum("HOLD", "RELEASE", "REFUND", "PARTIAL_REFUND", name="intent_kind")
INTENT_STATUS = sa.Enum("PENDING", "CONFIRMED", "DECLINED", "FAILED", name="intent_status")
DISPUTE_PARTY = sa.Enum("BUYER", "SELLER", name="dispute_party")
DISPUTE_REASON = sa.Enum(
    "NOT_RECEIVED",
    "CREDENTIALS_INVALID",
    "ACCOUNT_RECALLED",
    "NOT_AS_DESCRIBED",
    "OTHER",
    name="dispute_reason",
)
DISPUTE_STATUS = sa.Enum("OPEN", "UNDER_REVIEW", "RESOLVED", "CLOSED", name="dispute_status")
DISPUTE_PRIORITY = sa.Enum("LOW", "MEDIUM", "HIGH", "URGENT", name="dispute_priority")
DISPUTE_RESOLUTION = sa.Enum("REFUND_BUYER", "RELEASE_SELLER", "SPLIT", name="dispute_resolution")
TIMER_PURPOSE = sa.Enum("AUTO_CONFIRM", "DISPUTE_SLA_ESCALATE", name="timer_purpose")
API_SCOPE = sa.Enum("user", "agent", "admin", name="apiscope")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("listing_id", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", ORDER_STATUS, nullable=False),
        sa.Column("settlement_status", SETTLEMENT_STATUS, nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_id", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_orders")),
        sa.CheckConstraint("amount > 0", name=op.f("ck_orders_amount_positive")),
        sa.CheckConstraint("buyer_id <> seller_id", name=op.f("ck_orders_distinct_parties")),
        sa.UniqueConstraint("idempotency_key", name=op.f("uq_orders_idempotency_key")),
    )
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_settlement_status", "orders", ["settlement_status"])
    op.create_index(op.f("ix_orders_buyer_id"), "orders", ["buyer_id"])
    op.create_index(op.f("ix_orders_seller_id"), "orders", ["seller_id"])

    op.create_table(
        "escrow_ledger",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("kind", LEDGER_ENTRY_KIND, nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("external_ref", sa.String(length=128), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_escrow_ledger")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], name=op.f("fk_escrow_ledger_order_id_orders")),
        sa.CheckConstraint("amount > 0", name=op.f("ck_escrow_ledger_amount_positive")),
        sa.UniqueConstraint("idempotency_key", name=op.f("uq_escrow_ledger_idempotency_key")),
    )
    op.create_index("ix_escrow_ledger_order_kind", "escrow_ledger", ["order_id", "kind"])
    op.create_index(op.f("ix_escrow_ledger_order_id"), "escrow_ledger", ["order_id"])

    op.create_table(
        "settlement_intents",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("kind", INTENT_KIND, nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("status", INTENT_STATUS, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_settlement_intents")),
        sa.ForeignKeyConstraint(
            ["order_id"], ["orders.id"], name=op.f("fk_settlement_intents_order_id_orders")
        ),
        sa.CheckConstraint("amount > 0", name=op.f("ck_settlement_intents_amount_positive")),
        sa.UniqueConstraint("idempotency_key", name=op.f("uq_settlement_intents_idempotency_key")),
    )
    op.create_index("ix_settlement_intents_status", "settlement_intents", ["status"])
    op.create_index(op.f("ix_settlement_intents_order_id"), "settlement_intents", ["order_id"])

    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("raised_by", DISPUTE_PARTY, nullable=False),
        sa.Column("raised_by_user", sa.String(length=64), nullable=False),
        sa.Column("reason_code", DISPUTE_REASON, nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence_refs", sa.JSON(), nullable=False),
        sa.Column("status", DISPUTE_STATUS, nullable=False),
        sa.Column("priority", DISPUTE_PRIORITY, nullable=False),
        sa.Column("resolution", DISPUTE_RESOLUTION, nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("refund_amount", sa.BigInteger(), nullable=True),
        sa.Column("resolved_by", sa.String(length=64), nullable=True),
        sa.Column("assigned_agent", sa.String(length=64), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sla_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_disputes")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], name=op.f("fk_disputes_order_id_orders")),
        sa.UniqueConstraint("order_id", name=op.f("uq_disputes_order_id")),
    )
    op.create_index("ix_disputes_status", "disputes", ["status"])
    op.create_index("ix_disputes_assigned_agent", "disputes", ["assigned_agent"])

    op.create_table(
        "scheduled_timers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("purpose", TIMER_PURPOSE, nullable=False),
        sa.Column("fire_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_scheduled_timers")),
        sa.ForeignKeyConstraint(
            ["order_id"], ["orders.id"], name=op.f("fk_scheduled_timers_order_id_orders")
        ),
    )
    op.create_index("ix_scheduled_timers_fire_at", "scheduled_timers", ["fire_at"])
    op.create_index(op.f("ix_scheduled_timers_order_id"), "scheduled_timers", ["order_id"])
    op.create_index(
        "uq_scheduled_timers_active",
        "scheduled_timers",
        ["order_id", "purpose"],
        unique=True,
        sqlite_where=sa.text("cancelled = 0"),
        postgresql_where=sa.text("cancelled IS FALSE"),
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=100), nullable=False),
        sa.Column("message", sa.String(length=255), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_alerts")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], name=op.f("fk_alerts_order_id_orders")),
    )
    op.create_index("ix_alerts_created_at", "alerts", ["created_at"])
    op.create_index(op.f("ix_alerts_type"), "alerts", ["type"])
    op.create_index(op.f("ix_alerts_order_id"), "alerts", ["order_id"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("prefix", sa.String(length=32), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False),
        sa.Column("subject", sa.String(length=64), nullable=False),
        sa.Column("scope", API_SCOPE, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_api_keys")),
        sa.UniqueConstraint("name", name=op.f("uq_api_keys_name")),
        sa.UniqueConstraint("key_hash", name=op.f("uq_api_keys_key_hash")),
    )
    op.create_index(op.f("ix_api_keys_prefix"), "api_keys", ["prefix"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_audit_logs")),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("owner", sa.String(length=128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_scheduler_locks")),
        sa.UniqueConstraint("name", name=op.f("uq_scheduler_locks_name")),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index(op.f("ix_api_keys_prefix"), table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_index(op.f("ix_alerts_order_id"), table_name="alerts")
    op.drop_index(op.f("ix_alerts_type"), table_name="alerts")
    op.drop_index("ix_alerts_created_at", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("uq_scheduled_timers_active", table_name="scheduled_timers")
    op.drop_index(op.f("ix_scheduled_timers_order_id"), table_name="scheduled_timers")
    op.drop_index("ix_scheduled_timers_fire_at", table_name="scheduled_timers")
    op.drop_table("scheduled_timers")
    op.drop_index("ix_disputes_assigned_agent", table_name="disputes")
    op.drop_index("ix_disputes_status", table_name="disputes")
    op.drop_table("disputes")
    op.drop_index(op.f("ix_settlement_intents_order_id"), table_name="settlement_intents")
    op.drop_index("ix_settlement_intents_status", table_name="settlement_intents")
    op.drop_table("settlement_intents")
    op.drop_index(op.f("ix_escrow_ledger_order_id"), table_name="escrow_ledger")
    op.drop_index("ix_escrow_ledger_order_kind", table_name="escrow_ledger")
    op.drop_table("escrow_ledger")
    op.drop_index(op.f("ix_orders_seller_id"), table_name="orders")
    op.drop_index(op.f("ix_orders_buyer_id"), table_name="orders")
    op.drop_index("ix_orders_settlement_status", table_name="orders")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_table("orders")
    for enum in (
        API_SCOPE,
        TIMER_PURPOSE,
        DISPUTE_RESOLUTION,
        DISPUTE_PRIORITY,
        DISPUTE_STATUS,
        DISPUTE_REASON,
        DISPUTE_PARTY,
        INTENT_STATUS,
        INTENT_KIND,
        LEDGER_ENTRY_KIND,
        SETTLEMENT_STATUS,
        ORDER_STATUS,
    ):
        enum.drop(op.get_bind(), checkfirst=True)
