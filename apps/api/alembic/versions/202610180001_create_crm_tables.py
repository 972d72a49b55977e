"""create crm tenant, relationship, intent, activity and event log tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


TENANT_TABLES = (
    "crm_relationship",
    "crm_intent",
    "crm_interaction",
    "crm_signal",
    "crm_event_log",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_tenant",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("domain", sa.String(length=255), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("domain", name="uq_crm_tenant_domain"),
    )

    op.create_table(
        "crm_relationship",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False, server_default="individual"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("company", sa.String(length=255), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("propensity_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_interaction_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["crm_tenant.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "propensity_score >= 0 AND propensity_score <= 1",
            name="ck_crm_relationship_propensity_range",
        ),
        sa.CheckConstraint("type IN ('individual', 'company')", name="ck_crm_relationship_type"),
    )
    op.create_index("ix_crm_relationship_tenant_id", "crm_relationship", ["tenant_id", "id"], unique=False)
    op.create_index("ix_crm_relationship_tenant_email", "crm_relationship", ["tenant_id", "email"], unique=False)

    op.create_table(
        "crm_intent",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("relationship_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("value", sa.Numeric(15, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="discovery"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("probability", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["crm_tenant.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["relationship_id"], ["crm_relationship.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("value >= 0", name="ck_crm_intent_value_non_negative"),
        sa.CheckConstraint("probability >= 0 AND probability <= 1", name="ck_crm_intent_probability_range"),
        sa.CheckConstraint(
            "stage IN ('discovery', 'qualification', 'proposal', 'negotiation', 'closed-won', 'closed-lost')",
            name="ck_crm_intent_stage",
        ),
        sa.CheckConstraint("priority IN ('low', 'medium', 'high', 'urgent')", name="ck_crm_intent_priority"),
    )
    op.create_index("ix_crm_intent_tenant_id", "crm_intent", ["tenant_id", "id"], unique=False)
    op.create_index("ix_crm_intent_tenant_stage", "crm_intent", ["tenant_id", "stage"], unique=False)
    op.create_index("ix_crm_intent_relationship_id", "crm_intent", ["relationship_id"], unique=False)

    op.create_table(
        "crm_interaction",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("relationship_id", sa.Uuid(), nullable=False),
        sa.Column("intent_id", sa.Uuid(), nullable=True),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("direction", sa.String(length=16), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], ["crm_tenant.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["relationship_id"], ["crm_relationship.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["intent_id"], ["crm_intent.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "type IN ('email', 'call', 'meeting', 'note', 'task')",
            name="ck_crm_interaction_type",
        ),
    )
    op.create_index(
        "ix_crm_interaction_tenant_relationship",
        "crm_interaction",
        ["tenant_id", "relationship_id", "id"],
        unique=False,
    )
    op.create_index("ix_crm_interaction_intent_id", "crm_interaction", ["intent_id"], unique=False)

    op.create_table(
        "crm_signal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("relationship_id", sa.Uuid(), nullable=True),
        sa.Column("intent_id", sa.Uuid(), nullable=True),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("strength", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], ["crm_tenant.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["relationship_id"], ["crm_relationship.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["intent_id"], ["crm_intent.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("strength IN ('weak', 'medium', 'strong')", name="ck_crm_signal_strength"),
    )
    op.create_index("ix_crm_signal_tenant_relationship", "crm_signal", ["tenant_id", "relationship_id"], unique=False)

    op.create_table(
        "crm_event_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], ["crm_tenant.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_event_log_entity",
        "crm_event_log",
        ["tenant_id", "entity_type", "entity_id"],
        unique=False,
    )
    op.create_index(
        "ix_crm_event_log_tenant_event_type",
        "crm_event_log",
        ["tenant_id", "event_type"],
        unique=False,
    )

    if op.get_bind().dialect.name == "postgresql":
        for table in TENANT_TABLES:
            op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
            op.execute(
                f"CREATE POLICY {table}_tenant_isolation ON {table} "
                "USING (tenant_id = NULLIF(current_setting('app.current_tenant_id', true), '')::uuid) "
                "WITH CHECK (tenant_id = NULLIF(current_setting('app.current_tenant_id', true), '')::uuid)"
            )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        for table in reversed(TENANT_TABLES):
            op.execute(f"DROP POLICY IF EXISTS {table}_tenant_isolation ON {table}")
            op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")

    op.drop_index("ix_crm_event_log_tenant_event_type", table_name="crm_event_log")
    op.drop_index("ix_crm_event_log_entity", table_name="crm_event_log")
    op.drop_table("crm_event_log")

    op.drop_index("ix_crm_signal_tenant_relationship", table_name="crm_signal")
    op.drop_table("crm_signal")

    op.drop_index("ix_crm_interaction_intent_id", table_name="crm_interaction")
    op.drop_index("ix_crm_interaction_tenant_relationship", table_name="crm_interaction")
    op.drop_table("crm_interaction")

    op.drop_index("ix_crm_intent_relationship_id", table_name="crm_intent")
    op.drop_index("ix_crm_intent_tenant_stage", table_name="crm_intent")
    op.drop_index("ix_crm_intent_tenant_id", table_name="crm_intent")
    op.drop_table("crm_intent")

    op.drop_index("ix_crm_relationship_tenant_email", table_name="crm_relationship")
    op.drop_index("ix_crm_relationship_tenant_id", table_name="crm_relationship")
    op.drop_table("crm_relationship")

    op.drop_table("crm_tenant")
