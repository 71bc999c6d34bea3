"""create mutation engine schema

Revision ID: 20261016_000001
Revises:
Create Date: 2026-10-16 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261016_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "creator_genomes",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("genome_confidence", sa.Float(), nullable=False),
        sa.Column("platform_success", sa.JSON(), nullable=False),
        sa.Column("style_clusters", sa.JSON(), nullable=False),
        sa.Column("baseline_risk_appetite", sa.Float(), nullable=False),
        sa.Column("contextual_risk_modifier", sa.Float(), nullable=False),
        sa.Column("total_creatives", sa.Integer(), nullable=False),
        sa.Column("profitable_creatives", sa.Integer(), nullable=False),
        sa.Column("intra_genome_entropy", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_creator_genomes_user_id"), "creator_genomes", ["user_id"], unique=True)

    op.create_table(
        "regret_memory",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("creative_id", sa.String(), nullable=True),
        sa.Column("tier", sa.Integer(), nullable=False),
        sa.Column("severity", sa.Float(), nullable=False),
        sa.Column("style_cluster", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("context_json", sa.JSON(), nullable=True),
        sa.Column("outcome_type", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_regret_memory_user_id"), "regret_memory", ["user_id"], unique=False)
    op.create_index(op.f("ix_regret_memory_creative_id"), "regret_memory", ["creative_id"], unique=False)
    op.create_index(op.f("ix_regret_memory_style_cluster"), "regret_memory", ["style_cluster"], unique=False)
    op.create_index(op.f("ix_regret_memory_platform"), "regret_memory", ["platform"], unique=False)
    op.create_index(op.f("ix_regret_memory_created_at"), "regret_memory", ["created_at"], unique=False)

    op.create_table(
        "mutation_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("creative_id", sa.String(), nullable=False),
        sa.Column("campaign_id", sa.String(), nullable=True),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("base_style_cluster", sa.String(), nullable=False),
        sa.Column("mutation_key", sa.String(), nullable=False),
        sa.Column("mutations", sa.JSON(), nullable=False),
        sa.Column("mutation_source", sa.String(), nullable=False),
        sa.Column("mutation_score", sa.Float(), nullable=False),
        sa.Column("rank_before", sa.Integer(), nullable=True),
        sa.Column("rank_after", sa.Integer(), nullable=True),
        sa.Column("outcome_metrics", sa.JSON(), nullable=True),
        sa.Column("outcome_class", sa.String(), nullable=False),
        sa.Column("applied", sa.Boolean(), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_mutation_events_user_id"), "mutation_events", ["user_id"], unique=False)
    op.create_index(op.f("ix_mutation_events_creative_id"), "mutation_events", ["creative_id"], unique=False)
    op.create_index(op.f("ix_mutation_events_campaign_id"), "mutation_events", ["campaign_id"], unique=False)
    op.create_index(op.f("ix_mutation_events_platform"), "mutation_events", ["platform"], unique=False)
    op.create_index(op.f("ix_mutation_events_mutation_source"), "mutation_events", ["mutation_source"], unique=False)
    op.create_index(op.f("ix_mutation_events_outcome_class"), "mutation_events", ["outcome_class"], unique=False)
    op.create_index(op.f("ix_mutation_events_created_at"), "mutation_events", ["created_at"], unique=False)

    op.create_table(
        "mutation_alerts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("mutation_source", sa.String(), nullable=True),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("metric_name", sa.String(), nullable=False),
        sa.Column("baseline_value", sa.Float(), nullable=False),
        sa.Column("current_value", sa.Float(), nullable=False),
        sa.Column("change_pct", sa.Float(), nullable=False),
        sa.Column("threshold_pct", sa.Float(), nullable=False),
        sa.Column("sample_size", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_mutation_alerts_alert_type"), "mutation_alerts", ["alert_type"], unique=False)
    op.create_index(op.f("ix_mutation_alerts_mutation_source"), "mutation_alerts", ["mutation_source"], unique=False)
    op.create_index(op.f("ix_mutation_alerts_severity"), "mutation_alerts", ["severity"], unique=False)
    op.create_index(op.f("ix_mutation_alerts_created_at"), "mutation_alerts", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_mutation_alerts_created_at"), table_name="mutation_alerts")
    op.drop_index(op.f("ix_mutation_alerts_severity"), table_name="mutation_alerts")
    op.drop_index(op.f("ix_mutation_alerts_mutation_source"), table_name="mutation_alerts")
    op.drop_index(op.f("ix_mutation_alerts_alert_type"), table_name="mutation_alerts")
    op.drop_table("mutation_alerts")

    op.drop_index(op.f("ix_mutation_events_created_at"), table_name="mutation_events")
    op.drop_index(op.f("ix_mutation_events_outcome_class"), table_name="mutation_events")
    op.drop_index(op.f("ix_mutation_events_mutation_source"), table_name="mutation_events")
    op.drop_index(op.f("ix_mutation_events_platform"), table_name="mutation_events")
    op.drop_index(op.f("ix_mutation_events_campaign_id"), table_name="mutation_events")
    op.drop_index(op.f("ix_mutation_events_creative_id"), table_name="mutation_events")
    op.drop_index(op.f("ix_mutation_events_user_id"), table_name="mutation_events")
    op.drop_table("mutation_events")

    op.drop_index(op.f("ix_regret_memory_created_at"), table_name="regret_memory")
    op.drop_index(op.f("ix_regret_memory_platform"), table_name="regret_memory")
    op.drop_index(op.f("ix_regret_memory_style_cluster"), table_name="regret_memory")
    op.drop_index(op.f("ix_regret_memory_creative_id"), table_name="regret_memory")
    op.drop_index(op.f("ix_regret_memory_user_id"), table_name="regret_memory")
    op.drop_table("regret_memory")

    op.drop_index(op.f("ix_creator_genomes_user_id"), table_name="creator_genomes")
    op.drop_table("creator_genomes")

    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
