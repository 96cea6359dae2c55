"""create estatecrm core tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
    ]


def upgrade() -> None:
    op.create_table(
        "app_user",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_app_user_tenant_id"), "app_user", ["tenant_id"], unique=False)

    op.create_table(
        "activity_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("actor_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_activity_log_actor_id"), "activity_log", ["actor_id"], unique=False)
    op.create_index(op.f("ix_activity_log_entity_id"), "activity_log", ["entity_id"], unique=False)

    op.create_table(
        "property",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("agent_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.String(length=128), nullable=True),
        sa.Column("price", sa.Numeric(14, 2), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="AVAILABLE"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_property_tenant_id"), "property", ["tenant_id"], unique=False)
    op.create_index(op.f("ix_property_agent_id"), "property", ["agent_id"], unique=False)

    op.create_table(
        "contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("agent_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("category", sa.String(length=32), nullable=False, server_default="LEAD"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="ACTIVE"),
        sa.Column("lead_stage", sa.String(length=32), nullable=False, server_default="NEW"),
        sa.Column("lead_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_qualified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("budget", sa.Numeric(14, 2), nullable=True),
        sa.Column("interaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_interaction_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("agent_id", "email", name="uq_contact_agent_email"),
        sa.CheckConstraint("lead_score >= 0 AND lead_score <= 100", name="ck_contact_lead_score_range"),
    )
    op.create_index(op.f("ix_contact_agent_id"), "contact", ["agent_id"], unique=False)

    op.create_table(
        "deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("agent_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("property_id", sa.Uuid(), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="LEAD_IN"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="ACTIVE"),
        sa.Column("value", sa.Numeric(14, 2), nullable=False),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["client_id"], ["contact.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["property_id"], ["property.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("value > 0", name="ck_deal_value_positive"),
    )
    op.create_index(op.f("ix_deal_agent_id"), "deal", ["agent_id"], unique=False)
    op.create_index(op.f("ix_deal_client_id"), "deal", ["client_id"], unique=False)
    op.create_index("ix_deal_agent_stage", "deal", ["agent_id", "stage"], unique=False)

    op.create_table(
        "deal_stage_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("from_stage", sa.String(length=32), nullable=False),
        sa.Column("to_stage", sa.String(length=32), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("changed_by", sa.Uuid(), nullable=False),
        sa.Column("days_in_stage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["deal_id"], ["deal.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_deal_stage_history_deal_id"), "deal_stage_history", ["deal_id"], unique=False)

    op.create_table(
        "availability_slot",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("agent_id", sa.Uuid(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="AVAILABLE"),
        sa.Column("appointment_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("agent_id", "date", "start_time", name="uq_availability_slot_agent_start"),
        sa.CheckConstraint("duration > 0", name="ck_availability_slot_duration_positive"),
    )
    op.create_index(op.f("ix_availability_slot_agent_id"), "availability_slot", ["agent_id"], unique=False)

    op.create_table(
        "appointment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("agent_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("property_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False, server_default="VISIT"),
        sa.Column("priority", sa.String(length=32), nullable=False, server_default="NORMAL"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("estimated_duration", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("actual_duration", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("availability_slot_id", sa.Uuid(), nullable=True),
        sa.Column("rescheduling_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_rescheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_status", sa.String(length=32), nullable=False, server_default="IDLE"),
        sa.Column("sync_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("external_event_id", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["contact_id"], ["contact.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["property_id"], ["property.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["availability_slot_id"], ["availability_slot.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("estimated_duration > 0", name="ck_appointment_duration_positive"),
    )
    op.create_index(op.f("ix_appointment_contact_id"), "appointment", ["contact_id"], unique=False)
    op.create_index("ix_appointment_agent_date", "appointment", ["agent_id", "date"], unique=False)
    op.create_index(
        "uq_appointment_agent_active_start",
        "appointment",
        ["agent_id", "date", "start_time"],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'CONFIRMED')"),
        sqlite_where=sa.text("status IN ('PENDING', 'CONFIRMED')"),
    )

    op.create_table(
        "lead_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=True),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        sa.Column("performed_by_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contact.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_lead_activity_contact_id"), "lead_activity", ["contact_id"], unique=False)

    op.create_table(
        "calendar_sync_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=False),
        sa.Column("operation", sa.String(length=32), nullable=False),
        sa.Column("direction", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("external_event_id", sa.String(length=255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["appointment_id"], ["appointment.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_calendar_sync_log_appointment_id"), "calendar_sync_log", ["appointment_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_calendar_sync_log_appointment_id"), table_name="calendar_sync_log")
    op.drop_table("calendar_sync_log")
    op.drop_index(op.f("ix_lead_activity_contact_id"), table_name="lead_activity")
    op.drop_table("lead_activity")
    op.drop_index("uq_appointment_agent_active_start", table_name="appointment")
    op.drop_index("ix_appointment_agent_date", table_name="appointment")
    op.drop_index(op.f("ix_appointment_contact_id"), table_name="appointment")
    op.drop_table("appointment")
    op.drop_index(op.f("ix_availability_slot_agent_id"), table_name="availability_slot")
    op.drop_table("availability_slot")
    op.drop_index(op.f("ix_deal_stage_history_deal_id"), table_name="deal_stage_history")
    op.drop_table("deal_stage_history")
    op.drop_index("ix_deal_agent_stage", table_name="deal")
    op.drop_index(op.f("ix_deal_client_id"), table_name="deal")
    op.drop_index(op.f("ix_deal_agent_id"), table_name="deal")
    op.drop_table("deal")
    op.drop_index(op.f("ix_contact_agent_id"), table_name="contact")
    op.drop_table("contact")
    op.drop_index(op.f("ix_property_agent_id"), table_name="property")
    op.drop_index(op.f("ix_property_tenant_id"), table_name="property")
    op.drop_table("property")
    op.drop_index(op.f("ix_activity_log_entity_id"), table_name="activity_log")
    op.drop_index(op.f("ix_activity_log_actor_id"), table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_index(op.f("ix_app_user_tenant_id"), table_name="app_user")
    op.drop_table("app_user")
