"""booking lifecycle schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "recurrences",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("service_category_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("quote_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("frequency", sa.String(length=20), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("time", sa.Time(), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("postal_code", sa.String(length=10), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("next_occurrence", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("frequency IN ('weekly', 'biweekly', 'monthly')", name="ck_recurrences_frequency"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_recurrences_client_id", "recurrences", ["client_id"], unique=False)
    op.create_index("ix_recurrences_provider_id", "recurrences", ["provider_id"], unique=False)
    op.create_index("ix_recurrences_active_next", "recurrences", ["is_active", "next_occurrence"], unique=False)

    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reference_number", sa.String(length=32), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("quote_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("service_request_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("service_category_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("recurrence_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("postal_code", sa.String(length=10), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("scheduled_time", sa.Time(), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("actual_start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'scheduled'")),
        sa.Column("completion_notes", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_sent_24h", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reminder_sent_2h", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "status IN ('scheduled', 'confirmed', 'in_progress', 'completed', 'cancelled')",
            name="ck_bookings_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_bookings_amount_positive"),
        sa.CheckConstraint("duration > 0", name="ck_bookings_duration_positive"),
        sa.ForeignKeyConstraint(["recurrence_id"], ["recurrences.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference_number", name="uq_bookings_reference_number"),
        sa.UniqueConstraint("quote_id", name="uq_bookings_quote_id"),
    )
    op.create_index(
        "ix_bookings_provider_date_status", "bookings", ["provider_id", "scheduled_date", "status"], unique=False
    )
    op.create_index("ix_bookings_client_status", "bookings", ["client_id", "status"], unique=False)
    op.create_index("ix_bookings_recurrence_date", "bookings", ["recurrence_id", "scheduled_date"], unique=False)

    op.create_table(
        "booking_status_history",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("old_status", sa.String(length=20), nullable=True),
        sa.Column("new_status", sa.String(length=20), nullable=False),
        sa.Column("changed_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_booking_status_history_booking_id", "booking_status_history", ["booking_id"], unique=False)

    op.create_table(
        "provider_availabilities",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_provider_availabilities_day"),
        sa.CheckConstraint("start_time < end_time", name="ck_provider_availabilities_range"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_provider_availabilities_provider_day", "provider_availabilities", ["provider_id", "day_of_week"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_provider_availabilities_provider_day", table_name="provider_availabilities")
    op.drop_table("provider_availabilities")
    op.drop_index("ix_booking_status_history_booking_id", table_name="booking_status_history")
    op.drop_table("booking_status_history")
    op.drop_index("ix_bookings_recurrence_date", table_name="bookings")
    op.drop_index("ix_bookings_client_status", table_name="bookings")
    op.drop_index("ix_bookings_provider_date_status", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_recurrences_active_next", table_name="recurrences")
    op.drop_index("ix_recurrences_provider_id", table_name="recurrences")
    op.drop_index("ix_recurrences_client_id", table_name="recurrences")
    op.drop_table("recurrences")
