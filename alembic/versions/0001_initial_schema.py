"""initial dispatch schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    job_status = postgresql.ENUM(
        "CREATED", "BROADCASTED", "ASSIGNED", "IN_PROGRESS", "COMPLETED", "CANCELLED",
        name="job_status",
    )
    booking_fee_status = postgresql.ENUM(
        "NOT_REQUIRED", "PENDING", "PAID", "WAIVED", "REFUND_REQUESTED",
        name="booking_fee_status",
    )
    cancelled_by = postgresql.ENUM("CUSTOMER", "PROVIDER", "ADMIN", "SYSTEM", name="cancelled_by")
    verification_status = postgresql.ENUM(
        "PENDING", "APPROVED", "REJECTED", name="verification_status"
    )

    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("reference_number", sa.String(20), nullable=False, unique=True),
        sa.Column("tenant_code", sa.String(2), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("sub_category", sa.String(100)),
        sa.Column("type_tag", sa.String(100)),
        sa.Column("vehicle_type", sa.String(50)),
        sa.Column("audience_tag", sa.String(1)),
        sa.Column("pickup_latitude", sa.Float()),
        sa.Column("pickup_longitude", sa.Float()),
        sa.Column("pickup_address", sa.Text()),
        sa.Column("dropoff_latitude", sa.Float()),
        sa.Column("dropoff_longitude", sa.Float()),
        sa.Column("dropoff_address", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("status", job_status, nullable=False),
        sa.Column("assigned_provider_id", postgresql.UUID(as_uuid=True)),
        sa.Column("provider_of_record_id", postgresql.UUID(as_uuid=True)),
        sa.Column("excluded_provider_ids", postgresql.JSONB(), nullable=False),
        sa.Column("dispatch_attempts", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("estimated_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("booking_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("booking_fee_status", booking_fee_status, nullable=False),
        sa.Column("booking_fee_reference", sa.String(255)),
        sa.Column("pricing_snapshot", postgresql.JSONB(), nullable=False),
        sa.Column("insurance_waiver", postgresql.JSONB()),
        sa.Column("broadcasted_at", sa.DateTime(timezone=True)),
        sa.Column("assigned_at", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_by", cancelled_by),
        sa.Column("cancelled_by_id", postgresql.UUID(as_uuid=True)),
        sa.Column("cancel_reason", sa.Text()),
        sa.Column("refund_eligible", sa.Boolean()),
        sa.Column("refund_reason", sa.String(64)),
        *_timestamps(),
    )
    op.create_index("ix_jobs_tenant_status", "jobs", ["tenant_code", "status"])
    op.create_index("ix_jobs_customer_status", "jobs", ["customer_id", "status"])

    op.create_table(
        "broadcast_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_code", sa.String(2), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("provider_ids", postgresql.JSONB(), nullable=False),
        sa.Column("delivery", postgresql.JSONB(), nullable=False),
        sa.Column("claimed_by_provider_id", postgresql.UUID(as_uuid=True)),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_broadcast_records_job_id", "broadcast_records", ["job_id"])

    op.create_table(
        "provider_states",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_code", sa.String(2), nullable=False),
        sa.Column("display_name", sa.String(200)),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("sub_categories", postgresql.JSONB(), nullable=False),
        sa.Column("type_tags", postgresql.JSONB(), nullable=False),
        sa.Column("vehicle_types", postgresql.JSONB(), nullable=False),
        sa.Column("audience_tag", sa.String(1)),
        sa.Column("latitude", sa.Float()),
        sa.Column("longitude", sa.Float()),
        sa.Column("location_updated_at", sa.DateTime(timezone=True)),
        sa.Column("is_online", sa.Boolean(), nullable=False),
        sa.Column("verification_status", verification_status, nullable=False),
        sa.Column("is_banned", sa.Boolean(), nullable=False),
        sa.Column("suspended_until", sa.DateTime(timezone=True)),
        sa.Column("active_job_id", postgresql.UUID(as_uuid=True)),
        sa.Column("cancel_count", sa.Integer(), nullable=False),
        sa.Column("last_cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("rating", sa.Numeric(3, 2), nullable=False),
        sa.Column("jobs_completed", sa.Integer(), nullable=False),
        sa.Column("push_token", sa.String(512)),
        *_timestamps(),
    )
    op.create_index(
        "ix_provider_states_tenant_role_online",
        "provider_states",
        ["tenant_code", "role", "is_online"],
    )

    op.create_table(
        "pricing_configs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_code", sa.String(2), nullable=False, unique=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("base_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("per_km_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("night_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("weekend_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("night_start_hour", sa.Integer(), nullable=False),
        sa.Column("night_end_hour", sa.Integer(), nullable=False),
        sa.Column("role_pricing", postgresql.JSONB(), nullable=False),
        sa.Column("type_pricing", postgresql.JSONB(), nullable=False),
        sa.Column("category_pricing", postgresql.JSONB(), nullable=False),
        sa.Column("type_multipliers", postgresql.JSONB(), nullable=False),
        sa.Column("vehicle_multipliers", postgresql.JSONB(), nullable=False),
        sa.Column("surge", postgresql.JSONB(), nullable=False),
        sa.Column("service_toggles", postgresql.JSONB(), nullable=False),
        sa.Column("cancellation_policy", postgresql.JSONB(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "insurance_partners",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("partner_code", sa.String(50), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("tenant_code", sa.String(2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "insurance_codes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "partner_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("insurance_partners.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("tenant_code", sa.String(2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("bound_phone", sa.String(32)),
        sa.Column("bound_email", sa.String(255)),
        sa.Column("max_uses", sa.Integer(), nullable=False),
        sa.Column("used_count", sa.Integer(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True)),
        sa.Column("last_used_job_id", postgresql.UUID(as_uuid=True)),
        *_timestamps(),
        sa.UniqueConstraint("partner_id", "code", name="uq_insurance_codes_partner_code"),
    )

    op.create_table(
        "ephemeral_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("namespace", sa.String(64), nullable=False),
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("value", postgresql.JSONB(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("namespace", "key", name="uq_ephemeral_entries_namespace_key"),
    )
    op.create_index("ix_ephemeral_entries_expires_at", "ephemeral_entries", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_ephemeral_entries_expires_at", table_name="ephemeral_entries")
    op.drop_table("ephemeral_entries")
    op.drop_table("insurance_codes")
    op.drop_table("insurance_partners")
    op.drop_table("pricing_configs")
    op.drop_index("ix_provider_states_tenant_role_online", table_name="provider_states")
    op.drop_table("provider_states")
    op.drop_index("ix_broadcast_records_job_id", table_name="broadcast_records")
    op.drop_table("broadcast_records")
    op.drop_index("ix_jobs_customer_status", table_name="jobs")
    op.drop_index("ix_jobs_tenant_status", table_name="jobs")
    op.drop_table("jobs")

    for name in ("verification_status", "cancelled_by", "booking_fee_status", "job_status"):
        op.execute(f"DROP TYPE IF EXISTS {name}")
