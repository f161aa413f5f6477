"""credentials

Revision ID: 0001_credentials
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_credentials"
down_revision = None
branch_labels = None
depends_on = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)

    op.create_table(
        "batches",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("farmer_id", sa.String(), nullable=False),
        sa.Column("farmer_name", sa.String(), nullable=True),
        sa.Column("farmer_organization", sa.String(), nullable=True),
        sa.Column("product_type", sa.String(), nullable=False),
        sa.Column("product_name", sa.String(), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=True),
        sa.Column("unit", sa.String(), nullable=True),
        sa.Column("harvest_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("location_json", JSON_TYPE, nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="submitted"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_batches_farmer_id", "batches", ["farmer_id"])

    op.create_table(
        "inspections",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("batch_id", sa.String(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("inspector_id", sa.String(), nullable=True),
        sa.Column("inspector_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="scheduled"),
        sa.Column("outcome_classification", sa.String(), nullable=True),
        sa.Column("quality_grade", sa.String(), nullable=True),
        sa.Column("overall_score", sa.Float(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_inspections_batch_id", "inspections", ["batch_id"])

    op.create_table(
        "issuance_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("inspection_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result_json", JSON_TYPE, nullable=True),
        sa.Column("payload_json", JSON_TYPE, nullable=False),
        # Unique while non-terminal; NULLs never collide so finished jobs do not block new ones.
        sa.Column("active_batch_key", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("active_batch_key", name="uq_issuance_jobs_active_batch_key"),
    )
    op.create_index("ix_issuance_jobs_batch_id", "issuance_jobs", ["batch_id"])
    op.create_index("ix_issuance_jobs_inspection_id", "issuance_jobs", ["inspection_id"])
    op.create_index("ix_issuance_jobs_status_created", "issuance_jobs", ["status", "created_at"])
    op.create_index("ix_issuance_jobs_batch_status", "issuance_jobs", ["batch_id", "status"])

    op.create_table(
        "certificates",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("credential_json", JSON_TYPE, nullable=False),
        sa.Column("provider_credential_id", sa.String(), nullable=True),
        sa.Column("credential_url", sa.String(), nullable=True),
        sa.Column("credential_hash", sa.String(), nullable=True),
        sa.Column("qr_payload", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("issued_by", sa.String(), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.String(), nullable=True),
        sa.Column("revocation_reason", sa.String(), nullable=True),
        sa.Column("metadata_json", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_certificates_batch_id", "certificates", ["batch_id"], unique=True)
    op.create_index("ix_certificates_provider_credential_id", "certificates", ["provider_credential_id"])
    op.create_index("ix_certificates_credential_url", "certificates", ["credential_url"])
    op.create_index("ix_certificates_credential_hash", "certificates", ["credential_hash"])
    op.create_index("ix_certificates_status", "certificates", ["status"])
    op.create_index("ix_certificates_revoked", "certificates", ["revoked"])
    op.create_index("ix_certificates_issued_by", "certificates", ["issued_by"])
    op.create_index("ix_certificates_status_issued", "certificates", ["status", "issued_at"])

    op.create_table(
        "revocations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("certificate_id", sa.String(), sa.ForeignKey("certificates.id"), nullable=False),
        sa.Column("provider_credential_id", sa.String(), nullable=True),
        sa.Column("credential_hash", sa.String(), nullable=True),
        sa.Column("revoked_by", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("metadata_json", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_revocations_certificate_id", "revocations", ["certificate_id"])
    op.create_index("ix_revocations_provider_credential_id", "revocations", ["provider_credential_id"])
    op.create_index("ix_revocations_credential_hash", "revocations", ["credential_hash"])
    op.create_index("ix_revocations_revoked_by", "revocations", ["revoked_by"])
    op.create_index("ix_revocations_hash_created", "revocations", ["credential_hash", "created_at"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data_json", JSON_TYPE, nullable=False),
        sa.Column("priority", sa.String(), nullable=False, server_default="normal"),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", JSON_TYPE, nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("notifications")
    op.drop_table("revocations")
    op.drop_table("certificates")
    op.drop_table("issuance_jobs")
    op.drop_table("inspections")
    op.drop_table("batches")
    op.drop_table("api_keys")
    op.drop_table("users")
