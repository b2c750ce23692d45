"""create job, error and ingestion tables

Revision ID: 3c1f9a7d52e0
Revises:
Create Date: 2025-10-06 09:41:17.204331

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3c1f9a7d52e0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "owner_id", sa.UUID(as_uuid=True), nullable=False, comment="Owner scope"
        ),
        sa.Column("kind", sa.Text, nullable=False, comment="Job kind"),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="queued",
            comment="Job status: queued|processing|done|error|retrying",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Number of times the job entered processing",
        ),
        sa.Column(
            "batch_id", sa.Text, nullable=True, comment="Batch grouping identifier"
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            server_default="{}",
            comment="Job-specific parameters",
        ),
        sa.Column(
            "last_error",
            sa.Text,
            nullable=True,
            comment="Message of the most recent failure",
        ),
        sa.Column("result", sa.JSON, nullable=True, comment="Handler result data"),
        sa.Column(
            "dedupe_key",
            sa.Text,
            nullable=True,
            comment="Deduplication key for batch jobs",
        ),
        sa.Column(
            "run_after",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Not-before time for delayed retries",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'done', 'error', 'retrying')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("attempts >= 0", name="jobs_attempts_check"),
        sa.UniqueConstraint(
            "owner_id", "dedupe_key", name="uq_jobs_owner_dedupe_key"
        ),
    )
    op.create_index(
        "ix_jobs_owner_status_created", "jobs", ["owner_id", "status", "created_at"]
    )

    op.create_table(
        "error_records",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "owner_id", sa.UUID(as_uuid=True), nullable=False, comment="Owner scope"
        ),
        sa.Column(
            "job_id",
            sa.UUID(as_uuid=True),
            nullable=True,
            comment="Job whose run produced this error",
        ),
        sa.Column("provider", sa.Text, nullable=True, comment="Origin system tag"),
        sa.Column(
            "stage",
            sa.Text,
            nullable=True,
            comment="ingestion|normalization|processing",
        ),
        sa.Column(
            "occurred_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("raw_message", sa.Text, nullable=False),
        sa.Column(
            "classification",
            sa.JSON,
            nullable=True,
            comment="Embedded classification; absent on legacy rows",
        ),
        sa.Column(
            "context",
            sa.JSON,
            nullable=False,
            server_default="{}",
            comment="Operation context",
        ),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "user_acknowledged",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("acknowledged_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "resolved_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Set once, when the cause went away",
        ),
        sa.Column("resolution_method", sa.Text, nullable=True),
        sa.CheckConstraint(
            "retry_count >= 0", name="error_records_retry_count_check"
        ),
    )
    op.create_index(
        "ix_error_records_owner_occurred",
        "error_records",
        ["owner_id", "occurred_at"],
    )
    op.create_index("ix_error_records_job", "error_records", ["job_id"])

    op.create_table(
        "ingestion_records",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "owner_id", sa.UUID(as_uuid=True), nullable=False, comment="Owner scope"
        ),
        sa.Column(
            "source", sa.Text, nullable=False, comment="Origin system, e.g. provider_a"
        ),
        sa.Column(
            "source_id",
            sa.Text,
            nullable=False,
            comment="Identifier within the origin system",
        ),
        sa.Column(
            "batch_id",
            sa.Text,
            nullable=True,
            comment="Sync batch that last touched the record",
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            server_default="{}",
            comment="Raw content",
        ),
        sa.Column(
            "source_meta",
            sa.JSON,
            nullable=False,
            server_default="{}",
            comment="Source metadata",
        ),
        sa.Column(
            "occurred_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the item happened at the source",
        ),
        sa.Column(
            "linked_entity_id",
            sa.UUID(as_uuid=True),
            nullable=True,
            comment="Downstream entity matched to this record",
        ),
        sa.Column(
            "normalized", sa.JSON, nullable=True, comment="Normalized representation"
        ),
        sa.Column("normalized_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "owner_id", "source", "source_id", name="uq_ingestion_owner_source_item"
        ),
    )
    op.create_index(
        "ix_ingestion_owner_batch", "ingestion_records", ["owner_id", "batch_id"]
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("ingestion_records")
    op.drop_table("error_records")
    op.drop_table("jobs")
