"""Create job state table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("prompt_file", sa.String(), nullable=False),
        sa.Column("response_file", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("agent_role", sa.String(), nullable=False),
        sa.Column("spawned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("used_fallback", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("fallback_model", sa.String(), nullable=True),
        sa.Column("killed_by_user", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("provider", "job_id"),
    )
    op.create_index("ix_jobs_provider", "jobs", ["provider"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_spawned_at", "jobs", ["spawned_at"])
    op.create_index("idx_jobs_provider_status", "jobs", ["provider", "status"])


def downgrade() -> None:
    op.drop_index("idx_jobs_provider_status", table_name="jobs")
    op.drop_index("ix_jobs_spawned_at", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_index("ix_jobs_provider", table_name="jobs")
    op.drop_table("jobs")
