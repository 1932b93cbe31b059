"""create worker tasks table

Revision ID: 20261019_worker_tasks
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_worker_tasks"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_KEY_PREDICATE = sa.text("idempotency_key IS NOT NULL AND status IN ('PENDING', 'RUNNING')")


def upgrade():
    json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
    op.create_table(
        "worker_tasks",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("payload", json_type, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING",
                "RUNNING",
                "COMPLETED",
                "FAILED",
                "CANCELLED",
                name="worker_task_status",
                native_enum=False,
                length=16,
            ),
            nullable=False,
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("idempotency_key", sa.String(length=190), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("result", json_type, nullable=True),
        sa.Column("locked_by", sa.String(length=255), nullable=True),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_worker_tasks_type", "worker_tasks", ["type"])
    op.create_index("ix_worker_tasks_status", "worker_tasks", ["status"])
    op.create_index("ix_worker_tasks_scheduled_at", "worker_tasks", ["scheduled_at"])
    op.create_index("ix_worker_tasks_locked_by", "worker_tasks", ["locked_by"])
    op.create_index("ix_worker_tasks_locked_until", "worker_tasks", ["locked_until"])
    op.create_index("ix_worker_tasks_pending", "worker_tasks", ["status", "priority", "scheduled_at"])
    op.create_index("ix_worker_tasks_stale", "worker_tasks", ["status", "locked_until"])
    op.create_index("ix_worker_tasks_cleanup", "worker_tasks", ["status", "finished_at"])
    op.create_index(
        "ix_worker_tasks_idempotency_active",
        "worker_tasks",
        ["idempotency_key"],
        unique=True,
        postgresql_where=ACTIVE_KEY_PREDICATE,
        sqlite_where=ACTIVE_KEY_PREDICATE,
    )


def downgrade():
    op.drop_index("ix_worker_tasks_idempotency_active", table_name="worker_tasks")
    op.drop_index("ix_worker_tasks_cleanup", table_name="worker_tasks")
    op.drop_index("ix_worker_tasks_stale", table_name="worker_tasks")
    op.drop_index("ix_worker_tasks_pending", table_name="worker_tasks")
    op.drop_index("ix_worker_tasks_locked_until", table_name="worker_tasks")
    op.drop_index("ix_worker_tasks_locked_by", table_name="worker_tasks")
    op.drop_index("ix_worker_tasks_scheduled_at", table_name="worker_tasks")
    op.drop_index("ix_worker_tasks_status", table_name="worker_tasks")
    op.drop_index("ix_worker_tasks_type", table_name="worker_tasks")
    op.drop_table("worker_tasks")
