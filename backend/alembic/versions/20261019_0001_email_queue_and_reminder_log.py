"""Create email_queue and reminder_log tables."""

from __future__ import annotations

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
        "email_queue",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("to_email", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=500), nullable=False),
        sa.Column("template", sa.String(length=100), nullable=False),
        sa.Column(
            "template_data",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('pending', 'sent', 'failed')", name="ck_email_queue_status"),
        sa.CheckConstraint("attempts >= 0", name="ck_email_queue_attempts_non_negative"),
        sa.CheckConstraint("max_attempts > 0", name="ck_email_queue_max_attempts_positive"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_email_queue_pending", "email_queue", ["status", "created_at"], unique=False)
    op.create_index("idx_email_queue_created", "email_queue", ["created_at"], unique=False)

    op.create_table(
        "reminder_log",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("reminded_on", sa.Date(), nullable=False, server_default=sa.func.current_date()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("task_id", "user_id", "reminded_on", name="unique_reminder_per_task_user_day"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_reminder_log_date", "reminder_log", ["reminded_on"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_reminder_log_date", table_name="reminder_log")
    op.drop_table("reminder_log")
    op.drop_index("idx_email_queue_created", table_name="email_queue")
    op.drop_index("idx_email_queue_pending", table_name="email_queue")
    op.drop_table("email_queue")
