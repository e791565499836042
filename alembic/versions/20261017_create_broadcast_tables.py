"""Create users, messages, broadcasts, audit_logs and error_logs tables."""
import sqlalchemy as sa
from alembic import op

revision = "20261017_create_broadcast_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(100), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=True, unique=True),
        sa.Column("hashed_password", sa.String(255), nullable=True),
        sa.Column("school", sa.String(255), nullable=True),
        sa.Column("school_id", sa.Integer(), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_school_id", "users", ["school_id"])
    op.create_index("ix_users_deleted_status", "users", ["deleted_at", "status"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("receiver_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("type", sa.String(30), nullable=False, server_default="notification"),
        sa.Column("priority", sa.String(20), nullable=False, server_default="normal"),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_messages_receiver_read_created", "messages", ["receiver_id", "is_read", "created_at"])
    op.create_index("ix_messages_title_created", "messages", ["title", "created_at"])

    op.create_table(
        "broadcasts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("audit_log_id", sa.Integer(), nullable=True),
        sa.Column("error_log_ids", sa.JSON(), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(20), nullable=False, server_default="normal"),
        sa.Column("scope", sa.String(20), nullable=False, server_default="all"),
        sa.Column("filters_snapshot", sa.JSON(), nullable=True),
        sa.Column("target_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("invalid_user_ids", sa.JSON(), nullable=True),
        sa.Column("invalid_user_ids_truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("failed_user_ids", sa.JSON(), nullable=True),
        sa.Column("failed_user_ids_truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("message_ids_snapshot", sa.JSON(), nullable=True),
        sa.Column("message_ids_snapshot_truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("message_map_snapshot", sa.JSON(), nullable=True),
        sa.Column("message_map_snapshot_truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("message_id_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content_hash", sa.String(64), nullable=True),
        sa.Column("email_status", sa.String(20), nullable=False, server_default="skipped"),
        sa.Column("email_delivery", sa.JSON(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_broadcasts_request_id", "broadcasts", ["request_id"])
    op.create_index("ix_broadcasts_content_hash", "broadcasts", ["content_hash"])
    op.create_index("ix_broadcasts_email_status_created", "broadcasts", ["email_status", "created_at"])
    op.create_index("ix_broadcasts_created_by", "broadcasts", ["created_by"])
    op.create_index("ix_broadcasts_created_at", "broadcasts", ["created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=False),
        sa.Column("resource_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_user_created", "audit_logs", ["user_id", "created_at"])
    op.create_index("ix_audit_resource", "audit_logs", ["resource_type", "resource_id"])
    op.create_index("ix_audit_action_created", "audit_logs", ["action", "created_at"])

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("error_type", sa.String(100), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("method", sa.String(10), nullable=True),
        sa.Column("path", sa.String(500), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("context", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_error_logs_type_created", "error_logs", ["error_type", "created_at"])
    op.create_index("ix_error_logs_request", "error_logs", ["request_id"])


def downgrade() -> None:
    op.drop_table("error_logs")
    op.drop_table("audit_logs")
    op.drop_table("broadcasts")
    op.drop_table("messages")
    op.drop_table("users")
