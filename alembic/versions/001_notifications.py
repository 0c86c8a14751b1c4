"""001 – Notifications.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Per-user notification stream. Rows are written and marked read by the
application; the retention engine only deletes them.
"""

from alembic import op

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id BIGSERIAL PRIMARY KEY,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT,
            data JSONB DEFAULT '{}'::jsonb,
            is_read BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );

        -- Cap rule: newest-first scan per user
        CREATE INDEX IF NOT EXISTS idx_notifications_user_recent
            ON notifications (user_id, created_at DESC, id DESC);

        -- Age rule: read rows past the cutoff
        CREATE INDEX IF NOT EXISTS idx_notifications_read_created
            ON notifications (created_at)
            WHERE is_read;
    """)


def downgrade():
    op.execute("DROP TABLE IF EXISTS notifications")
