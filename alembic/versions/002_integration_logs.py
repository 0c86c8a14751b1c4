"""002 – Integration logs.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

Per-company log of calls to third-party integrations. Append-only;
trimmed by age and by a per-company row cap.
"""

from alembic import op

# revision identifiers
revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade():
    op.execute("""
        CREATE TABLE IF NOT EXISTS integration_logs (
            id BIGSERIAL PRIMARY KEY,
            company_id TEXT NOT NULL,
            integration TEXT NOT NULL,
            action TEXT NOT NULL,
            status TEXT NOT NULL,
            details JSONB DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );

        CREATE INDEX IF NOT EXISTS idx_integration_logs_company_recent
            ON integration_logs (company_id, created_at DESC, id DESC);

        CREATE INDEX IF NOT EXISTS idx_integration_logs_created
            ON integration_logs (created_at);
    """)


def downgrade():
    op.execute("DROP TABLE IF EXISTS integration_logs")
