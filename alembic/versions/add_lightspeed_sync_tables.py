"""add provider_credentials, order_history and sync_retry_queue tables

Revision ID: add_ls_sync_tables
Revises:
Create Date: 2026-02-10

"""
from alembic import op
import sqlalchemy as sa


revision = "add_ls_sync_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    conn = op.get_bind()
    if conn.dialect.name == "postgresql":
        op.execute("""
            CREATE TABLE IF NOT EXISTS provider_credentials (
                id VARCHAR NOT NULL PRIMARY KEY,
                provider_id VARCHAR NOT NULL,
                value_encrypted TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CONSTRAINT uq_provider_credentials_provider UNIQUE (provider_id)
            )
        """)
        op.execute("CREATE INDEX IF NOT EXISTS ix_provider_credentials_provider_id ON provider_credentials (provider_id)")
        op.execute("""
            CREATE TABLE IF NOT EXISTS order_history (
                id SERIAL PRIMARY KEY,
                attempt_id VARCHAR NOT NULL,
                shopify_order_id VARCHAR NOT NULL,
                shop_domain VARCHAR,
                status VARCHAR NOT NULL,
                record TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        op.execute("CREATE INDEX IF NOT EXISTS ix_order_history_attempt_id ON order_history (attempt_id)")
        op.execute("CREATE INDEX IF NOT EXISTS ix_order_history_shopify_order_id ON order_history (shopify_order_id)")
        op.execute("CREATE INDEX IF NOT EXISTS ix_order_history_shop_domain ON order_history (shop_domain)")
        op.execute("CREATE INDEX IF NOT EXISTS ix_order_history_status ON order_history (status)")
        op.execute("""
            CREATE TABLE IF NOT EXISTS sync_retry_queue (
                attempt_id VARCHAR NOT NULL PRIMARY KEY,
                shopify_order_id VARCHAR NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL,
                enqueued_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        op.execute("CREATE INDEX IF NOT EXISTS ix_sync_retry_queue_shopify_order_id ON sync_retry_queue (shopify_order_id)")
        op.execute("CREATE INDEX IF NOT EXISTS ix_sync_retry_queue_enqueued_at ON sync_retry_queue (enqueued_at)")
    else:
        op.create_table(
            "provider_credentials",
            sa.Column("id", sa.String(), nullable=False),
            sa.Column("provider_id", sa.String(), nullable=False),
            sa.Column("value_encrypted", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("provider_id", name="uq_provider_credentials_provider"),
        )
        op.create_index("ix_provider_credentials_provider_id", "provider_credentials", ["provider_id"])
        op.create_table(
            "order_history",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("attempt_id", sa.String(), nullable=False),
            sa.Column("shopify_order_id", sa.String(), nullable=False),
            sa.Column("shop_domain", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("record", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_order_history_attempt_id", "order_history", ["attempt_id"])
        op.create_index("ix_order_history_shopify_order_id", "order_history", ["shopify_order_id"])
        op.create_index("ix_order_history_shop_domain", "order_history", ["shop_domain"])
        op.create_index("ix_order_history_status", "order_history", ["status"])
        op.create_table(
            "sync_retry_queue",
            sa.Column("attempt_id", sa.String(), nullable=False),
            sa.Column("shopify_order_id", sa.String(), nullable=False),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("payload", sa.Text(), nullable=False),
            sa.Column("enqueued_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("attempt_id"),
        )
        op.create_index("ix_sync_retry_queue_shopify_order_id", "sync_retry_queue", ["shopify_order_id"])
        op.create_index("ix_sync_retry_queue_enqueued_at", "sync_retry_queue", ["enqueued_at"])


def downgrade() -> None:
    op.drop_table("sync_retry_queue")
    op.drop_table("order_history")
    op.drop_table("provider_credentials")
