"""
PostgreSQL-only schema additions, applied at startup after ``create_all``.

Every statement is idempotent (safe to run on every boot). SQLite test
databases get their indexes from the model definitions instead.
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from relay.core.logging import get_logger

logger = get_logger(__name__)


async def run_migration_001(conn: AsyncConnection) -> None:
    """001 - lease-path indexes on the dispatch queue."""
    # lease_batch scans pending rows by priority then age
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_dispatch_queue_lease_order
            ON domain_event_dispatch_queue (priority DESC, available_at ASC, id ASC)
            WHERE status = 'PENDING';
    """))
    # reaper scans expired leases
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_dispatch_queue_processing_locked_at
            ON domain_event_dispatch_queue (locked_at)
            WHERE status = 'PROCESSING';
    """))


async def run_migration_002(conn: AsyncConnection) -> None:
    """002 - stuck receipt scan only looks at rows still in 'received'."""
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_webhook_receipts_received_only
            ON integration_webhook_receipts (received_at)
            WHERE status = 'received';
    """))


async def run_all_migrations(conn: AsyncConnection) -> None:
    logger.info("Running migration 001...")
    await run_migration_001(conn)
    logger.info("Running migration 002...")
    await run_migration_002(conn)
