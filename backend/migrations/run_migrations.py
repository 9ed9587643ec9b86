"""Database migration runner for the core tables.

Applies 001_core_tables.sql on PostgreSQL; other databases get the same
schema (with their own updated_at triggers) from the ORM models.

Usage:
    python migrations/run_migrations.py
    DATABASE_URL=postgresql+asyncpg://... python migrations/run_migrations.py

IMPORTANT: Backup your database before running migrations!
"""

import sys
import asyncio
import logging
from pathlib import Path
from typing import List

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from blockhaven.models import Database
from blockhaven.services.config import config_service

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MIGRATION_FILE = Path(__file__).parent / "001_core_tables.sql"

REQUIRED_TABLES = ["currencies", "exchange_pairs", "exchanges"]


def split_statements(sql: str) -> List[str]:
    """Split a SQL script into statements.

    Semicolons inside $$-quoted function bodies do not end a statement.
    """
    statements = []
    current_statement = []
    in_dollar_block = False

    for line in sql.split('\n'):
        stripped = line.strip()

        # Skip comments and empty lines
        if not stripped or (stripped.startswith('--') and not in_dollar_block):
            continue

        current_statement.append(stripped)

        if stripped.count('$$') % 2 == 1:
            in_dollar_block = not in_dollar_block

        # Check if statement is complete
        if stripped.endswith(';') and not in_dollar_block:
            statements.append('\n'.join(current_statement))
            current_statement = []

    return statements


async def apply_sql_migration(database: Database, migration_file: Path):
    """Apply a SQL migration file.

    Args:
        database: Open storage handle
        migration_file: Path to SQL migration file
    """
    logger.info(f"Applying migration: {migration_file.name}")

    with open(migration_file, 'r') as f:
        statements = split_statements(f.read())

    async with database.session() as session:
        for i, statement in enumerate(statements):
            try:
                await session.execute(text(statement))
                await session.commit()
                logger.info(f"  Executed statement {i + 1}/{len(statements)}")
            except SQLAlchemyError as e:
                await session.rollback()
                # Re-running the script is expected to hit existing objects
                if "already exists" in str(e).lower():
                    logger.warning(f"  Statement {i + 1} already applied (skipping)")
                else:
                    logger.error(f"  Failed to execute statement {i + 1}: {e}")
                    logger.error(f"  Statement: {statement[:100]}...")
                    raise

    logger.info(f"Migration {migration_file.name} completed successfully")


async def create_tables_from_models(database: Database):
    """Create all tables from SQLAlchemy models."""
    logger.info("Creating tables from SQLAlchemy models...")
    await database.create_all()
    logger.info("Tables created successfully")


async def verify_migration(database: Database) -> bool:
    """Verify that the core tables exist and report their row counts."""
    logger.info("Verifying migration...")

    async with database.engine.connect() as conn:
        existing_tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    missing_tables = [t for t in REQUIRED_TABLES if t not in existing_tables]
    if missing_tables:
        logger.error(f"Migration verification FAILED: Missing tables: {missing_tables}")
        return False

    logger.info("Migration verification PASSED: All tables exist")

    async with database.session() as session:
        for table in REQUIRED_TABLES:
            result = await session.execute(text(f"SELECT COUNT(*) FROM {table}"))
            logger.info(f"  {table}: {result.scalar()} rows")

    return True


async def main():
    """Run database migrations."""
    logger.info("=" * 70)
    logger.info("DATABASE MIGRATION: Core tables")
    logger.info("=" * 70)

    config_service.load_and_validate()
    database = Database(config_service.get("database.url"))
    database.open()

    try:
        if database.engine.dialect.name == "postgresql" and MIGRATION_FILE.exists():
            await apply_sql_migration(database, MIGRATION_FILE)
        else:
            await create_tables_from_models(database)

        if await verify_migration(database):
            logger.info("=" * 70)
            logger.info("MIGRATION COMPLETED SUCCESSFULLY")
            logger.info("=" * 70)
            logger.info("Next step: python -m blockhaven.sync all")
        else:
            logger.error("MIGRATION FAILED - please review errors above")
            sys.exit(1)

    except SQLAlchemyError as e:
        logger.error(f"Migration failed with error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await database.close()


if __name__ == "__main__":
    asyncio.run(main())
