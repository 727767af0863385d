#!/usr/bin/env python3
"""
Apply the pipeline schema migration(s) from Infra/supabase.

Runs every *.sql file in name order; the files are idempotent.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Path setup
THIS_FILE = Path(__file__).resolve()
SCRIPTS_DIR = THIS_FILE.parent
REPO_ROOT = SCRIPTS_DIR.parent

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from services.db_service import close_db_pool, execute, fetch, init_db_pool
from app.core.logging import configure_logging, get_logger

configure_logging(service_name="script")
logger = get_logger()

MIGRATIONS_DIR = REPO_ROOT / "Infra" / "supabase"
EXPECTED_TABLES = (
    "plans",
    "ranking_snapshots",
    "ranking_snapshot_plans",
    "post_queue",
    "publish_session",
    "worker_runs",
    "ai_logs",
)


async def apply_migrations(only: str | None = None) -> int:
    print("\n=== Applying Pipeline Schema Migrations ===\n")

    print("1. Initializing database connection...")
    await init_db_pool()
    print("   ✓ Database connected\n")

    files = sorted(MIGRATIONS_DIR.glob("*.sql"))
    if only:
        files = [f for f in files if f.name == only]
    if not files:
        print(f"   ✗ No SQL files found in {MIGRATIONS_DIR}")
        return 1

    print("2. Applying migrations...")
    for sql_file in files:
        sql_content = sql_file.read_text(encoding="utf-8")
        try:
            await execute(sql_content)
            print(f"   ✓ {sql_file.name} ({len(sql_content)} bytes)")
            logger.info("migration_applied", file=sql_file.name)
        except Exception as e:
            print(f"   ✗ {sql_file.name} failed: {e}")
            logger.exception("migration_failed", file=sql_file.name, error=str(e))
            return 1
    print()

    print("3. Verifying tables...")
    rows = await fetch(
        """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = 'public' AND table_name = ANY($1::text[])
        """,
        list(EXPECTED_TABLES),
    )
    present = {r["table_name"] for r in rows}
    missing = [t for t in EXPECTED_TABLES if t not in present]
    if missing:
        print(f"   ⚠ Missing tables: {', '.join(missing)}\n")
        return 1
    print(f"   ✓ All {len(EXPECTED_TABLES)} tables exist\n")

    print("=== Migration Complete ===\n")
    return 0


async def main_async() -> int:
    parser = argparse.ArgumentParser(description="Apply Infra/supabase SQL migrations.")
    parser.add_argument("--only", help="Apply a single file by name, e.g. 001_pipeline_schema.sql")
    args = parser.parse_args()
    try:
        return await apply_migrations(only=args.only)
    finally:
        await close_db_pool()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main_async()))
