from __future__ import annotations

import argparse
from pathlib import Path

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection, Engine

from cutpro.config import settings
from cutpro.logging_config import get_logger

logger = get_logger("cutpro.migrations")
MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "db" / "migrations"


def split_sql_statements(sql: str) -> list[str]:
    statements = []
    current: list[str] = []
    in_dollar = False
    for line in sql.splitlines(keepends=True):
        stripped = line.strip()
        if stripped.startswith("--") and not current:
            continue
        if "$$" in line:
            in_dollar = not in_dollar
        current.append(line)
        if not in_dollar and stripped.endswith(";"):
            statements.append("".join(current).strip())
            current = []
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return [s for s in statements if s]


def pending_migrations(applied: set[str], migrations_dir: Path = MIGRATIONS_DIR) -> list[Path]:
    return [f for f in sorted(migrations_dir.glob("*.sql")) if f.name not in applied]


def applied_migrations(conn: Connection) -> set[str]:
    if not inspect(conn).has_table("schema_migrations"):
        return set()
    return {row[0] for row in conn.execute(text("select filename from schema_migrations")).fetchall()}


def run_migrations(engine: Engine, dry_run: bool = False, migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    """Apply pending files in name order. A dry run only reads and returns what would be applied."""
    if dry_run:
        with engine.connect() as conn:
            applied = applied_migrations(conn)
        pending = pending_migrations(applied, migrations_dir)
        for file in pending:
            logger.info("migration_pending", filename=file.name)
        return [file.name for file in pending]

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                create table if not exists schema_migrations (
                  filename text primary key,
                  applied_at timestamptz not null default now()
                )
                """
            )
        )
        applied = applied_migrations(conn)
        pending = pending_migrations(applied, migrations_dir)
        if not pending:
            logger.info("migrations_up_to_date", applied=len(applied))
            return []

        for file in pending:
            for stmt in split_sql_statements(file.read_text(encoding="utf-8")):
                conn.execute(text(stmt))
            conn.execute(
                text("insert into schema_migrations (filename) values (:filename)"),
                {"filename": file.name},
            )
            logger.info("migration_applied", filename=file.name)
    return [file.name for file in pending]


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply pending SQL migrations to the CutPro database.")
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--dry-run", action="store_true", help="list pending files without applying them")
    args = parser.parse_args()

    engine = create_engine(args.database_url, future=True, pool_pre_ping=True)
    run_migrations(engine, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
