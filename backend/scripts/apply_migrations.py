#!/usr/bin/env python3
import argparse
import os
import sys
from pathlib import Path

import psycopg

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "db" / "migrations"


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply SQL migrations in filename order.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/hospital_inventory",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    args = parser.parse_args()

    files = sorted(MIGRATIONS_DIR.glob("*.sql"))
    if not files:
        print(f"no migrations found in {MIGRATIONS_DIR}", file=sys.stderr)
        return 2

    with psycopg.connect(args.db) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_migrations (
                      filename text PRIMARY KEY,
                      applied_at timestamptz NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute("SELECT filename FROM schema_migrations")
                applied = {r[0] for r in cur.fetchall()}
                for path in files:
                    if path.name in applied:
                        continue
                    cur.execute(path.read_text(encoding="utf-8"))
                    cur.execute("INSERT INTO schema_migrations (filename) VALUES (%s)", (path.name,))
                    print(f"applied {path.name}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
