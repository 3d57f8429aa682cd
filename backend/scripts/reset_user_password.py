#!/usr/bin/env python3
import argparse
import os
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password


def reset_account(cur, ident: str, password: str):
    # An exact username wins over an email match, same as login.
    cur.execute(
        """
        SELECT id
        FROM users
        WHERE lower(username) = lower(%s) OR lower(email) = lower(%s)
        ORDER BY (lower(username) = lower(%s)) DESC
        LIMIT 1
        FOR UPDATE
        """,
        (ident, ident, ident),
    )
    row = cur.fetchone()
    if not row:
        return None
    cur.execute(
        """
        UPDATE users
        SET password_hash = %s,
            status = 'Active',
            updated_at = now()
        WHERE id = %s
        """,
        (hash_password(password), row["id"]),
    )
    cur.execute(
        """
        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), NULL, 'user_reset_password_cli', 'user', %s, '{}'::jsonb)
        """,
        (row["id"],),
    )
    return row["id"]


def main() -> int:
    parser = argparse.ArgumentParser(description="Reset a user's password and reactivate the account.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/hospital_inventory",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument("--user", required=True, help="Username or email.")
    parser.add_argument("--password", required=True)
    args = parser.parse_args()

    ident = (args.user or "").strip()
    if not ident:
        print("user is required", file=sys.stderr)
        return 2
    if len(args.password or "") < 6:
        print("password must be at least 6 characters", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if not reset_account(cur, ident, args.password):
                    print(f"user not found: {ident}", file=sys.stderr)
                    return 2

    print("OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
