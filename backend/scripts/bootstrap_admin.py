#!/usr/bin/env python3
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_password() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(16)


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_ADMIN", "")):
        return 0

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_admin: missing DATABASE_URL", file=sys.stderr)
        return 2

    username = os.getenv("BOOTSTRAP_ADMIN_USERNAME", "admin").strip()
    email = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@hospital.local").strip().lower()
    if not username or not email:
        print("bootstrap_admin: BOOTSTRAP_ADMIN_USERNAME / BOOTSTRAP_ADMIN_EMAIL is empty", file=sys.stderr)
        return 2

    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True

    facility_name = os.getenv("BOOTSTRAP_FACILITY_NAME", "Central Warehouse").strip() or "Central Warehouse"
    facility_type = os.getenv("BOOTSTRAP_FACILITY_TYPE", "Warehouse").strip() or "Warehouse"

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id FROM users WHERE lower(username) = lower(%s) OR lower(email) = %s",
                    (username, email),
                )
                if cur.fetchone():
                    # Idempotent: don't create duplicate users.
                    return 0

                cur.execute("SELECT id FROM facilities WHERE lower(name) = lower(%s)", (facility_name,))
                row = cur.fetchone()
                if row:
                    facility_id = row["id"]
                else:
                    cur.execute(
                        """
                        INSERT INTO facilities (id, name, type)
                        VALUES (gen_random_uuid(), %s, %s)
                        RETURNING id
                        """,
                        (facility_name, facility_type),
                    )
                    facility_id = cur.fetchone()["id"]

                cur.execute(
                    """
                    INSERT INTO users (id, username, email, password_hash, role, facility_id, department, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, 'Super Admin', %s, 'Administration', 'Active')
                    RETURNING id
                    """,
                    (username, email, hash_password(password), facility_id),
                )
                user_id = cur.fetchone()["id"]
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'user_bootstrap', 'user', %s, '{}'::jsonb)
                    """,
                    (user_id, user_id),
                )

    print("BOOTSTRAP_ADMIN_CREATED")
    print(f"username: {username}")
    print(f"email: {email}")
    if generated_password:
        print(f"password: {password}")
    else:
        print("password: (provided via BOOTSTRAP_ADMIN_PASSWORD)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
