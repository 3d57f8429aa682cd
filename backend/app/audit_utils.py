import json
from typing import Any, Optional


def log_audit(cur, user_id: Optional[str], action: str, entity_type: str, entity_id, details: Optional[dict[str, Any]] = None) -> None:
    # Runs on the caller's cursor so the audit row commits/rolls back with the change itself.
    cur.execute(
        """
        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s::jsonb)
        """,
        (user_id, action, entity_type, entity_id, json.dumps(details or {}, default=str)),
    )
