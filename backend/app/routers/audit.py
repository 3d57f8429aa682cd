from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
from uuid import UUID

from ..db import get_conn
from ..deps import require_role
from ..validation import SUPER_ADMIN

router = APIRouter(prefix="/audit", tags=["audit"])


def _parse_uuid_optional(value: Optional[str], field_name: str) -> Optional[str]:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return str(UUID(raw))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field_name} must be a valid UUID")


@router.get("/logs")
def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action_prefix: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 200,
    offset: int = 0,
    user=Depends(require_role(SUPER_ADMIN)),
):
    """
    Audit feed of every mutating operation, newest first.
    """
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must be >= 0")

    entity_type = (entity_type or "").strip() or None
    action_prefix = (action_prefix or "").strip() or None
    entity_id = _parse_uuid_optional(entity_id, "entity_id")
    user_id = _parse_uuid_optional(user_id, "user_id")

    with get_conn() as conn:
        with conn.cursor() as cur:
            sql = """
                SELECT l.id, l.user_id, u.username AS username,
                       l.action, l.entity_type, l.entity_id,
                       l.details, l.created_at
                FROM audit_logs l
                LEFT JOIN users u ON u.id = l.user_id
                WHERE 1=1
            """
            params: list = []

            if entity_type:
                sql += " AND l.entity_type = %s"
                params.append(entity_type)
            if entity_id:
                sql += " AND l.entity_id = %s::uuid"
                params.append(entity_id)
            if user_id:
                sql += " AND l.user_id = %s::uuid"
                params.append(user_id)
            if action_prefix:
                sql += " AND l.action LIKE %s"
                params.append(action_prefix + "%")

            sql += " ORDER BY l.created_at DESC, l.id DESC LIMIT %s OFFSET %s"
            params.extend([limit, offset])
            cur.execute(sql, params)
            return {"audit_logs": cur.fetchall()}
