from fastapi import Header, HTTPException, Depends, Cookie
from typing import Optional, Sequence
from .db import get_conn
from .security import decode_access_token, TokenError
from .validation import SUPER_ADMIN


SESSION_COOKIE_NAME = "hospital_inventory_session"


def _extract_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_current_user(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_token(authorization, cookie_token)
    try:
        user_id = decode_access_token(token)
    except TokenError as exc:
        raise HTTPException(status_code=401, detail=exc.reason)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, username, email, role, facility_id, department, status
                FROM users
                WHERE id = %s
                """,
                (user_id,),
            )
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=401, detail="invalid token")
    if row["status"] != "Active":
        raise HTTPException(status_code=401, detail="account is inactive")
    return {
        "user_id": str(row["id"]),
        "username": row["username"],
        "email": row["email"],
        "role": row["role"],
        "facility_id": str(row["facility_id"]) if row["facility_id"] else None,
        "department": row["department"],
    }


def require_role(*roles: str):
    allowed = set(roles)

    def _dep(user=Depends(get_current_user)):
        if user["role"] not in allowed:
            raise HTTPException(status_code=403, detail="insufficient permissions")
        return user
    return _dep


def scoped_facility_id(user: dict, requested: Optional[str], global_roles: Sequence[str]) -> Optional[str]:
    """
    Facility filter for list/aggregate queries.
    Global roles may pick any facility (or none = all); everyone else is pinned to their own.
    """
    if user["role"] in global_roles:
        requested = (requested or "").strip() or None
        return requested
    return user["facility_id"]


def assert_facility_access(user: dict, facility_id, global_roles: Sequence[str] = (SUPER_ADMIN,)) -> None:
    if user["role"] in global_roles:
        return
    if not facility_id or str(facility_id) != str(user["facility_id"]):
        raise HTTPException(status_code=403, detail="access denied for this facility")


def target_facility_id(user: dict, requested: Optional[str]) -> Optional[str]:
    """
    Facility used when creating facility-owned rows: Super Admin may choose, others use their own.
    """
    if user["role"] == SUPER_ADMIN and requested:
        return str(requested)
    return user["facility_id"]
