from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..db import get_conn
from ..deps import require_role, assert_facility_access, scoped_facility_id
from ..pagination import page_window, pagination_meta
from ..security import hash_password
from ..validation import (
    Role,
    UserStatus,
    normalize_choice,
    ADMIN_ROLES,
    FACILITY_ADMIN,
    FACILITY_USER,
    SUPER_ADMIN,
    WAREHOUSE_ROLES,
)
from ..audit_utils import log_audit

router = APIRouter(prefix="/users", tags=["users"])

USER_FIELDS = ("username", "email", "role", "facility_id", "department", "phone", "first_name", "last_name", "status")

USER_SELECT = """
    SELECT u.id, u.username, u.email, u.role, u.facility_id, u.department,
           u.phone, u.first_name, u.last_name, u.status, u.created_at, u.updated_at, u.last_login,
           f.name AS facility_name
    FROM users u
    LEFT JOIN facilities f ON f.id = u.facility_id
"""


class UserUpdate(BaseModel):
    username: Optional[str] = Field(default=None, min_length=3, max_length=50)
    email: Optional[str] = Field(default=None, max_length=255)
    role: Optional[Role] = None
    facility_id: Optional[str] = None
    department: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    status: Optional[UserStatus] = None


class PasswordResetIn(BaseModel):
    new_password: str = Field(min_length=6)


def _lock_target(cur, user_id: str, actor: dict):
    cur.execute("SELECT id, username, role, facility_id, status FROM users WHERE id = %s FOR UPDATE", (user_id,))
    target = cur.fetchone()
    if not target:
        raise HTTPException(status_code=404, detail="user not found")
    assert_facility_access(actor, target["facility_id"], WAREHOUSE_ROLES)
    if target["role"] == SUPER_ADMIN and actor["role"] != SUPER_ADMIN:
        raise HTTPException(status_code=403, detail="only a super admin can modify a super admin account")
    if actor["role"] == FACILITY_ADMIN and target["role"] in WAREHOUSE_ROLES:
        raise HTTPException(status_code=403, detail="facility admins cannot modify warehouse-level accounts")
    return target


@router.get("")
def list_users(
    role: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    facility_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user=Depends(require_role(*ADMIN_ROLES)),
):
    limit, offset = page_window(page, limit)
    where = ["1=1"]
    params: list = []
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    if fid:
        where.append("u.facility_id = %s")
        params.append(fid)
    r = normalize_choice(role, Role)
    if r:
        where.append("u.role = %s")
        params.append(r)
    st = normalize_choice(status, UserStatus)
    if st:
        where.append("u.status = %s")
        params.append(st)
    if search:
        like = f"%{search.strip()}%"
        where.append("(u.username ILIKE %s OR u.email ILIKE %s OR u.first_name ILIKE %s OR u.last_name ILIKE %s)")
        params.extend([like, like, like, like])
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                USER_SELECT
                + f"""
                WHERE {where_sql}
                ORDER BY u.created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM users u WHERE {where_sql}", params)
            total = cur.fetchone()["total"]
            return {"users": rows, "pagination": pagination_meta(page, limit, total)}


@router.get("/{user_id}")
def get_user(user_id: str, user=Depends(require_role(*ADMIN_ROLES))):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(USER_SELECT + " WHERE u.id = %s", (user_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="user not found")
            assert_facility_access(user, row["facility_id"], WAREHOUSE_ROLES)
            return {"user": row}


@router.put("/{user_id}")
def update_user(user_id: str, data: UserUpdate, user=Depends(require_role(*ADMIN_ROLES))):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if k in USER_FIELDS and v is not None}
    if "email" in patch:
        patch["email"] = patch["email"].strip().lower()
    if not patch:
        raise HTTPException(status_code=400, detail="no valid fields to update")
    if user["role"] != SUPER_ADMIN:
        if patch.get("role") == SUPER_ADMIN:
            raise HTTPException(status_code=403, detail="only a super admin can grant the super admin role")
        if user["role"] == FACILITY_ADMIN and patch.get("role") not in (None, FACILITY_ADMIN, FACILITY_USER):
            raise HTTPException(status_code=403, detail="facility admins can only assign facility roles")
    if user_id == user["user_id"] and ("role" in patch or "status" in patch):
        raise HTTPException(status_code=400, detail="you cannot change your own role or status")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                target = _lock_target(cur, user_id, user)
                if (
                    user["role"] != SUPER_ADMIN
                    and "facility_id" in patch
                    and str(patch["facility_id"]) != str(target["facility_id"])
                ):
                    raise HTTPException(status_code=403, detail="only a super admin can move a user to another facility")
                if "username" in patch or "email" in patch:
                    cur.execute(
                        """
                        SELECT 1 FROM users
                        WHERE (lower(username) = lower(%s) OR lower(email) = lower(%s)) AND id <> %s
                        """,
                        (patch.get("username") or "", patch.get("email") or "", user_id),
                    )
                    if cur.fetchone():
                        raise HTTPException(status_code=409, detail="username or email already exists")
                fields = [f"{k} = %s" for k in patch]
                cur.execute(
                    f"""
                    UPDATE users
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    """,
                    list(patch.values()) + [user_id],
                )
                log_audit(cur, user["user_id"], "user_update", "user", user_id, patch)
                cur.execute(USER_SELECT + " WHERE u.id = %s", (user_id,))
                return {"user": cur.fetchone()}


@router.put("/{user_id}/reset-password")
def reset_password(user_id: str, data: PasswordResetIn, user=Depends(require_role(*ADMIN_ROLES))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _lock_target(cur, user_id, user)
                cur.execute(
                    "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                    (hash_password(data.new_password), user_id),
                )
                log_audit(cur, user["user_id"], "user_reset_password", "user", user_id)
                return {"ok": True}


@router.put("/{user_id}/toggle-status")
def toggle_status(user_id: str, user=Depends(require_role(*ADMIN_ROLES))):
    if user_id == user["user_id"]:
        raise HTTPException(status_code=400, detail="you cannot change your own status")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                target = _lock_target(cur, user_id, user)
                new_status = "Inactive" if target["status"] == "Active" else "Active"
                cur.execute(
                    "UPDATE users SET status = %s, updated_at = now() WHERE id = %s",
                    (new_status, user_id),
                )
                log_audit(cur, user["user_id"], "user_toggle_status", "user", user_id, {"status": new_status})
                return {"status": new_status}


@router.delete("/{user_id}")
def delete_user(user_id: str, user=Depends(require_role(SUPER_ADMIN))):
    if user_id == user["user_id"]:
        raise HTTPException(status_code=400, detail="you cannot delete your own account")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                target = _lock_target(cur, user_id, user)
                cur.execute(
                    """
                    SELECT
                      (SELECT COUNT(*) FROM requisitions WHERE requested_by = %s OR approved_by = %s) AS requisitions,
                      (SELECT COUNT(*) FROM dispatches WHERE dispatched_by = %s) AS dispatches,
                      (SELECT COUNT(*) FROM inventory WHERE created_by = %s) AS inventory_items,
                      (SELECT COUNT(*) FROM stock_movements WHERE created_by = %s) AS stock_movements,
                      (SELECT COUNT(*) FROM assets WHERE created_by = %s) AS assets,
                      (SELECT COUNT(*) FROM asset_maintenance WHERE created_by = %s) AS asset_maintenance,
                      (SELECT COUNT(*) FROM asset_movements WHERE created_by = %s) AS asset_movements
                    """,
                    (user_id,) * 8,
                )
                refs = cur.fetchone()
                if any(refs.values()):
                    raise HTTPException(
                        status_code=400,
                        detail="cannot delete user with associated records; deactivate the account instead",
                    )
                cur.execute("DELETE FROM users WHERE id = %s", (user_id,))
                log_audit(cur, user["user_id"], "user_delete", "user", user_id, {"username": target["username"]})
                return {"ok": True}
