from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user, require_role
from ..pagination import page_window, pagination_meta
from ..validation import SUPER_ADMIN
from ..audit_utils import log_audit

router = APIRouter(prefix="/facilities", tags=["facilities"])

FACILITY_FIELDS = ("name", "type", "address", "phone", "email", "description", "capacity", "services")


class FacilityIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    type: str = Field(min_length=1, max_length=100)
    address: Optional[str] = Field(default=None, max_length=500)
    phone: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    capacity: Optional[str] = Field(default=None, max_length=100)
    services: Optional[str] = None


class FacilityUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    type: Optional[str] = Field(default=None, min_length=1, max_length=100)
    address: Optional[str] = Field(default=None, max_length=500)
    phone: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    capacity: Optional[str] = Field(default=None, max_length=100)
    services: Optional[str] = None


def _facility_stats(cur, facility_id) -> dict:
    cur.execute(
        """
        SELECT
          (SELECT COUNT(*) FROM users WHERE facility_id = %s) AS user_count,
          (SELECT COUNT(*) FROM inventory WHERE facility_id = %s) AS inventory_count,
          (SELECT COUNT(*) FROM assets WHERE facility_id = %s) AS asset_count,
          (SELECT COUNT(*) FROM requisitions WHERE facility_id = %s AND status = 'Pending') AS pending_requisitions
        """,
        (facility_id, facility_id, facility_id, facility_id),
    )
    return cur.fetchone()


@router.get("")
def list_facilities(
    type: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    user=Depends(get_current_user),
):
    limit, offset = page_window(page, limit)
    where = ["1=1"]
    params: list = []
    if type:
        where.append("type = %s")
        params.append(type)
    if search:
        where.append("(name ILIKE %s OR address ILIKE %s)")
        like = f"%{search.strip()}%"
        params.extend([like, like])
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT id, name, type, address, phone, email, description, capacity, services,
                       created_at, updated_at
                FROM facilities
                WHERE {where_sql}
                ORDER BY name
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM facilities WHERE {where_sql}", params)
            total = cur.fetchone()["total"]
            return {"facilities": rows, "pagination": pagination_meta(page, limit, total)}


@router.get("/{facility_id}")
def get_facility(facility_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, type, address, phone, email, description, capacity, services,
                       created_at, updated_at
                FROM facilities
                WHERE id = %s
                """,
                (facility_id,),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="facility not found")
            return {"facility": row, "statistics": _facility_stats(cur, facility_id)}


@router.post("", status_code=201)
def create_facility(data: FacilityIn, user=Depends(require_role(SUPER_ADMIN))):
    name = data.name.strip()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM facilities WHERE lower(name) = lower(%s)", (name,))
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="facility with this name already exists")
                cur.execute(
                    """
                    INSERT INTO facilities (id, name, type, address, phone, email, description, capacity, services)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id, name, type, address, phone, email, description, capacity, services,
                              created_at, updated_at
                    """,
                    (name, data.type, data.address, data.phone, data.email, data.description, data.capacity, data.services),
                )
                row = cur.fetchone()
                log_audit(cur, user["user_id"], "facility_create", "facility", row["id"], data.model_dump())
                return {"facility": row}


@router.put("/{facility_id}")
def update_facility(facility_id: str, data: FacilityUpdate, user=Depends(require_role(SUPER_ADMIN))):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if k in FACILITY_FIELDS}
    if patch.get("name") is None:
        patch.pop("name", None)
    if patch.get("type") is None:
        patch.pop("type", None)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")

    fields = [f"{k} = %s" for k in patch]
    params = list(patch.values()) + [facility_id]
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if "name" in patch:
                    cur.execute(
                        "SELECT 1 FROM facilities WHERE lower(name) = lower(%s) AND id <> %s",
                        (patch["name"], facility_id),
                    )
                    if cur.fetchone():
                        raise HTTPException(status_code=409, detail="facility with this name already exists")
                cur.execute(
                    f"""
                    UPDATE facilities
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING id, name, type, address, phone, email, description, capacity, services,
                              created_at, updated_at
                    """,
                    params,
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="facility not found")
                log_audit(cur, user["user_id"], "facility_update", "facility", facility_id, patch)
                return {"facility": row}


@router.delete("/{facility_id}")
def delete_facility(facility_id: str, user=Depends(require_role(SUPER_ADMIN))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM facilities WHERE id = %s FOR UPDATE", (facility_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="facility not found")
                stats = _facility_stats(cur, facility_id)
                if stats["user_count"] or stats["inventory_count"] or stats["asset_count"]:
                    raise HTTPException(
                        status_code=400,
                        detail="cannot delete facility with associated users, inventory, or assets",
                    )
                cur.execute("DELETE FROM facilities WHERE id = %s", (facility_id,))
                log_audit(cur, user["user_id"], "facility_delete", "facility", facility_id, {"name": row["name"]})
                return {"ok": True}
