from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from ..db import get_conn
from ..deps import get_current_user, require_role, assert_facility_access, scoped_facility_id, target_facility_id
from ..pagination import page_window, pagination_meta
from ..validation import (
    DurationUnit,
    RequisitionStatus,
    RowId,
    normalize_choice,
    ADMIN_ROLES,
    FACILITY_ADMIN,
    WAREHOUSE_ROLES,
    REQUISITION_STATUSES,
)
from ..audit_utils import log_audit

router = APIRouter(prefix="/requisitions", tags=["requisitions"])


class RequisitionLineIn(BaseModel):
    inventory_id: str
    requested_quantity: int = Field(gt=0)
    notes: Optional[str] = None


class RequisitionIn(BaseModel):
    facility_id: Optional[str] = None
    department: str = Field(min_length=1, max_length=100)
    duration: Optional[int] = Field(default=None, gt=0)
    duration_unit: Optional[DurationUnit] = None
    notes: Optional[str] = None
    items: List[RequisitionLineIn] = Field(min_length=1)


class RequisitionLineDecision(BaseModel):
    requisition_item_id: RowId
    approved_quantity: int = Field(ge=0)
    notes: Optional[str] = None


class RequisitionStatusIn(BaseModel):
    status: RequisitionStatus
    admin_notes: Optional[str] = None
    items: Optional[List[RequisitionLineDecision]] = None


REQUISITION_SELECT = """
    SELECT r.*, f.name AS facility_name, u.username AS requested_by_name,
           au.username AS approved_by_name
    FROM requisitions r
    LEFT JOIN facilities f ON f.id = r.facility_id
    LEFT JOIN users u ON u.id = r.requested_by
    LEFT JOIN users au ON au.id = r.approved_by
"""


def status_key(status: str) -> str:
    return status.lower().replace(" ", "_")


def status_counts_sql(statuses, column: str = "status") -> str:
    """
    `COUNT(*) FILTER` columns, one per status, named by `status_key`.
    """
    parts = ["COUNT(*) AS total"]
    for s in statuses:
        parts.append(f"COUNT(*) FILTER (WHERE {column} = '{s}') AS {status_key(s)}")
    return ",\n       ".join(parts)


def _fetch_requisition(cur, requisition_id):
    cur.execute(REQUISITION_SELECT + " WHERE r.id = %s", (requisition_id,))
    return cur.fetchone()


def _fetch_lines(cur, requisition_id):
    cur.execute(
        """
        SELECT ri.*, i.name AS item_name, i.item_code, i.unit, i.current_stock
        FROM requisition_items ri
        LEFT JOIN inventory i ON i.id = ri.inventory_id
        WHERE ri.requisition_id = %s
        ORDER BY ri.created_at, ri.id
        """,
        (requisition_id,),
    )
    return cur.fetchall()


@router.get("")
def list_requisitions(
    status: Optional[str] = None,
    facility_id: Optional[str] = None,
    department: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user=Depends(get_current_user),
):
    limit, offset = page_window(page, limit)
    where = ["1=1"]
    params: list = []
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    if fid:
        where.append("r.facility_id = %s")
        params.append(fid)
    st = normalize_choice(status, RequisitionStatus)
    if st:
        where.append("r.status = %s")
        params.append(st)
    if department:
        where.append("r.department = %s")
        params.append(department)
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT r.*, f.name AS facility_name, u.username AS requested_by_name,
                       (SELECT COUNT(*) FROM requisition_items ri WHERE ri.requisition_id = r.id) AS item_count
                FROM requisitions r
                LEFT JOIN facilities f ON f.id = r.facility_id
                LEFT JOIN users u ON u.id = r.requested_by
                WHERE {where_sql}
                ORDER BY r.created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM requisitions r WHERE {where_sql}", params)
            total = cur.fetchone()["total"]
            return {"requisitions": rows, "pagination": pagination_meta(page, limit, total)}


@router.get("/stats")
def requisition_stats(facility_id: Optional[str] = None, user=Depends(get_current_user)):
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    where_sql = "WHERE facility_id = %s" if fid else ""
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {status_counts_sql(REQUISITION_STATUSES)}
                FROM requisitions
                {where_sql}
                """,
                [fid] if fid else [],
            )
            return {"stats": cur.fetchone()}


@router.get("/{requisition_id}")
def get_requisition(requisition_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            req = _fetch_requisition(cur, requisition_id)
            if not req:
                raise HTTPException(status_code=404, detail="requisition not found")
            assert_facility_access(user, req["facility_id"], WAREHOUSE_ROLES)
            return {"requisition": req, "items": _fetch_lines(cur, requisition_id)}


@router.post("", status_code=201)
def create_requisition(data: RequisitionIn, user=Depends(get_current_user)):
    facility_id = target_facility_id(user, data.facility_id)
    if not facility_id:
        raise HTTPException(status_code=400, detail="facility_id is required")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO requisitions
                      (id, facility_id, department, duration, duration_unit, notes, status, requested_by)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, 'Pending', %s)
                    RETURNING id
                    """,
                    (facility_id, data.department, data.duration, data.duration_unit, data.notes, user["user_id"]),
                )
                requisition_id = cur.fetchone()["id"]
                for line in data.items:
                    cur.execute(
                        """
                        INSERT INTO requisition_items (id, requisition_id, inventory_id, requested_quantity, notes)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s)
                        """,
                        (requisition_id, line.inventory_id, line.requested_quantity, line.notes),
                    )
                log_audit(
                    cur,
                    user["user_id"],
                    "requisition_create",
                    "requisition",
                    requisition_id,
                    {"facility_id": facility_id, "lines": len(data.items)},
                )
                return {"requisition": _fetch_requisition(cur, requisition_id)}


@router.put("/{requisition_id}/status")
def update_requisition_status(
    requisition_id: str,
    data: RequisitionStatusIn,
    user=Depends(require_role(*ADMIN_ROLES)),
):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, facility_id, status FROM requisitions WHERE id = %s FOR UPDATE",
                    (requisition_id,),
                )
                req = cur.fetchone()
                if not req:
                    raise HTTPException(status_code=404, detail="requisition not found")
                if user["role"] == FACILITY_ADMIN:
                    assert_facility_access(user, req["facility_id"], ())

                cur.execute(
                    """
                    UPDATE requisitions
                    SET status = %s, admin_notes = %s, approved_by = %s, approved_at = now(), updated_at = now()
                    WHERE id = %s
                    """,
                    (data.status, data.admin_notes, user["user_id"], requisition_id),
                )
                if data.items:
                    cur.execute("SELECT id FROM requisition_items WHERE requisition_id = %s", (requisition_id,))
                    line_ids = {str(r["id"]).lower() for r in cur.fetchall()}
                    for line in data.items:
                        if line.requisition_item_id not in line_ids:
                            raise HTTPException(
                                status_code=400,
                                detail=f"requisition item {line.requisition_item_id} does not belong to this requisition",
                            )
                        cur.execute(
                            """
                            UPDATE requisition_items
                            SET approved_quantity = %s, notes = COALESCE(%s, notes), updated_at = now()
                            WHERE id = %s AND requisition_id = %s
                            """,
                            (line.approved_quantity, line.notes, line.requisition_item_id, requisition_id),
                        )
                log_audit(
                    cur,
                    user["user_id"],
                    "requisition_status",
                    "requisition",
                    requisition_id,
                    {"from": req["status"], "to": data.status, "lines": len(data.items or [])},
                )
                return {"requisition": _fetch_requisition(cur, requisition_id), "items": _fetch_lines(cur, requisition_id)}
