from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date, datetime, timezone
from ..db import get_conn
from ..deps import get_current_user, require_role, assert_facility_access, scoped_facility_id
from ..pagination import page_window, pagination_meta
from ..stock import lock_inventory_item, apply_stock_transaction, OUT
from ..validation import DispatchStatus, normalize_choice, WAREHOUSE_ROLES, DISPATCH_STATUSES
from ..audit_utils import log_audit
from .requisitions import status_counts_sql

router = APIRouter(prefix="/dispatches", tags=["dispatches"])


class DispatchLineIn(BaseModel):
    inventory_id: str
    quantity: int = Field(gt=0)
    batch_number: Optional[str] = Field(default=None, max_length=50)


class DispatchIn(BaseModel):
    requisition_id: str
    # Optional; when given it must match the requisition's facility.
    facility_id: Optional[str] = None
    estimated_delivery_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[DispatchLineIn] = Field(min_length=1)


class DispatchStatusIn(BaseModel):
    status: DispatchStatus
    tracking_number: Optional[str] = Field(default=None, max_length=100)
    delivery_date: Optional[date] = None
    received_by: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = None


DISPATCH_SELECT = """
    SELECT d.*, f.name AS facility_name, u.username AS dispatched_by_name
    FROM dispatches d
    LEFT JOIN facilities f ON f.id = d.facility_id
    LEFT JOIN users u ON u.id = d.dispatched_by
"""


def tracking_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"TRK-{now.year}-{millis % 1_000_000:06d}"


def _fetch_dispatch(cur, dispatch_id):
    cur.execute(DISPATCH_SELECT + " WHERE d.id = %s", (dispatch_id,))
    return cur.fetchone()


@router.get("")
def list_dispatches(
    status: Optional[str] = None,
    facility_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user=Depends(get_current_user),
):
    limit, offset = page_window(page, limit)
    where = ["1=1"]
    params: list = []
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    if fid:
        where.append("d.facility_id = %s")
        params.append(fid)
    st = normalize_choice(status, DispatchStatus)
    if st:
        where.append("d.status = %s")
        params.append(st)
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                DISPATCH_SELECT
                + f"""
                WHERE {where_sql}
                ORDER BY d.created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM dispatches d WHERE {where_sql}", params)
            total = cur.fetchone()["total"]
            return {"dispatches": rows, "pagination": pagination_meta(page, limit, total)}


@router.get("/stats")
def dispatch_stats(facility_id: Optional[str] = None, user=Depends(get_current_user)):
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    where_sql = "WHERE facility_id = %s" if fid else ""
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {status_counts_sql(DISPATCH_STATUSES)}
                FROM dispatches
                {where_sql}
                """,
                [fid] if fid else [],
            )
            return {"stats": cur.fetchone()}


@router.get("/{dispatch_id}")
def get_dispatch(dispatch_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            dispatch = _fetch_dispatch(cur, dispatch_id)
            if not dispatch:
                raise HTTPException(status_code=404, detail="dispatch not found")
            assert_facility_access(user, dispatch["facility_id"], WAREHOUSE_ROLES)
            cur.execute(
                """
                SELECT di.*, i.name AS item_name, i.item_code, i.unit
                FROM dispatch_items di
                LEFT JOIN inventory i ON i.id = di.inventory_id
                WHERE di.dispatch_id = %s
                ORDER BY di.created_at, di.id
                """,
                (dispatch_id,),
            )
            return {"dispatch": dispatch, "items": cur.fetchall()}


@router.post("", status_code=201)
def create_dispatch(data: DispatchIn, user=Depends(require_role(*WAREHOUSE_ROLES))):
    """
    Ship an approved requisition: one dispatch header, one line per item, stock
    decremented with an OUT movement per line, requisition marked Dispatched.
    Any failing line rolls back the whole dispatch.
    """
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, facility_id, status FROM requisitions WHERE id = %s FOR UPDATE",
                    (data.requisition_id,),
                )
                req = cur.fetchone()
                if not req or req["status"] != "Approved":
                    raise HTTPException(status_code=400, detail="requisition not found or not approved")
                if data.facility_id and str(data.facility_id) != str(req["facility_id"]):
                    raise HTTPException(status_code=400, detail="facility_id does not match the requisition")
                facility_id = req["facility_id"]

                tracking = tracking_number()
                cur.execute(
                    """
                    INSERT INTO dispatches
                      (id, requisition_id, facility_id, tracking_number, estimated_delivery_date,
                       notes, status, dispatched_by)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, 'Processing', %s)
                    RETURNING id
                    """,
                    (data.requisition_id, facility_id, tracking, data.estimated_delivery_date, data.notes, user["user_id"]),
                )
                dispatch_id = cur.fetchone()["id"]
                reference = f"DISPATCH-{dispatch_id}"

                for line in data.items:
                    item = lock_inventory_item(cur, line.inventory_id)
                    if not item or int(item["current_stock"] or 0) < line.quantity:
                        raise HTTPException(status_code=400, detail=f"insufficient stock for item {line.inventory_id}")
                    cur.execute(
                        """
                        INSERT INTO dispatch_items (id, dispatch_id, inventory_id, quantity, batch_number)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s)
                        """,
                        (dispatch_id, line.inventory_id, line.quantity, line.batch_number),
                    )
                    apply_stock_transaction(
                        cur,
                        item=item,
                        transaction_type=OUT,
                        quantity=line.quantity,
                        user_id=user["user_id"],
                        batch_number=line.batch_number,
                        reference_number=reference,
                        notes="Dispatched to facility",
                    )

                cur.execute(
                    "UPDATE requisitions SET status = 'Dispatched', updated_at = now() WHERE id = %s",
                    (data.requisition_id,),
                )
                log_audit(
                    cur,
                    user["user_id"],
                    "dispatch_create",
                    "dispatch",
                    dispatch_id,
                    {"requisition_id": data.requisition_id, "tracking_number": tracking, "lines": len(data.items)},
                )
                return {"dispatch": _fetch_dispatch(cur, dispatch_id)}


@router.put("/{dispatch_id}/status")
def update_dispatch_status(dispatch_id: str, data: DispatchStatusIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, facility_id, requisition_id, status FROM dispatches WHERE id = %s FOR UPDATE",
                    (dispatch_id,),
                )
                dispatch = cur.fetchone()
                if not dispatch:
                    raise HTTPException(status_code=404, detail="dispatch not found")
                assert_facility_access(user, dispatch["facility_id"], WAREHOUSE_ROLES)

                note = (data.notes or "").strip()
                cur.execute(
                    """
                    UPDATE dispatches
                    SET status = %s,
                        tracking_number = COALESCE(%s, tracking_number),
                        delivery_date = COALESCE(%s, delivery_date),
                        received_by = COALESCE(%s, received_by),
                        notes = CASE
                                  WHEN %s = '' THEN notes
                                  WHEN notes IS NULL OR notes = '' THEN %s
                                  ELSE notes || E'\\n' || %s
                                END,
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (data.status, data.tracking_number, data.delivery_date, data.received_by, note, note, note, dispatch_id),
                )
                if data.status == "Delivered":
                    cur.execute(
                        "UPDATE requisitions SET status = 'Completed', updated_at = now() WHERE id = %s",
                        (dispatch["requisition_id"],),
                    )
                log_audit(
                    cur,
                    user["user_id"],
                    "dispatch_status",
                    "dispatch",
                    dispatch_id,
                    {"from": dispatch["status"], "to": data.status},
                )
                return {"dispatch": _fetch_dispatch(cur, dispatch_id)}
