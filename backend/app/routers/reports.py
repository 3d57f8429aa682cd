from fastapi import APIRouter, Depends, Response, HTTPException
from datetime import date, datetime, timezone
from typing import Optional
from decimal import Decimal
import csv
import io
from ..db import get_conn
from ..deps import get_current_user, require_role, scoped_facility_id
from ..stock import (
    stock_status_sql,
    stock_status_filter_sql,
    expiry_status_sql,
    IN_STOCK,
    LOW_STOCK,
    OUT_OF_STOCK,
    EXPIRED,
    CRITICAL,
    WARNING,
)
from ..validation import (
    ConsumptionPeriod,
    TransactionType,
    normalize_choice,
    ADMIN_ROLES,
    FACILITY_USER,
    WAREHOUSE_ROLES,
)

router = APIRouter(prefix="/reports", tags=["reports"])

PERIOD_FORMATS = {
    "daily": "YYYY-MM-DD",
    "weekly": 'IYYY-"W"IW',
    "monthly": "YYYY-MM",
    "yearly": "YYYY",
}

INVENTORY_COLUMNS = [
    "item_code",
    "name",
    "category",
    "current_stock",
    "unit",
    "min_level",
    "max_level",
    "standard_cost",
    "moving_avg_cost",
    "last_po_cost",
    "facility_transfer_price",
    "abc_class",
    "total_value",
    "facility_name",
    "stock_status",
]

MOVEMENT_COLUMNS = [
    "id",
    "created_at",
    "transaction_type",
    "quantity",
    "batch_number",
    "expiry_date",
    "reference_number",
    "notes",
    "item_code",
    "item_name",
    "category",
    "unit",
    "facility_name",
    "created_by_name",
]


def _generated_at() -> str:
    return datetime.now(timezone.utc).isoformat()


def _csv_response(rows, columns, filename: str) -> Response:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(columns)
    for r in rows:
        writer.writerow([r.get(c) for c in columns])
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _check_format(format: Optional[str]) -> str:
    fmt = (format or "json").strip().lower()
    if fmt not in {"json", "csv"}:
        raise HTTPException(status_code=400, detail="format must be json or csv")
    return fmt


def _date_range(column: str, date_from: Optional[date], date_to: Optional[date]):
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=400, detail="date_from must be <= date_to")
    where, params = [], []
    if date_from:
        where.append(f"{column} >= %s")
        params.append(date_from)
    if date_to:
        # Inclusive of the whole `date_to` day.
        where.append(f"{column} < %s::date + 1")
        params.append(date_to)
    return where, params


def summarize_inventory(rows) -> dict:
    return {
        "total_items": len(rows),
        "total_value": sum((Decimal(str(r.get("total_value") or 0)) for r in rows), Decimal("0")),
        "out_of_stock": sum(1 for r in rows if r.get("stock_status") == OUT_OF_STOCK),
        "low_stock": sum(1 for r in rows if r.get("stock_status") == LOW_STOCK),
        "in_stock": sum(1 for r in rows if r.get("stock_status") == IN_STOCK),
    }


def summarize_expiry(rows) -> dict:
    value_at_risk = Decimal("0")
    for r in rows:
        value_at_risk += Decimal(str(r.get("remaining_quantity") or 0)) * Decimal(str(r.get("standard_cost") or 0))
    return {
        "total_batches": len(rows),
        "expired": sum(1 for r in rows if r.get("expiry_status") == EXPIRED),
        "critical": sum(1 for r in rows if r.get("expiry_status") == CRITICAL),
        "warning": sum(1 for r in rows if r.get("expiry_status") == WARNING),
        "total_value_at_risk": value_at_risk,
    }


@router.get("/dashboard-stats")
def dashboard_stats(facility_id: Optional[str] = None, user=Depends(get_current_user)):
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    where_sql = "WHERE facility_id = %s" if fid else ""
    params = [fid] if fid else []
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT COUNT(*) AS total_items,
                       COUNT(*) FILTER (WHERE {stock_status_filter_sql(OUT_OF_STOCK, 'inventory')}) AS out_of_stock,
                       COUNT(*) FILTER (WHERE {stock_status_filter_sql(LOW_STOCK, 'inventory')}) AS low_stock,
                       COALESCE(SUM(current_stock * COALESCE(standard_cost, 0)), 0) AS total_inventory_value
                FROM inventory
                {where_sql}
                """,
                params,
            )
            inventory = cur.fetchone()
            cur.execute(
                f"""
                SELECT COUNT(*) AS total_requisitions,
                       COUNT(*) FILTER (WHERE status = 'Pending') AS pending_requisitions,
                       COUNT(*) FILTER (WHERE status = 'Approved') AS approved_requisitions,
                       COUNT(*) FILTER (WHERE created_at::date = CURRENT_DATE) AS today_requisitions
                FROM requisitions
                {where_sql}
                """,
                params,
            )
            requisitions = cur.fetchone()
            cur.execute(
                f"""
                SELECT COUNT(*) AS total_dispatches,
                       COUNT(*) FILTER (WHERE status = 'In Transit') AS in_transit,
                       COUNT(*) FILTER (WHERE status = 'Delivered') AS delivered,
                       COUNT(*) FILTER (WHERE created_at::date = CURRENT_DATE) AS today_dispatches
                FROM dispatches
                {where_sql}
                """,
                params,
            )
            dispatches = cur.fetchone()
            assets = {"total_assets": 0, "under_maintenance": 0, "available": 0}
            if user["role"] != FACILITY_USER:
                cur.execute(
                    f"""
                    SELECT COUNT(*) AS total_assets,
                           COUNT(*) FILTER (WHERE status = 'Under Maintenance') AS under_maintenance,
                           COUNT(*) FILTER (WHERE status = 'Available') AS available
                    FROM assets
                    {where_sql}
                    """,
                    params,
                )
                assets = cur.fetchone()
            return {
                "inventory": inventory,
                "requisitions": requisitions,
                "dispatches": dispatches,
                "assets": assets,
                "generated_at": _generated_at(),
            }


@router.get("/inventory")
def inventory_report(
    facility_id: Optional[str] = None,
    category: Optional[str] = None,
    format: Optional[str] = None,
    user=Depends(require_role(*ADMIN_ROLES)),
):
    fmt = _check_format(format)
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    where = ["1=1"]
    params: list = []
    if fid:
        where.append("i.facility_id = %s")
        params.append(fid)
    if category:
        where.append("i.category = %s")
        params.append(category)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT i.item_code, i.name, i.category, i.current_stock, i.unit, i.min_level, i.max_level,
                       i.standard_cost, i.moving_avg_cost, i.last_po_cost, i.facility_transfer_price, i.abc_class,
                       (i.current_stock * COALESCE(i.standard_cost, 0)) AS total_value,
                       f.name AS facility_name,
                       {stock_status_sql('i')} AS stock_status
                FROM inventory i
                LEFT JOIN facilities f ON f.id = i.facility_id
                WHERE {' AND '.join(where)}
                ORDER BY i.name
                """,
                params,
            )
            rows = cur.fetchall()
    if fmt == "csv":
        return _csv_response(rows, INVENTORY_COLUMNS, "inventory_report.csv")
    return {
        "report": rows,
        "summary": summarize_inventory(rows),
        "generated_at": _generated_at(),
        "filters": {"facility_id": fid, "category": category},
    }


@router.get("/consumption")
def consumption_report(
    facility_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    period: Optional[str] = None,
    user=Depends(require_role(*ADMIN_ROLES)),
):
    p = normalize_choice(period, ConsumptionPeriod) or "monthly"
    if p not in PERIOD_FORMATS:
        raise HTTPException(status_code=400, detail="period must be one of daily, weekly, monthly, yearly")
    bucket = f"to_char(sm.created_at, '{PERIOD_FORMATS[p]}')"
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    where = ["sm.transaction_type IN ('IN', 'OUT')"]
    params: list = []
    if fid:
        where.append("i.facility_id = %s")
        params.append(fid)
    range_where, range_params = _date_range("sm.created_at", date_from, date_to)
    where.extend(range_where)
    params.extend(range_params)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {bucket} AS period,
                       i.category,
                       COALESCE(SUM(sm.quantity) FILTER (WHERE sm.transaction_type = 'OUT'), 0) AS consumed_quantity,
                       COALESCE(SUM(sm.quantity) FILTER (WHERE sm.transaction_type = 'IN'), 0) AS received_quantity,
                       COUNT(DISTINCT sm.inventory_id) AS unique_items
                FROM stock_movements sm
                JOIN inventory i ON i.id = sm.inventory_id
                WHERE {' AND '.join(where)}
                GROUP BY 1, i.category
                ORDER BY period DESC, i.category
                """,
                params,
            )
            rows = cur.fetchall()
    return {
        "report": rows,
        "generated_at": _generated_at(),
        "filters": {"facility_id": fid, "date_from": date_from, "date_to": date_to, "period": p},
    }


@router.get("/expiry")
def expiry_report(
    facility_id: Optional[str] = None,
    days_ahead: int = 90,
    user=Depends(require_role(*ADMIN_ROLES)),
):
    if days_ahead < 0 or days_ahead > 3650:
        raise HTTPException(status_code=400, detail="days_ahead must be between 0 and 3650")
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    where = ["b.expiry_date IS NOT NULL", "b.remaining_quantity > 0", "(b.expiry_date - CURRENT_DATE) <= %s"]
    params: list = [days_ahead]
    if fid:
        where.append("i.facility_id = %s")
        params.append(fid)
    with get_conn() as conn:
        with conn.cursor() as cur:
            # Batches key on (item, batch number); dispatch OUT rows carry no expiry date.
            cur.execute(
                f"""
                WITH batches AS (
                  SELECT sm.inventory_id,
                         sm.batch_number,
                         MIN(sm.expiry_date) FILTER (WHERE sm.transaction_type = 'IN') AS expiry_date,
                         SUM(CASE WHEN sm.transaction_type = 'IN' THEN sm.quantity
                                  WHEN sm.transaction_type = 'OUT' THEN -sm.quantity
                                  ELSE 0 END) AS remaining_quantity
                  FROM stock_movements sm
                  GROUP BY sm.inventory_id, sm.batch_number
                )
                SELECT b.batch_number,
                       b.expiry_date,
                       i.id AS inventory_id,
                       i.item_code,
                       i.name,
                       i.category,
                       i.unit,
                       i.standard_cost,
                       b.remaining_quantity,
                       (b.expiry_date - CURRENT_DATE) AS days_to_expiry,
                       f.name AS facility_name,
                       {expiry_status_sql('(b.expiry_date - CURRENT_DATE)')} AS expiry_status
                FROM batches b
                JOIN inventory i ON i.id = b.inventory_id
                LEFT JOIN facilities f ON f.id = i.facility_id
                WHERE {' AND '.join(where)}
                ORDER BY b.expiry_date ASC
                """,
                params,
            )
            rows = cur.fetchall()
    return {
        "report": rows,
        "summary": summarize_expiry(rows),
        "generated_at": _generated_at(),
        "filters": {"facility_id": fid, "days_ahead": days_ahead},
    }


@router.get("/stock-movements")
def stock_movement_report(
    facility_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    transaction_type: Optional[str] = None,
    format: Optional[str] = None,
    user=Depends(require_role(*ADMIN_ROLES)),
):
    fmt = _check_format(format)
    fid = scoped_facility_id(user, facility_id, WAREHOUSE_ROLES)
    where = ["1=1"]
    params: list = []
    if fid:
        where.append("i.facility_id = %s")
        params.append(fid)
    range_where, range_params = _date_range("sm.created_at", date_from, date_to)
    where.extend(range_where)
    params.extend(range_params)
    ttype = normalize_choice(transaction_type, TransactionType)
    if ttype:
        if ttype not in {"IN", "OUT", "ADJUSTMENT"}:
            raise HTTPException(status_code=400, detail="invalid transaction type")
        where.append("sm.transaction_type = %s")
        params.append(ttype)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT sm.id, sm.created_at, sm.transaction_type, sm.quantity, sm.batch_number,
                       sm.expiry_date, sm.reference_number, sm.notes,
                       i.item_code, i.name AS item_name, i.category, i.unit,
                       f.name AS facility_name,
                       u.username AS created_by_name
                FROM stock_movements sm
                LEFT JOIN inventory i ON i.id = sm.inventory_id
                LEFT JOIN facilities f ON f.id = i.facility_id
                LEFT JOIN users u ON u.id = sm.created_by
                WHERE {' AND '.join(where)}
                ORDER BY sm.created_at DESC
                """,
                params,
            )
            rows = cur.fetchall()
    if fmt == "csv":
        return _csv_response(rows, MOVEMENT_COLUMNS, "stock_movements.csv")
    return {
        "report": rows,
        "generated_at": _generated_at(),
        "filters": {"facility_id": fid, "date_from": date_from, "date_to": date_to, "transaction_type": ttype},
    }
