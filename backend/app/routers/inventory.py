from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from datetime import date
from decimal import Decimal
from ..db import get_conn
from ..deps import get_current_user, require_role, assert_facility_access, scoped_facility_id, target_facility_id
from ..pagination import page_window, pagination_meta
from ..stock import (
    stock_status_sql,
    stock_status_filter_sql,
    lock_inventory_item,
    apply_stock_transaction,
    IN_STOCK,
    LOW_STOCK,
    OUT_OF_STOCK,
)
from ..validation import (
    AbcClass,
    TransactionType,
    StockStatus,
    normalize_choice,
    ADMIN_ROLES,
    SUPER_ADMIN,
    WAREHOUSE_ROLES,
)
from ..audit_utils import log_audit

router = APIRouter(prefix="/inventory", tags=["inventory"])

ITEM_FIELDS = (
    "name",
    "category",
    "description",
    "unit",
    "standard_cost",
    "moving_avg_cost",
    "last_po_cost",
    "facility_transfer_price",
    "abc_class",
    "min_level",
    "max_level",
)


class InventoryItemIn(BaseModel):
    item_code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=200)
    category: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    unit: str = Field(min_length=1, max_length=20)
    standard_cost: Optional[Decimal] = Field(default=None, ge=0)
    moving_avg_cost: Optional[Decimal] = Field(default=None, ge=0)
    last_po_cost: Optional[Decimal] = Field(default=None, ge=0)
    facility_transfer_price: Optional[Decimal] = Field(default=None, ge=0)
    abc_class: Optional[AbcClass] = None
    min_level: Optional[int] = Field(default=None, ge=0)
    max_level: Optional[int] = Field(default=None, ge=0)
    facility_id: Optional[str] = None


class InventoryItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    unit: Optional[str] = Field(default=None, min_length=1, max_length=20)
    standard_cost: Optional[Decimal] = Field(default=None, ge=0)
    moving_avg_cost: Optional[Decimal] = Field(default=None, ge=0)
    last_po_cost: Optional[Decimal] = Field(default=None, ge=0)
    facility_transfer_price: Optional[Decimal] = Field(default=None, ge=0)
    abc_class: Optional[AbcClass] = None
    min_level: Optional[int] = Field(default=None, ge=0)
    max_level: Optional[int] = Field(default=None, ge=0)


class StockUpdateIn(BaseModel):
    quantity: int = Field(ge=0)
    transaction_type: TransactionType
    batch_number: Optional[str] = Field(default=None, max_length=50)
    expiry_date: Optional[date] = None
    reference_number: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = None


def _item_select() -> str:
    return f"""
        SELECT i.*, f.name AS facility_name,
               {stock_status_sql('i')} AS stock_status
        FROM inventory i
        LEFT JOIN facilities f ON f.id = i.facility_id
    """


def _fetch_item(cur, item_id):
    cur.execute(_item_select() + " WHERE i.id = %s", (item_id,))
    return cur.fetchone()


@router.get("")
def list_items(
    facility_id: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    user=Depends(get_current_user),
):
    limit, offset = page_window(page, limit)
    where = ["1=1"]
    params: list = []
    if facility_id:
        where.append("i.facility_id = %s")
        params.append(facility_id)
    if category:
        where.append("i.category = %s")
        params.append(category)
    if search:
        like = f"%{search.strip()}%"
        where.append("(i.name ILIKE %s OR i.item_code ILIKE %s)")
        params.extend([like, like])
    stock_filter = normalize_choice(status, StockStatus)
    if stock_filter:
        where.append(stock_status_filter_sql(stock_filter, "i"))
    where_sql = " AND ".join(where)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                _item_select()
                + f"""
                WHERE {where_sql}
                ORDER BY i.created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            items = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM inventory i WHERE {where_sql}", params)
            total = cur.fetchone()["total"]
            return {"items": items, "pagination": pagination_meta(page, limit, total)}


@router.get("/stats")
def inventory_stats(facility_id: Optional[str] = None, user=Depends(get_current_user)):
    fid = scoped_facility_id(user, facility_id, (SUPER_ADMIN,))
    where_sql = "WHERE facility_id = %s" if fid else ""
    params = [fid] if fid else []
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT COUNT(*) AS total_items,
                       COUNT(*) FILTER (WHERE {stock_status_filter_sql(OUT_OF_STOCK, 'inventory')}) AS out_of_stock,
                       COUNT(*) FILTER (WHERE {stock_status_filter_sql(LOW_STOCK, 'inventory')}) AS low_stock,
                       COUNT(*) FILTER (WHERE {stock_status_filter_sql(IN_STOCK, 'inventory')}) AS in_stock,
                       COALESCE(SUM(current_stock * COALESCE(standard_cost, 0)), 0) AS total_value
                FROM inventory
                {where_sql}
                """,
                params,
            )
            overview = cur.fetchone()
            cur.execute(
                f"""
                SELECT category,
                       COUNT(*) AS item_count,
                       COALESCE(SUM(current_stock), 0) AS total_stock,
                       COALESCE(SUM(current_stock * COALESCE(standard_cost, 0)), 0) AS category_value
                FROM inventory
                {where_sql}
                GROUP BY category
                ORDER BY category_value DESC
                """,
                params,
            )
            return {"overview": overview, "by_category": cur.fetchall()}


@router.get("/{item_id}")
def get_item(item_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            item = _fetch_item(cur, item_id)
            if not item:
                raise HTTPException(status_code=404, detail="inventory item not found")
            cur.execute(
                """
                SELECT id, inventory_id, transaction_type, quantity, batch_number, expiry_date,
                       reference_number, notes, created_by, created_at
                FROM stock_movements
                WHERE inventory_id = %s
                ORDER BY created_at DESC
                LIMIT 10
                """,
                (item_id,),
            )
            return {"item": item, "recent_movements": cur.fetchall()}


@router.get("/{item_id}/movements")
def list_movements(item_id: str, page: int = 1, limit: int = 20, user=Depends(get_current_user)):
    limit, offset = page_window(page, limit)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT sm.id, sm.inventory_id, sm.transaction_type, sm.quantity, sm.batch_number,
                       sm.expiry_date, sm.reference_number, sm.notes, sm.created_by, sm.created_at,
                       u.username AS created_by_name
                FROM stock_movements sm
                LEFT JOIN users u ON u.id = sm.created_by
                WHERE sm.inventory_id = %s
                ORDER BY sm.created_at DESC
                LIMIT %s OFFSET %s
                """,
                (item_id, limit, offset),
            )
            movements = cur.fetchall()
            cur.execute("SELECT COUNT(*) AS total FROM stock_movements WHERE inventory_id = %s", (item_id,))
            total = cur.fetchone()["total"]
            return {"movements": movements, "pagination": pagination_meta(page, limit, total)}


@router.post("", status_code=201)
def create_item(data: InventoryItemIn, user=Depends(require_role(*ADMIN_ROLES))):
    if data.min_level is not None and data.max_level is not None and data.max_level < data.min_level:
        raise HTTPException(status_code=400, detail="max_level must be >= min_level")
    facility_id = target_facility_id(user, data.facility_id)
    if not facility_id:
        raise HTTPException(status_code=400, detail="facility_id is required")
    code = data.item_code.strip()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM inventory WHERE item_code = %s", (code,))
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="item code already exists")
                cur.execute(
                    """
                    INSERT INTO inventory
                      (id, item_code, name, category, description, unit, current_stock, standard_cost,
                       moving_avg_cost, last_po_cost, facility_transfer_price, abc_class,
                       min_level, max_level, facility_id, created_by)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, 0, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        code,
                        data.name,
                        data.category,
                        data.description,
                        data.unit,
                        data.standard_cost,
                        data.moving_avg_cost,
                        data.last_po_cost,
                        data.facility_transfer_price,
                        data.abc_class,
                        data.min_level,
                        data.max_level,
                        facility_id,
                        user["user_id"],
                    ),
                )
                item_id = cur.fetchone()["id"]
                log_audit(cur, user["user_id"], "inventory_create", "inventory", item_id, {"item_code": code, "facility_id": facility_id})
                return {"item": _fetch_item(cur, item_id)}


@router.put("/{item_id}")
def update_item(item_id: str, data: InventoryItemUpdate, user=Depends(require_role(*ADMIN_ROLES))):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if k in ITEM_FIELDS}
    for required in ("name", "category", "unit"):
        if required in patch and patch[required] is None:
            raise HTTPException(status_code=400, detail=f"{required} cannot be empty")
    if not patch:
        raise HTTPException(status_code=400, detail="no valid fields to update")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, facility_id, min_level, max_level FROM inventory WHERE id = %s FOR UPDATE", (item_id,))
                existing = cur.fetchone()
                if not existing:
                    raise HTTPException(status_code=404, detail="inventory item not found")
                assert_facility_access(user, existing["facility_id"])
                min_level = patch.get("min_level", existing["min_level"])
                max_level = patch.get("max_level", existing["max_level"])
                if min_level is not None and max_level is not None and max_level < min_level:
                    raise HTTPException(status_code=400, detail="max_level must be >= min_level")

                fields = [f"{k} = %s" for k in patch]
                cur.execute(
                    f"""
                    UPDATE inventory
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    """,
                    list(patch.values()) + [item_id],
                )
                log_audit(cur, user["user_id"], "inventory_update", "inventory", item_id, patch)
                return {"item": _fetch_item(cur, item_id)}


@router.post("/{item_id}/stock")
def update_stock(item_id: str, data: StockUpdateIn, user=Depends(require_role(*ADMIN_ROLES))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                item = lock_inventory_item(cur, item_id)
                if not item:
                    raise HTTPException(status_code=404, detail="inventory item not found")
                assert_facility_access(user, item["facility_id"])
                result = apply_stock_transaction(
                    cur,
                    item=item,
                    transaction_type=data.transaction_type,
                    quantity=data.quantity,
                    user_id=user["user_id"],
                    batch_number=data.batch_number,
                    expiry_date=data.expiry_date,
                    reference_number=data.reference_number,
                    notes=data.notes,
                )
                log_audit(
                    cur,
                    user["user_id"],
                    "inventory_stock_update",
                    "inventory",
                    item_id,
                    {"transaction_type": data.transaction_type, "quantity": data.quantity, **result},
                )
                return {"item": _fetch_item(cur, item_id), "movement_id": result["movement_id"]}


@router.delete("/{item_id}")
def delete_item(item_id: str, user=Depends(require_role(*WAREHOUSE_ROLES))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, item_code, facility_id FROM inventory WHERE id = %s FOR UPDATE", (item_id,))
                item = cur.fetchone()
                if not item:
                    raise HTTPException(status_code=404, detail="inventory item not found")
                assert_facility_access(user, item["facility_id"])
                cur.execute("SELECT COUNT(*) AS count FROM stock_movements WHERE inventory_id = %s", (item_id,))
                if cur.fetchone()["count"] > 0:
                    raise HTTPException(
                        status_code=400,
                        detail="cannot delete item with existing stock movements",
                    )
                cur.execute("DELETE FROM inventory WHERE id = %s", (item_id,))
                log_audit(cur, user["user_id"], "inventory_delete", "inventory", item_id, {"item_code": item["item_code"]})
                return {"ok": True}
