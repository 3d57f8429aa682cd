"""
Stock ledger helpers.

`inventory.current_stock` is the running balance; `stock_movements` is the append-only
ledger behind it. Every balance change goes through `apply_stock_transaction` (or the
dispatch path, which uses the same primitives) inside the caller's transaction so the
balance and its movement row commit or roll back together.
"""
from datetime import date
from typing import Optional

from fastapi import HTTPException

IN = "IN"
OUT = "OUT"
ADJUSTMENT = "ADJUSTMENT"

OUT_OF_STOCK = "Out of Stock"
LOW_STOCK = "Low Stock"
IN_STOCK = "In Stock"

EXPIRED = "Expired"
CRITICAL = "Critical"
WARNING = "Warning"
NORMAL = "Normal"

CRITICAL_DAYS = 30
WARNING_DAYS = 60


def stock_status_sql(alias: str = "i") -> str:
    return f"""CASE
               WHEN {alias}.current_stock = 0 THEN '{OUT_OF_STOCK}'
               WHEN {alias}.current_stock < COALESCE({alias}.min_level, 0) THEN '{LOW_STOCK}'
               ELSE '{IN_STOCK}'
             END"""


def stock_status_filter_sql(status: str, alias: str = "i") -> str:
    """
    WHERE fragment selecting exactly the rows `stock_status_sql` labels `status`.
    """
    if status == OUT_OF_STOCK:
        return f"{alias}.current_stock = 0"
    if status == LOW_STOCK:
        return f"{alias}.current_stock > 0 AND {alias}.current_stock < COALESCE({alias}.min_level, 0)"
    if status == IN_STOCK:
        return f"{alias}.current_stock > 0 AND {alias}.current_stock >= COALESCE({alias}.min_level, 0)"
    raise HTTPException(status_code=400, detail=f"invalid stock status: {status}")


def stock_status(current_stock: int, min_level: Optional[int]) -> str:
    current = int(current_stock or 0)
    if current == 0:
        return OUT_OF_STOCK
    if current < int(min_level or 0):
        return LOW_STOCK
    return IN_STOCK


def expiry_status_sql(days_expr: str) -> str:
    return f"""CASE
               WHEN {days_expr} < 0 THEN '{EXPIRED}'
               WHEN {days_expr} <= {CRITICAL_DAYS} THEN '{CRITICAL}'
               WHEN {days_expr} <= {WARNING_DAYS} THEN '{WARNING}'
               ELSE '{NORMAL}'
             END"""


def expiry_status(days_to_expiry: int) -> str:
    if days_to_expiry < 0:
        return EXPIRED
    if days_to_expiry <= CRITICAL_DAYS:
        return CRITICAL
    if days_to_expiry <= WARNING_DAYS:
        return WARNING
    return NORMAL


def apply_delta(current_stock: int, transaction_type: str, quantity: int) -> int:
    """
    New balance after a movement: IN adds, OUT subtracts but never below zero,
    ADJUSTMENT replaces the balance with the counted quantity.
    """
    current = int(current_stock or 0)
    qty = int(quantity)
    if qty < 0:
        raise HTTPException(status_code=400, detail="quantity must be >= 0")
    if transaction_type == IN:
        return current + qty
    if transaction_type == OUT:
        return max(0, current - qty)
    if transaction_type == ADJUSTMENT:
        return qty
    raise HTTPException(status_code=400, detail="invalid transaction type")


def lock_inventory_item(cur, item_id: str):
    cur.execute(
        """
        SELECT id, item_code, name, facility_id, current_stock, min_level, standard_cost
        FROM inventory
        WHERE id = %s
        FOR UPDATE
        """,
        (item_id,),
    )
    return cur.fetchone()


def record_movement(
    cur,
    *,
    item_id: str,
    transaction_type: str,
    quantity: int,
    user_id: str,
    batch_number: Optional[str] = None,
    expiry_date: Optional[date] = None,
    reference_number: Optional[str] = None,
    notes: Optional[str] = None,
):
    cur.execute(
        """
        INSERT INTO stock_movements
          (id, inventory_id, transaction_type, quantity, batch_number, expiry_date,
           reference_number, notes, created_by)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (item_id, transaction_type, int(quantity), batch_number, expiry_date, reference_number, notes, user_id),
    )
    return cur.fetchone()["id"]


def set_stock(cur, item_id: str, new_stock: int) -> None:
    cur.execute(
        """
        UPDATE inventory
        SET current_stock = %s, updated_at = now()
        WHERE id = %s
        """,
        (int(new_stock), item_id),
    )


def apply_stock_transaction(
    cur,
    *,
    item,
    transaction_type: str,
    quantity: int,
    user_id: str,
    batch_number: Optional[str] = None,
    expiry_date: Optional[date] = None,
    reference_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    """
    Apply one ledger entry to a row returned by `lock_inventory_item`.
    Must run inside the caller's transaction.
    """
    before = int(item["current_stock"] or 0)
    after = apply_delta(before, transaction_type, quantity)
    set_stock(cur, item["id"], after)
    movement_id = record_movement(
        cur,
        item_id=item["id"],
        transaction_type=transaction_type,
        quantity=quantity,
        user_id=user_id,
        batch_number=batch_number,
        expiry_date=expiry_date,
        reference_number=reference_number,
        notes=notes,
    )
    return {"movement_id": movement_id, "stock_before": before, "stock_after": after}
