from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from pydantic import BaseModel, Field
from typing import Optional
from datetime import date
from decimal import Decimal
import json
from ..db import get_conn
from ..deps import get_current_user, require_role, assert_facility_access, scoped_facility_id, target_facility_id
from ..pagination import page_window, pagination_meta
from ..validation import (
    AssetCondition,
    AssetStatus,
    MaintenanceType,
    normalize_choice,
    ADMIN_ROLES,
    SUPER_ADMIN,
)
from ..attachments import store_upload, remove_upload, signed_link
from ..audit_utils import log_audit

router = APIRouter(prefix="/assets", tags=["assets"])

ASSET_FIELDS = (
    "name",
    "category",
    "description",
    "serial_number",
    "department",
    "location",
    "purchase_date",
    "purchase_cost",
    "vendor",
    "warranty_end_date",
    "condition",
    "status",
)
# Maintenance types that take the asset out of service.
OUT_OF_SERVICE_MAINTENANCE = {"Corrective", "Emergency"}


class AssetIn(BaseModel):
    asset_code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=200)
    category: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    serial_number: Optional[str] = Field(default=None, max_length=100)
    facility_id: Optional[str] = None
    department: str = Field(min_length=1, max_length=100)
    location: Optional[str] = Field(default=None, max_length=200)
    purchase_date: Optional[date] = None
    purchase_cost: Optional[Decimal] = Field(default=None, ge=0)
    vendor: Optional[str] = Field(default=None, max_length=200)
    warranty_end_date: Optional[date] = None
    condition: AssetCondition
    status: AssetStatus


class AssetUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    serial_number: Optional[str] = Field(default=None, max_length=100)
    department: Optional[str] = Field(default=None, min_length=1, max_length=100)
    location: Optional[str] = Field(default=None, max_length=200)
    purchase_date: Optional[date] = None
    purchase_cost: Optional[Decimal] = Field(default=None, ge=0)
    vendor: Optional[str] = Field(default=None, max_length=200)
    warranty_end_date: Optional[date] = None
    condition: Optional[AssetCondition] = None
    status: Optional[AssetStatus] = None


class MaintenanceIn(BaseModel):
    maintenance_date: date
    maintenance_type: MaintenanceType
    description: str = Field(min_length=1)
    technician: str = Field(min_length=1, max_length=100)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    estimated_duration: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None


class AssetMovementIn(BaseModel):
    movement_date: date
    from_location: Optional[str] = Field(default=None, max_length=200)
    to_location: str = Field(min_length=1, max_length=200)
    reason: Optional[str] = None
    handled_by: Optional[str] = Field(default=None, max_length=100)


ASSET_SELECT = """
    SELECT a.*, f.name AS facility_name
    FROM assets a
    LEFT JOIN facilities f ON f.id = a.facility_id
"""


def _fetch_asset(cur, asset_id):
    cur.execute(ASSET_SELECT + " WHERE a.id = %s", (asset_id,))
    return cur.fetchone()


def _lock_asset(cur, asset_id, user):
    cur.execute("SELECT id, facility_id, status, location, attachments FROM assets WHERE id = %s FOR UPDATE", (asset_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="asset not found")
    assert_facility_access(user, row["facility_id"])
    return row


@router.get("")
def list_assets(
    facility_id: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    condition: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user=Depends(get_current_user),
):
    limit, offset = page_window(page, limit)
    where = ["1=1"]
    params: list = []
    fid = scoped_facility_id(user, facility_id, (SUPER_ADMIN,))
    if fid:
        where.append("a.facility_id = %s")
        params.append(fid)
    if category:
        where.append("a.category = %s")
        params.append(category)
    st = normalize_choice(status, AssetStatus)
    if st:
        where.append("a.status = %s")
        params.append(st)
    cond = normalize_choice(condition, AssetCondition)
    if cond:
        where.append("a.condition = %s")
        params.append(cond)
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                ASSET_SELECT
                + f"""
                WHERE {where_sql}
                ORDER BY a.created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            assets = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM assets a WHERE {where_sql}", params)
            total = cur.fetchone()["total"]
            return {"assets": assets, "pagination": pagination_meta(page, limit, total)}


@router.get("/{asset_id}")
def get_asset(asset_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            asset = _fetch_asset(cur, asset_id)
            if not asset:
                raise HTTPException(status_code=404, detail="asset not found")
            assert_facility_access(user, asset["facility_id"])
            cur.execute(
                """
                SELECT am.*, u.username AS created_by_name
                FROM asset_maintenance am
                LEFT JOIN users u ON u.id = am.created_by
                WHERE am.asset_id = %s
                ORDER BY am.maintenance_date DESC, am.created_at DESC
                """,
                (asset_id,),
            )
            maintenance = cur.fetchall()
            cur.execute(
                """
                SELECT amv.*, u.username AS created_by_name
                FROM asset_movements amv
                LEFT JOIN users u ON u.id = amv.created_by
                WHERE amv.asset_id = %s
                ORDER BY amv.movement_date DESC, amv.created_at DESC
                """,
                (asset_id,),
            )
            movements = cur.fetchall()
            return {"asset": asset, "maintenance_history": maintenance, "movement_history": movements}


@router.post("", status_code=201)
def create_asset(data: AssetIn, user=Depends(require_role(*ADMIN_ROLES))):
    facility_id = target_facility_id(user, data.facility_id)
    if not facility_id:
        raise HTTPException(status_code=400, detail="facility_id is required")
    code = data.asset_code.strip()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM assets WHERE asset_code = %s", (code,))
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="asset code already exists")
                cur.execute(
                    """
                    INSERT INTO assets
                      (id, asset_code, name, category, description, serial_number, facility_id,
                       department, location, purchase_date, purchase_cost, vendor,
                       warranty_end_date, condition, status, attachments, created_by)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, '[]'::jsonb, %s)
                    RETURNING id
                    """,
                    (
                        code,
                        data.name,
                        data.category,
                        data.description,
                        data.serial_number,
                        facility_id,
                        data.department,
                        data.location,
                        data.purchase_date,
                        data.purchase_cost,
                        data.vendor,
                        data.warranty_end_date,
                        data.condition,
                        data.status,
                        user["user_id"],
                    ),
                )
                asset_id = cur.fetchone()["id"]
                log_audit(cur, user["user_id"], "asset_create", "asset", asset_id, {"asset_code": code, "facility_id": facility_id})
                return {"asset": _fetch_asset(cur, asset_id)}


@router.put("/{asset_id}")
def update_asset(asset_id: str, data: AssetUpdate, user=Depends(require_role(*ADMIN_ROLES))):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if k in ASSET_FIELDS}
    for required in ("name", "category", "department", "condition", "status"):
        if required in patch and patch[required] is None:
            raise HTTPException(status_code=400, detail=f"{required} cannot be empty")
    if not patch:
        raise HTTPException(status_code=400, detail="no valid fields to update")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _lock_asset(cur, asset_id, user)
                fields = [f"{k} = %s" for k in patch]
                cur.execute(
                    f"""
                    UPDATE assets
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    """,
                    list(patch.values()) + [asset_id],
                )
                log_audit(cur, user["user_id"], "asset_update", "asset", asset_id, patch)
                return {"asset": _fetch_asset(cur, asset_id)}


@router.post("/{asset_id}/maintenance", status_code=201)
def add_maintenance(asset_id: str, data: MaintenanceIn, user=Depends(require_role(*ADMIN_ROLES))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _lock_asset(cur, asset_id, user)
                cur.execute(
                    """
                    INSERT INTO asset_maintenance
                      (id, asset_id, maintenance_date, maintenance_type, description, technician,
                       cost, estimated_duration, notes, created_by)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        asset_id,
                        data.maintenance_date,
                        data.maintenance_type,
                        data.description,
                        data.technician,
                        data.cost,
                        data.estimated_duration,
                        data.notes,
                        user["user_id"],
                    ),
                )
                maintenance_id = cur.fetchone()["id"]
                if data.maintenance_type in OUT_OF_SERVICE_MAINTENANCE:
                    cur.execute(
                        "UPDATE assets SET status = 'Under Maintenance', updated_at = now() WHERE id = %s",
                        (asset_id,),
                    )
                log_audit(
                    cur,
                    user["user_id"],
                    "asset_maintenance",
                    "asset",
                    asset_id,
                    {"maintenance_id": maintenance_id, "maintenance_type": data.maintenance_type},
                )
                return {"id": maintenance_id}


@router.post("/{asset_id}/movement", status_code=201)
def add_movement(asset_id: str, data: AssetMovementIn, user=Depends(require_role(*ADMIN_ROLES))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                asset = _lock_asset(cur, asset_id, user)
                from_location = data.from_location if data.from_location is not None else asset["location"]
                cur.execute(
                    """
                    INSERT INTO asset_movements
                      (id, asset_id, movement_date, from_location, to_location, reason, handled_by, created_by)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (asset_id, data.movement_date, from_location, data.to_location, data.reason, data.handled_by, user["user_id"]),
                )
                movement_id = cur.fetchone()["id"]
                cur.execute(
                    "UPDATE assets SET location = %s, updated_at = now() WHERE id = %s",
                    (data.to_location, asset_id),
                )
                log_audit(
                    cur,
                    user["user_id"],
                    "asset_movement",
                    "asset",
                    asset_id,
                    {"movement_id": movement_id, "from_location": from_location, "to_location": data.to_location},
                )
                return {"id": movement_id}


@router.post("/{asset_id}/attachments", status_code=201)
def upload_asset_attachment(asset_id: str, file: UploadFile = File(...), user=Depends(require_role(*ADMIN_ROLES))):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT facility_id FROM assets WHERE id = %s", (asset_id,))
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="asset not found")
    assert_facility_access(user, row["facility_id"])

    descriptor = store_upload(file, "assets")
    try:
        with get_conn() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    _lock_asset(cur, asset_id, user)
                    cur.execute(
                        """
                        UPDATE assets
                        SET attachments = COALESCE(attachments, '[]'::jsonb) || %s::jsonb,
                            updated_at = now()
                        WHERE id = %s
                        RETURNING attachments
                        """,
                        (json.dumps([descriptor]), asset_id),
                    )
                    attachments = cur.fetchone()["attachments"]
                    log_audit(cur, user["user_id"], "asset_attachment_add", "asset", asset_id, {"key": descriptor["key"]})
    except Exception:
        remove_upload(descriptor["key"])
        raise
    return {"attachment": descriptor, "attachments": attachments}


@router.get("/{asset_id}/attachments/link")
def asset_attachment_link(
    asset_id: str,
    key: str,
    disposition: str = "inline",
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT facility_id, attachments FROM assets WHERE id = %s", (asset_id,))
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="asset not found")
    assert_facility_access(user, row["facility_id"])
    match = next((a for a in (row["attachments"] or []) if a.get("key") == (key or "").strip()), None)
    if not match:
        raise HTTPException(status_code=404, detail="attachment not found")
    return {"url": signed_link(match, disposition), "attachment": match}


@router.delete("/{asset_id}/attachments")
def delete_asset_attachment(asset_id: str, key: str, user=Depends(require_role(*ADMIN_ROLES))):
    key = (key or "").strip()
    if not key:
        raise HTTPException(status_code=400, detail="key is required")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                asset = _lock_asset(cur, asset_id, user)
                current = asset["attachments"] or []
                remaining = [a for a in current if a.get("key") != key]
                if len(remaining) == len(current):
                    raise HTTPException(status_code=404, detail="attachment not found")
                cur.execute(
                    "UPDATE assets SET attachments = %s::jsonb, updated_at = now() WHERE id = %s",
                    (json.dumps(remaining), asset_id),
                )
                log_audit(cur, user["user_id"], "asset_attachment_delete", "asset", asset_id, {"key": key})
    remove_upload(key)
    return {"attachments": remaining}


@router.post("/{asset_id}/maintenance/{maintenance_id}/attachment")
def upload_maintenance_attachment(
    asset_id: str,
    maintenance_id: str,
    file: UploadFile = File(...),
    user=Depends(require_role(*ADMIN_ROLES)),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT a.facility_id
                FROM asset_maintenance am
                JOIN assets a ON a.id = am.asset_id
                WHERE am.id = %s AND am.asset_id = %s
                """,
                (maintenance_id, asset_id),
            )
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="maintenance record not found")
    assert_facility_access(user, row["facility_id"])

    descriptor = store_upload(file, "maintenance")
    try:
        with get_conn() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT attachment FROM asset_maintenance WHERE id = %s AND asset_id = %s FOR UPDATE",
                        (maintenance_id, asset_id),
                    )
                    current = cur.fetchone()
                    if not current:
                        raise HTTPException(status_code=404, detail="maintenance record not found")
                    previous = current["attachment"]
                    cur.execute(
                        "UPDATE asset_maintenance SET attachment = %s::jsonb WHERE id = %s",
                        (json.dumps(descriptor), maintenance_id),
                    )
                    log_audit(
                        cur,
                        user["user_id"],
                        "asset_maintenance_attachment",
                        "asset",
                        asset_id,
                        {"maintenance_id": maintenance_id, "key": descriptor["key"]},
                    )
    except Exception:
        remove_upload(descriptor["key"])
        raise
    if previous and previous.get("key"):
        remove_upload(previous["key"])
    return {"attachment": descriptor}
