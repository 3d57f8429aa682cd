from __future__ import annotations

from typing import Annotated, Literal, get_args

from pydantic import BeforeValidator


def _canonical(literal_type):
    """
    Build a pre-validator that maps case/spacing variants onto the canonical spelling,
    e.g. " super  admin" -> "Super Admin", "in-transit" -> "In Transit".
    Unknown values pass through unchanged so the Literal check reports them.
    """
    choices = get_args(literal_type)

    def _key(v) -> str:
        return " ".join(str(v).replace("_", " ").replace("-", " ").split()).lower()

    lookup = {_key(c): c for c in choices}

    def _normalize(v):
        if v is None:
            return v
        return lookup.get(_key(v), v)

    return _normalize


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror the CHECK constraints in `backend/db/migrations/001_init.sql`.
_Role = Literal["Super Admin", "Warehouse Admin", "Facility Admin", "Facility User"]
_UserStatus = Literal["Active", "Inactive"]
_StockStatus = Literal["In Stock", "Low Stock", "Out of Stock"]
_RequisitionStatus = Literal["Pending", "Approved", "Partially Approved", "Rejected", "Dispatched", "Completed"]
_DispatchStatus = Literal["Processing", "Dispatched", "In Transit", "Delivered", "Cancelled"]
_AssetCondition = Literal["Excellent", "Good", "Fair", "Poor", "Needs Repair"]
_AssetStatus = Literal["Available", "In Use", "Under Maintenance", "Retired"]
_MaintenanceType = Literal["Routine", "Preventive", "Corrective", "Emergency"]

Role = Annotated[_Role, BeforeValidator(_canonical(_Role))]
UserStatus = Annotated[_UserStatus, BeforeValidator(_canonical(_UserStatus))]
StockStatus = Annotated[_StockStatus, BeforeValidator(_canonical(_StockStatus))]
RequisitionStatus = Annotated[_RequisitionStatus, BeforeValidator(_canonical(_RequisitionStatus))]
DispatchStatus = Annotated[_DispatchStatus, BeforeValidator(_canonical(_DispatchStatus))]
AssetCondition = Annotated[_AssetCondition, BeforeValidator(_canonical(_AssetCondition))]
AssetStatus = Annotated[_AssetStatus, BeforeValidator(_canonical(_AssetStatus))]
MaintenanceType = Annotated[_MaintenanceType, BeforeValidator(_canonical(_MaintenanceType))]

TransactionType = Annotated[Literal["IN", "OUT", "ADJUSTMENT"], BeforeValidator(_to_upper_str)]
AbcClass = Annotated[Literal["A", "B", "C"], BeforeValidator(_to_upper_str)]
DurationUnit = Annotated[Literal["days", "weeks", "months"], BeforeValidator(_to_lower_str)]
ConsumptionPeriod = Annotated[Literal["daily", "weekly", "monthly", "yearly"], BeforeValidator(_to_lower_str)]

ROLES: tuple[str, ...] = get_args(_Role)
SUPER_ADMIN = "Super Admin"
WAREHOUSE_ADMIN = "Warehouse Admin"
FACILITY_ADMIN = "Facility Admin"
FACILITY_USER = "Facility User"

ADMIN_ROLES = (SUPER_ADMIN, WAREHOUSE_ADMIN, FACILITY_ADMIN)
WAREHOUSE_ROLES = (SUPER_ADMIN, WAREHOUSE_ADMIN)

REQUISITION_STATUSES: tuple[str, ...] = get_args(_RequisitionStatus)
DISPATCH_STATUSES: tuple[str, ...] = get_args(_DispatchStatus)


def normalize_choice(value, literal_alias):
    """
    Normalize a raw query-string value against one of the aliases above.
    Returns None for blank input and the canonical value otherwise (unknown values unchanged).
    """
    raw = (value or "").strip() if isinstance(value, str) else value
    if not raw:
        return None
    for meta in getattr(literal_alias, "__metadata__", ()):
        if isinstance(meta, BeforeValidator):
            return meta.func(raw)
    return raw
# Postgres prints uuids in lowercase; match client ids against that form.
RowId = Annotated[str, BeforeValidator(_to_lower_str)]
