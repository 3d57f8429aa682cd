from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import reports as reports_router


class _DummyCursor:
    def __init__(self, fetchall_rows=None, fetchone_rows=None):
        self._all = list(fetchall_rows or [])
        self._one = list(fetchone_rows or [])
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), tuple(params or ())))

    def fetchall(self):
        return self._all.pop(0) if self._all else []

    def fetchone(self):
        return self._one.pop(0) if self._one else None


class _DummyConn:
    def __init__(self, cursor: _DummyCursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor


def _patch_db(monkeypatch, fetchall_rows=None, fetchone_rows=None):
    cur = _DummyCursor(fetchall_rows, fetchone_rows)
    conn = _DummyConn(cur)
    monkeypatch.setattr(reports_router, "get_conn", lambda: conn)
    return cur


SUPER_ADMIN = {"user_id": "u-sa", "role": "Super Admin", "facility_id": "f-hq"}
FACILITY_ADMIN = {"user_id": "u-fa", "role": "Facility Admin", "facility_id": "f-2"}


def test_summarize_inventory_counts_by_status():
    rows = [
        {"total_value": Decimal("10.50"), "stock_status": "In Stock"},
        {"total_value": 0, "stock_status": "Out of Stock"},
        {"total_value": Decimal("2.25"), "stock_status": "Low Stock"},
        {"total_value": None, "stock_status": "Low Stock"},
    ]
    summary = reports_router.summarize_inventory(rows)
    assert summary == {
        "total_items": 4,
        "total_value": Decimal("12.75"),
        "out_of_stock": 1,
        "low_stock": 2,
        "in_stock": 1,
    }


def test_summarize_expiry_value_at_risk():
    rows = [
        {"remaining_quantity": 4, "standard_cost": Decimal("2.50"), "expiry_status": "Expired"},
        {"remaining_quantity": 10, "standard_cost": None, "expiry_status": "Critical"},
        {"remaining_quantity": 1, "standard_cost": Decimal("3"), "expiry_status": "Warning"},
    ]
    summary = reports_router.summarize_expiry(rows)
    assert summary["total_batches"] == 3
    assert (summary["expired"], summary["critical"], summary["warning"]) == (1, 1, 1)
    assert summary["total_value_at_risk"] == Decimal("13.00")


def test_inventory_report_csv(monkeypatch):
    _patch_db(
        monkeypatch,
        [[{"item_code": "GLV-001", "name": "Gloves", "category": "PPE", "current_stock": 3, "stock_status": "Low Stock"}]],
    )
    resp = reports_router.inventory_report(facility_id=None, category=None, format="CSV", user=SUPER_ADMIN)
    assert resp.media_type == "text/csv"
    assert 'filename="inventory_report.csv"' in resp.headers["content-disposition"]
    lines = resp.body.decode().splitlines()
    assert lines[0].split(",") == reports_router.INVENTORY_COLUMNS
    assert lines[1].startswith("GLV-001,Gloves,PPE,3,")
    assert lines[1].endswith(",Low Stock")


def test_inventory_report_scopes_facility_admin(monkeypatch):
    cur = _patch_db(monkeypatch, [[]])
    out = reports_router.inventory_report(facility_id="f-9", category=None, format=None, user=FACILITY_ADMIN)
    assert out["filters"]["facility_id"] == "f-2"
    assert cur.executed[0][1] == ("f-2",)


def test_report_rejects_unknown_format():
    with pytest.raises(HTTPException) as exc_info:
        reports_router.inventory_report(facility_id=None, category=None, format="xlsx", user=SUPER_ADMIN)
    assert exc_info.value.status_code == 400


def test_stock_movement_report_csv_and_inclusive_dates(monkeypatch):
    cur = _patch_db(monkeypatch, [[{"id": "mov-1", "transaction_type": "OUT", "quantity": 2}]])
    resp = reports_router.stock_movement_report(
        facility_id=None,
        date_from=date(2026, 1, 1),
        date_to=date(2026, 1, 31),
        transaction_type="out",
        format="csv",
        user=SUPER_ADMIN,
    )
    assert resp.body.decode().splitlines()[0].split(",") == reports_router.MOVEMENT_COLUMNS
    sql, params = cur.executed[0]
    assert "sm.created_at >= %s" in sql
    assert "sm.created_at < %s::date + 1" in sql
    assert params == (date(2026, 1, 1), date(2026, 1, 31), "OUT")


def test_date_range_rejects_reversed_bounds():
    with pytest.raises(HTTPException) as exc_info:
        reports_router._date_range("sm.created_at", date(2026, 2, 1), date(2026, 1, 1))
    assert exc_info.value.status_code == 400


def test_consumption_report_rejects_unknown_period():
    with pytest.raises(HTTPException) as exc_info:
        reports_router.consumption_report(
            facility_id=None, date_from=None, date_to=None, period="fortnightly", user=SUPER_ADMIN
        )
    assert exc_info.value.status_code == 400


def test_consumption_report_weekly_buckets_use_iso_weeks(monkeypatch):
    cur = _patch_db(monkeypatch, [[]])
    out = reports_router.consumption_report(
        facility_id=None, date_from=None, date_to=None, period="Weekly", user=SUPER_ADMIN
    )
    assert out["filters"]["period"] == "weekly"
    assert "to_char(sm.created_at, 'IYYY-\"W\"IW')" in cur.executed[0][0]


def test_expiry_report_bounds_days_ahead():
    with pytest.raises(HTTPException) as exc_info:
        reports_router.expiry_report(facility_id=None, days_ahead=-1, user=SUPER_ADMIN)
    assert exc_info.value.status_code == 400


def test_expiry_report_nets_dispatches_against_batch(monkeypatch):
    cur = _patch_db(monkeypatch, [[]])
    out = reports_router.expiry_report(facility_id=None, days_ahead=30, user=FACILITY_ADMIN)
    sql, params = cur.executed[0]
    assert "GROUP BY sm.inventory_id, sm.batch_number" in sql
    assert "sm.expiry_date IS NOT NULL" not in sql
    assert "MIN(sm.expiry_date) FILTER (WHERE sm.transaction_type = 'IN')" in sql
    assert "b.remaining_quantity > 0" in sql
    assert params == (30, "f-2")
    assert out["filters"] == {"facility_id": "f-2", "days_ahead": 30}


def test_dashboard_hides_assets_from_facility_users(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        fetchone_rows=[{"total_items": 5}, {"total_requisitions": 2}, {"total_dispatches": 1}],
    )
    user = {"user_id": "u-fu", "role": "Facility User", "facility_id": "f-2"}
    out = reports_router.dashboard_stats(facility_id=None, user=user)
    assert out["assets"] == {"total_assets": 0, "under_maintenance": 0, "available": 0}
    assert not any("FROM assets" in s for s, _ in cur.executed)
    assert all(p == ("f-2",) for _, p in cur.executed)
