from contextlib import nullcontext
from uuid import UUID

import pytest
from fastapi import HTTPException

from backend.app.routers import requisitions as requisitions_router


class _ScriptedCursor:
    def __init__(self, fetchone_rows, fetchall_rows=None):
        self._one = list(fetchone_rows)
        self._all = list(fetchall_rows or [])
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), tuple(params or ())))

    def fetchone(self):
        return self._one.pop(0) if self._one else None

    def fetchall(self):
        return self._all.pop(0) if self._all else []


class _DummyConn:
    def __init__(self, cursor: _ScriptedCursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def transaction(self):
        return nullcontext()

    def cursor(self):
        return self._cursor


def _patch_db(monkeypatch, fetchone_rows, fetchall_rows=None):
    cur = _ScriptedCursor(fetchone_rows, fetchall_rows)
    conn = _DummyConn(cur)
    monkeypatch.setattr(requisitions_router, "get_conn", lambda: conn)
    return cur


WAREHOUSE_ADMIN = {"user_id": "u-wa", "role": "Warehouse Admin", "facility_id": "f-wh"}
PENDING = {"id": "req-1", "facility_id": "f-clinic", "status": "Pending"}


def test_status_counts_sql_names_columns_by_status():
    sql = requisitions_router.status_counts_sql(["Pending", "Partially Approved"])
    assert "COUNT(*) AS total" in sql
    assert "COUNT(*) FILTER (WHERE status = 'Pending') AS pending" in sql
    assert "AS partially_approved" in sql


def test_approve_with_line_quantities(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        [PENDING, {"id": "req-1", "status": "Approved"}],
        [[{"id": "line-1"}, {"id": "line-2"}], [{"id": "line-1", "approved_quantity": 3}]],
    )
    data = requisitions_router.RequisitionStatusIn(
        status="approved",
        admin_notes="ok",
        items=[{"requisition_item_id": "line-1", "approved_quantity": 3}],
    )
    out = requisitions_router.update_requisition_status(requisition_id="req-1", data=data, user=WAREHOUSE_ADMIN)

    assert out["requisition"]["status"] == "Approved"
    assert out["items"][0]["approved_quantity"] == 3
    header = next(p for s, p in cur.executed if s.startswith("UPDATE requisitions"))
    assert header == ("Approved", "ok", "u-wa", "req-1")
    lines = [p for s, p in cur.executed if s.startswith("UPDATE requisition_items")]
    assert lines == [(3, None, "line-1", "req-1")]
    audit = next(p for s, p in cur.executed if s.startswith("INSERT INTO audit_logs"))
    assert audit[1] == "requisition_status"


def test_line_from_another_requisition_is_rejected(monkeypatch):
    cur = _patch_db(monkeypatch, [PENDING], [[{"id": "line-1"}]])
    data = requisitions_router.RequisitionStatusIn(
        status="Partially Approved",
        items=[{"requisition_item_id": "line-of-other-req", "approved_quantity": 1}],
    )
    with pytest.raises(HTTPException) as exc_info:
        requisitions_router.update_requisition_status(requisition_id="req-1", data=data, user=WAREHOUSE_ADMIN)
    assert exc_info.value.status_code == 400
    assert not any(s.startswith("UPDATE requisition_items") for s, _ in cur.executed)


def test_line_id_matches_regardless_of_case(monkeypatch):
    line_id = UUID("a09a7992-5b1f-4c3e-9d2a-0f6e8c1b7d44")
    cur = _patch_db(
        monkeypatch,
        [PENDING, {"id": "req-1", "status": "Approved"}],
        [[{"id": line_id}], [{"id": line_id, "approved_quantity": 2}]],
    )
    data = requisitions_router.RequisitionStatusIn(
        status="Approved",
        items=[{"requisition_item_id": str(line_id).upper(), "approved_quantity": 2}],
    )
    requisitions_router.update_requisition_status(requisition_id="req-1", data=data, user=WAREHOUSE_ADMIN)
    lines = [p for s, p in cur.executed if s.startswith("UPDATE requisition_items")]
    assert lines == [(2, None, str(line_id), "req-1")]


def test_facility_admin_limited_to_own_facility(monkeypatch):
    _patch_db(monkeypatch, [PENDING])
    user = {"user_id": "u-fa", "role": "Facility Admin", "facility_id": "f-other"}
    data = requisitions_router.RequisitionStatusIn(status="Rejected")
    with pytest.raises(HTTPException) as exc_info:
        requisitions_router.update_requisition_status(requisition_id="req-1", data=data, user=user)
    assert exc_info.value.status_code == 403


def test_missing_requisition(monkeypatch):
    _patch_db(monkeypatch, [None])
    data = requisitions_router.RequisitionStatusIn(status="Rejected")
    with pytest.raises(HTTPException) as exc_info:
        requisitions_router.update_requisition_status(requisition_id="nope", data=data, user=WAREHOUSE_ADMIN)
    assert exc_info.value.status_code == 404


def test_create_requisition_pins_facility_for_non_super_admin(monkeypatch):
    cur = _patch_db(monkeypatch, [{"id": "req-9"}, {"id": "req-9", "status": "Pending"}])
    user = {"user_id": "u-fu", "role": "Facility User", "facility_id": "f-clinic"}
    data = requisitions_router.RequisitionIn(
        facility_id="f-somewhere-else",
        department="Ward B",
        duration=2,
        duration_unit="Weeks",
        items=[{"inventory_id": "inv-1", "requested_quantity": 5}, {"inventory_id": "inv-2", "requested_quantity": 1}],
    )
    out = requisitions_router.create_requisition(data=data, user=user)

    assert out["requisition"]["status"] == "Pending"
    header = next(p for s, p in cur.executed if s.startswith("INSERT INTO requisitions"))
    assert header == ("f-clinic", "Ward B", 2, "weeks", None, "u-fu")
    lines = [p for s, p in cur.executed if s.startswith("INSERT INTO requisition_items")]
    assert lines == [("req-9", "inv-1", 5, None), ("req-9", "inv-2", 1, None)]
