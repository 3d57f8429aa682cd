from contextlib import nullcontext

import pytest
from fastapi import HTTPException

from backend.app.routers import users as users_router


class _ScriptedCursor:
    def __init__(self, fetchone_rows):
        self._one = list(fetchone_rows)
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), tuple(params or ())))

    def fetchone(self):
        return self._one.pop(0) if self._one else None


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


def _patch_db(monkeypatch, fetchone_rows):
    cur = _ScriptedCursor(fetchone_rows)
    conn = _DummyConn(cur)
    monkeypatch.setattr(users_router, "get_conn", lambda: conn)
    return cur


SUPER_ADMIN = {"user_id": "u-sa", "role": "Super Admin", "facility_id": "f-hq"}
WAREHOUSE_ADMIN = {"user_id": "u-wa", "role": "Warehouse Admin", "facility_id": "f-wh"}
FACILITY_ADMIN = {"user_id": "u-fa", "role": "Facility Admin", "facility_id": "f-2"}


def _target(**overrides):
    row = {"id": "u-9", "username": "nurse", "role": "Facility User", "facility_id": "f-2", "status": "Active"}
    row.update(overrides)
    return row


def test_toggle_own_status_is_refused():
    with pytest.raises(HTTPException) as exc_info:
        users_router.toggle_status(user_id="u-fa", user=FACILITY_ADMIN)
    assert exc_info.value.status_code == 400


def test_toggle_status_flips_active_flag(monkeypatch):
    cur = _patch_db(monkeypatch, [_target(status="Active")])
    out = users_router.toggle_status(user_id="u-9", user=FACILITY_ADMIN)
    assert out == {"status": "Inactive"}
    update = next(p for s, p in cur.executed if s.startswith("UPDATE users SET status"))
    assert update == ("Inactive", "u-9")


def test_toggle_status_outside_facility_is_forbidden(monkeypatch):
    _patch_db(monkeypatch, [_target(facility_id="f-3")])
    with pytest.raises(HTTPException) as exc_info:
        users_router.toggle_status(user_id="u-9", user=FACILITY_ADMIN)
    assert exc_info.value.status_code == 403


def test_update_user_requires_fields():
    with pytest.raises(HTTPException) as exc_info:
        users_router.update_user(user_id="u-9", data=users_router.UserUpdate(), user=SUPER_ADMIN)
    assert exc_info.value.status_code == 400


def test_only_super_admin_grants_super_admin():
    data = users_router.UserUpdate(role="super admin")
    with pytest.raises(HTTPException) as exc_info:
        users_router.update_user(user_id="u-9", data=data, user=WAREHOUSE_ADMIN)
    assert exc_info.value.status_code == 403


def test_cannot_change_own_role():
    data = users_router.UserUpdate(role="Facility User")
    with pytest.raises(HTTPException) as exc_info:
        users_router.update_user(user_id="u-fa", data=data, user=FACILITY_ADMIN)
    assert exc_info.value.status_code == 400


def test_non_super_admin_cannot_touch_super_admin_account(monkeypatch):
    _patch_db(monkeypatch, [_target(role="Super Admin", facility_id="f-wh")])
    with pytest.raises(HTTPException) as exc_info:
        users_router.reset_password(
            user_id="u-9", data=users_router.PasswordResetIn(new_password="secret1"), user=WAREHOUSE_ADMIN
        )
    assert exc_info.value.status_code == 403


def test_facility_admin_cannot_move_user(monkeypatch):
    _patch_db(monkeypatch, [_target()])
    data = users_router.UserUpdate(facility_id="f-3")
    with pytest.raises(HTTPException) as exc_info:
        users_router.update_user(user_id="u-9", data=data, user=FACILITY_ADMIN)
    assert exc_info.value.status_code == 403


def test_update_user_duplicate_email(monkeypatch):
    _patch_db(monkeypatch, [_target(), {"?column?": 1}])
    data = users_router.UserUpdate(email="Taken@Example.org")
    with pytest.raises(HTTPException) as exc_info:
        users_router.update_user(user_id="u-9", data=data, user=SUPER_ADMIN)
    assert exc_info.value.status_code == 409


def test_update_user_writes_allow_listed_fields(monkeypatch):
    cur = _patch_db(monkeypatch, [_target(), {"id": "u-9", "department": "ICU"}])
    data = users_router.UserUpdate(department="ICU", status="inactive")
    out = users_router.update_user(user_id="u-9", data=data, user=FACILITY_ADMIN)
    assert out["user"]["department"] == "ICU"
    sql, params = next((s, p) for s, p in cur.executed if s.startswith("UPDATE users"))
    assert "department = %s" in sql and "status = %s" in sql
    assert params == ("ICU", "Inactive", "u-9")


def test_delete_user_with_references_is_refused(monkeypatch):
    cur = _patch_db(monkeypatch, [_target(), {"requisitions": 1, "dispatches": 0, "inventory_items": 0}])
    with pytest.raises(HTTPException) as exc_info:
        users_router.delete_user(user_id="u-9", user=SUPER_ADMIN)
    assert exc_info.value.status_code == 400
    assert not any(s.startswith("DELETE FROM users") for s, _ in cur.executed)


def test_delete_self_is_refused():
    with pytest.raises(HTTPException) as exc_info:
        users_router.delete_user(user_id="u-sa", user=SUPER_ADMIN)
    assert exc_info.value.status_code == 400


def test_facility_admin_cannot_grant_warehouse_role(monkeypatch):
    cur = _patch_db(monkeypatch, [_target()])
    data = users_router.UserUpdate(role="Warehouse Admin")
    with pytest.raises(HTTPException) as exc_info:
        users_router.update_user(user_id="u-9", data=data, user=FACILITY_ADMIN)
    assert exc_info.value.status_code == 403
    assert not any(s.startswith("UPDATE users") for s, _ in cur.executed)


def test_facility_admin_can_promote_within_facility_roles(monkeypatch):
    cur = _patch_db(monkeypatch, [_target(), {"id": "u-9", "role": "Facility Admin"}])
    data = users_router.UserUpdate(role="Facility Admin")
    out = users_router.update_user(user_id="u-9", data=data, user=FACILITY_ADMIN)
    assert out["user"]["role"] == "Facility Admin"
    update = next(p for s, p in cur.executed if s.startswith("UPDATE users"))
    assert update == ("Facility Admin", "u-9")


def test_warehouse_admin_can_assign_warehouse_role(monkeypatch):
    cur = _patch_db(monkeypatch, [_target(), {"id": "u-9", "role": "Warehouse Admin"}])
    data = users_router.UserUpdate(role="Warehouse Admin")
    users_router.update_user(user_id="u-9", data=data, user=WAREHOUSE_ADMIN)
    assert any(s.startswith("UPDATE users") for s, _ in cur.executed)


def test_facility_admin_cannot_reset_warehouse_admin_password(monkeypatch):
    cur = _patch_db(monkeypatch, [_target(role="Warehouse Admin")])
    with pytest.raises(HTTPException) as exc_info:
        users_router.reset_password(
            user_id="u-9", data=users_router.PasswordResetIn(new_password="secret1"), user=FACILITY_ADMIN
        )
    assert exc_info.value.status_code == 403
    assert not any(s.startswith("UPDATE users") for s, _ in cur.executed)


def test_facility_admin_cannot_deactivate_warehouse_admin(monkeypatch):
    _patch_db(monkeypatch, [_target(role="Warehouse Admin")])
    with pytest.raises(HTTPException) as exc_info:
        users_router.toggle_status(user_id="u-9", user=FACILITY_ADMIN)
    assert exc_info.value.status_code == 403


def test_delete_user_counts_every_referencing_table(monkeypatch):
    refs = {
        "requisitions": 0,
        "dispatches": 0,
        "inventory_items": 0,
        "stock_movements": 3,
        "assets": 0,
        "asset_maintenance": 0,
        "asset_movements": 0,
    }
    cur = _patch_db(monkeypatch, [_target(), refs])
    with pytest.raises(HTTPException) as exc_info:
        users_router.delete_user(user_id="u-9", user=SUPER_ADMIN)
    assert exc_info.value.status_code == 400
    assert "deactivate" in exc_info.value.detail
    ref_sql = next(s for s, _ in cur.executed if s.startswith("SELECT (SELECT COUNT(*)"))
    for table in ("stock_movements", "asset_maintenance", "asset_movements"):
        assert f"FROM {table} WHERE created_by" in ref_sql
    assert "approved_by = %s" in ref_sql
    assert not any(s.startswith("DELETE FROM users") for s, _ in cur.executed)


def test_delete_user_without_references(monkeypatch):
    refs = dict.fromkeys(
        ("requisitions", "dispatches", "inventory_items", "stock_movements", "assets", "asset_maintenance", "asset_movements"),
        0,
    )
    cur = _patch_db(monkeypatch, [_target(), refs])
    out = users_router.delete_user(user_id="u-9", user=SUPER_ADMIN)
    assert out == {"ok": True}
    assert ("DELETE FROM users WHERE id = %s", ("u-9",)) in cur.executed
