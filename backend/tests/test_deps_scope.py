import pytest
from fastapi import HTTPException

from backend.app import deps
from backend.app.security import create_access_token

SA = {"user_id": "u-sa", "role": "Super Admin", "facility_id": "f-1"}
WA = {"user_id": "u-wa", "role": "Warehouse Admin", "facility_id": "f-wh"}
FA = {"user_id": "u-fa", "role": "Facility Admin", "facility_id": "f-2"}
FU = {"user_id": "u-fu", "role": "Facility User", "facility_id": "f-2"}


def test_scoped_facility_id_pins_non_global_roles():
    global_roles = ("Super Admin", "Warehouse Admin")
    assert deps.scoped_facility_id(SA, None, global_roles) is None
    assert deps.scoped_facility_id(SA, " f-9 ", global_roles) == "f-9"
    assert deps.scoped_facility_id(WA, "f-9", global_roles) == "f-9"
    # A requested facility never widens a facility-bound user's scope.
    assert deps.scoped_facility_id(FA, "f-9", global_roles) == "f-2"
    assert deps.scoped_facility_id(FU, None, global_roles) == "f-2"


def test_assert_facility_access():
    deps.assert_facility_access(SA, "anything")
    deps.assert_facility_access(FA, "f-2")
    with pytest.raises(HTTPException) as exc_info:
        deps.assert_facility_access(FA, "f-3")
    assert exc_info.value.status_code == 403
    with pytest.raises(HTTPException):
        deps.assert_facility_access(WA, "f-2")
    deps.assert_facility_access(WA, "f-2", ("Super Admin", "Warehouse Admin"))


def test_target_facility_id():
    assert deps.target_facility_id(SA, "f-9") == "f-9"
    assert deps.target_facility_id(SA, None) == "f-1"
    assert deps.target_facility_id(WA, "f-9") == "f-wh"


def test_require_role():
    dep = deps.require_role("Super Admin", "Warehouse Admin")
    assert dep(user=WA) is WA
    with pytest.raises(HTTPException) as exc_info:
        dep(user=FU)
    assert exc_info.value.status_code == 403


def test_extract_token_prefers_bearer_header():
    assert deps._extract_token("Bearer abc", "cookie") == "abc"
    assert deps._extract_token(None, "cookie") == "cookie"
    with pytest.raises(HTTPException) as exc_info:
        deps._extract_token(None, None)
    assert exc_info.value.status_code == 401


class _DummyCursor:
    def __init__(self, row):
        self._row = row
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params):
        self.executed.append((sql, tuple(params)))

    def fetchone(self):
        return self._row


class _DummyConn:
    def __init__(self, cursor: _DummyCursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor


def _patch_db(monkeypatch, row):
    cur = _DummyCursor(row)
    conn = _DummyConn(cur)
    monkeypatch.setattr(deps, "get_conn", lambda: conn)
    return cur


def _user_row(**overrides):
    row = {
        "id": "11111111-1111-1111-1111-111111111111",
        "username": "nurse",
        "email": "nurse@example.org",
        "role": "Facility User",
        "facility_id": "22222222-2222-2222-2222-222222222222",
        "department": "Ward A",
        "status": "Active",
    }
    row.update(overrides)
    return row


def test_get_current_user_reads_user_from_token(monkeypatch):
    cur = _patch_db(monkeypatch, _user_row())
    tok = create_access_token("11111111-1111-1111-1111-111111111111")
    user = deps.get_current_user(authorization=f"Bearer {tok}", cookie_token=None)
    assert user["user_id"] == "11111111-1111-1111-1111-111111111111"
    assert user["role"] == "Facility User"
    assert user["facility_id"] == "22222222-2222-2222-2222-222222222222"
    assert cur.executed[0][1] == ("11111111-1111-1111-1111-111111111111",)


def test_get_current_user_rejects_inactive_account(monkeypatch):
    _patch_db(monkeypatch, _user_row(status="Inactive"))
    tok = create_access_token("11111111-1111-1111-1111-111111111111")
    with pytest.raises(HTTPException) as exc_info:
        deps.get_current_user(authorization=None, cookie_token=tok)
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "account is inactive"


def test_get_current_user_rejects_deleted_user(monkeypatch):
    _patch_db(monkeypatch, None)
    tok = create_access_token("11111111-1111-1111-1111-111111111111")
    with pytest.raises(HTTPException) as exc_info:
        deps.get_current_user(authorization=f"Bearer {tok}", cookie_token=None)
    assert exc_info.value.status_code == 401


def test_get_current_user_rejects_expired_token(monkeypatch):
    _patch_db(monkeypatch, _user_row())
    tok = create_access_token("11111111-1111-1111-1111-111111111111", expires_minutes=-5)
    with pytest.raises(HTTPException) as exc_info:
        deps.get_current_user(authorization=f"Bearer {tok}", cookie_token=None)
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "token expired"
