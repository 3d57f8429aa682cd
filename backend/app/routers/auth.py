from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from typing import Optional
from ..config import settings
from ..db import get_conn
from ..deps import get_current_user, SESSION_COOKIE_NAME
from ..security import hash_password, verify_password, needs_rehash, create_access_token
from ..validation import Role
from ..audit_utils import log_audit

router = APIRouter(prefix="/auth", tags=["auth"])

USER_COLUMNS = """
    u.id, u.username, u.email, u.role, u.facility_id, u.department, u.phone,
    u.first_name, u.last_name, u.status, u.created_at, u.updated_at, u.last_login,
    f.name AS facility_name
"""


class RegisterIn(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: str = Field(max_length=255)
    password: str = Field(min_length=6)
    role: Role
    facility_id: str
    department: str = Field(max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)


class LoginIn(BaseModel):
    # Either the username or the email address.
    username: str
    password: str


class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(default=None, min_length=3, max_length=50)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=20)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    department: Optional[str] = Field(default=None, max_length=100)


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)
    confirm_password: str


PROFILE_FIELDS = ("username", "email", "phone", "first_name", "last_name", "department")


def _check_email(email: str) -> str:
    e = (email or "").strip().lower()
    if "@" not in e or e.startswith("@") or e.endswith("@"):
        raise HTTPException(status_code=400, detail="invalid email")
    return e


def _fetch_user(cur, user_id):
    cur.execute(
        f"""
        SELECT {USER_COLUMNS}
        FROM users u
        LEFT JOIN facilities f ON f.id = u.facility_id
        WHERE u.id = %s
        """,
        (user_id,),
    )
    return cur.fetchone()


def _session_response(payload: dict, token: str, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(jsonable_encoder(payload), status_code=status_code)
    secure = settings.env not in {"local", "dev"}
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=settings.jwt_expires_minutes * 60,
        path="/",
    )
    return resp


@router.post("/register", status_code=201)
def register(data: RegisterIn):
    if not settings.allow_public_registration:
        raise HTTPException(status_code=403, detail="public registration is disabled")
    username = data.username.strip()
    email = _check_email(data.email)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM users WHERE lower(username) = lower(%s) OR lower(email) = %s",
                    (username, email),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="user with this username or email already exists")
                cur.execute("SELECT 1 FROM facilities WHERE id = %s", (data.facility_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=400, detail="invalid facility_id")
                cur.execute(
                    """
                    INSERT INTO users
                      (id, username, email, password_hash, role, facility_id, department,
                       phone, first_name, last_name, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, 'Active')
                    RETURNING id
                    """,
                    (
                        username,
                        email,
                        hash_password(data.password),
                        data.role,
                        data.facility_id,
                        data.department,
                        data.phone,
                        data.first_name,
                        data.last_name,
                    ),
                )
                user_id = cur.fetchone()["id"]
                log_audit(cur, user_id, "user_register", "user", user_id, {"username": username, "role": data.role})
                user = _fetch_user(cur, user_id)

    token = create_access_token(str(user_id))
    return _session_response({"user": user, "token": token}, token, status_code=201)


@router.post("/login")
def login(data: LoginIn):
    ident = (data.username or "").strip()
    if not ident or not data.password:
        raise HTTPException(status_code=401, detail="invalid credentials")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, password_hash, status
                    FROM users
                    WHERE username = %s OR lower(email) = lower(%s)
                    ORDER BY (username = %s) DESC
                    LIMIT 1
                    """,
                    (ident, ident, ident),
                )
                row = cur.fetchone()
                if not row or not verify_password(data.password, row["password_hash"]):
                    raise HTTPException(status_code=401, detail="invalid credentials")
                if row["status"] != "Active":
                    raise HTTPException(status_code=401, detail="account is inactive")

                if needs_rehash(row["password_hash"]):
                    cur.execute(
                        "UPDATE users SET password_hash = %s WHERE id = %s",
                        (hash_password(data.password), row["id"]),
                    )
                cur.execute("UPDATE users SET last_login = now() WHERE id = %s", (row["id"],))
                user = _fetch_user(cur, row["id"])

    token = create_access_token(str(row["id"]))
    return _session_response({"user": user, "token": token}, token)


@router.get("/profile")
def get_profile(user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = _fetch_user(cur, user["user_id"])
            if not row:
                raise HTTPException(status_code=404, detail="user not found")
            return {"user": row}


@router.put("/profile")
def update_profile(data: ProfileUpdate, user=Depends(get_current_user)):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if k in PROFILE_FIELDS and v is not None}
    if "username" in patch:
        patch["username"] = patch["username"].strip()
    if "email" in patch:
        patch["email"] = _check_email(patch["email"])
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if "username" in patch or "email" in patch:
                    cur.execute(
                        """
                        SELECT 1 FROM users
                        WHERE (lower(username) = lower(%s) OR lower(email) = lower(%s)) AND id <> %s
                        """,
                        (patch.get("username") or "", patch.get("email") or "", user["user_id"]),
                    )
                    if cur.fetchone():
                        raise HTTPException(status_code=409, detail="username or email already exists")
                fields = [f"{k} = %s" for k in patch]
                params = list(patch.values()) + [user["user_id"]]
                cur.execute(
                    f"""
                    UPDATE users
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    """,
                    params,
                )
                log_audit(cur, user["user_id"], "profile_update", "user", user["user_id"], patch)
                return {"user": _fetch_user(cur, user["user_id"])}


@router.put("/change-password")
def change_password(data: ChangePasswordIn, user=Depends(get_current_user)):
    if data.new_password != data.confirm_password:
        raise HTTPException(status_code=400, detail="passwords do not match")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT password_hash FROM users WHERE id = %s", (user["user_id"],))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="user not found")
                if not verify_password(data.current_password, row["password_hash"]):
                    raise HTTPException(status_code=400, detail="current password is incorrect")
                cur.execute(
                    "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                    (hash_password(data.new_password), user["user_id"]),
                )
                log_audit(cur, user["user_id"], "password_change", "user", user["user_id"])
                return {"ok": True}


@router.post("/logout")
def logout(user=Depends(get_current_user)):
    # Tokens are stateless; dropping the cookie is all the server can do.
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp
