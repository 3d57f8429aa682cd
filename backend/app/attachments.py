"""
Upload handling for asset and maintenance attachments.

Files are delegated to object storage (S3/MinIO); the database only keeps a small
descriptor: `{url, key, original_name, content_type, size_bytes}`.
"""
import os
import time
from typing import Optional

from fastapi import HTTPException, UploadFile

from .config import settings
from .storage.s3 import s3_enabled, put_bytes, delete_object, object_url, presign_get

ATTACHMENT_FOLDER = "hospital-inventory"

ALLOWED_CONTENT_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def safe_filename(name: Optional[str]) -> str:
    """
    Prevent header injection / broken object keys due to untrusted filenames.
    """
    n = (name or "").strip() or "attachment"
    n = n.replace("\r", "").replace("\n", "")
    n = n.replace('"', "").replace("/", "_").replace("\\", "_")
    if len(n) > 180:
        n = n[:180]
    return n or "attachment"


def build_object_key(folder: str, filename: str, now_ms: Optional[int] = None) -> str:
    stem = os.path.splitext(safe_filename(filename))[0] or "attachment"
    ts = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{folder}/{stem}_{ts}"


def check_upload(content_type: Optional[str], size_bytes: int) -> str:
    ct = (content_type or "").strip().lower()
    if ct not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=415,
            detail="invalid file type (allowed: JPEG, PNG, PDF, DOC, DOCX)",
        )
    max_bytes = settings.attachment_max_mb * 1024 * 1024
    if size_bytes > max_bytes:
        raise HTTPException(status_code=413, detail=f"attachment too large (max {settings.attachment_max_mb}MB)")
    return ct


def store_upload(file: UploadFile, subfolder: str) -> dict:
    if not s3_enabled():
        raise HTTPException(status_code=503, detail="attachment storage is not configured")
    raw = file.file.read() or b""
    content_type = check_upload(file.content_type, len(raw))
    original_name = safe_filename(file.filename)
    key = build_object_key(f"{ATTACHMENT_FOLDER}/{subfolder}", original_name)
    put_bytes(key=key, data=raw, content_type=content_type)
    return {
        "url": object_url(key),
        "key": key,
        "original_name": original_name,
        "content_type": content_type,
        "size_bytes": len(raw),
    }


def remove_upload(key: str) -> None:
    if not key or not s3_enabled():
        return
    delete_object(key=key)


def signed_link(descriptor: dict, disposition: str = "inline") -> str:
    if not s3_enabled():
        raise HTTPException(status_code=503, detail="attachment storage is not configured")
    return presign_get(
        key=descriptor["key"],
        filename=descriptor.get("original_name") or "attachment",
        content_type=descriptor.get("content_type") or "",
        disposition=disposition,
    )
