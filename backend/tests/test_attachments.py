import io
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from backend.app import attachments


def _upload(data: bytes, filename="scan.pdf", content_type="application/pdf"):
    return SimpleNamespace(file=io.BytesIO(data), filename=filename, content_type=content_type)


def test_safe_filename_strips_path_and_header_chars():
    assert attachments.safe_filename('../etc/"pass\r\nwd".pdf') == ".._etc_passwd.pdf"
    assert attachments.safe_filename(None) == "attachment"
    assert attachments.safe_filename("   ") == "attachment"
    assert len(attachments.safe_filename("x" * 500)) == 180


def test_build_object_key_uses_stem_and_millis():
    key = attachments.build_object_key("hospital-inventory/assets", "manual v2.pdf", now_ms=1700000000123)
    assert key == "hospital-inventory/assets/manual v2_1700000000123"


def test_check_upload_rejects_unknown_type():
    with pytest.raises(HTTPException) as exc_info:
        attachments.check_upload("application/zip", 10)
    assert exc_info.value.status_code == 415


def test_check_upload_rejects_oversized_file(monkeypatch):
    monkeypatch.setattr(attachments.settings, "attachment_max_mb", 1)
    assert attachments.check_upload("IMAGE/PNG", 1024 * 1024) == "image/png"
    with pytest.raises(HTTPException) as exc_info:
        attachments.check_upload("image/png", 1024 * 1024 + 1)
    assert exc_info.value.status_code == 413


def test_store_upload_requires_storage(monkeypatch):
    monkeypatch.setattr(attachments, "s3_enabled", lambda: False)
    with pytest.raises(HTTPException) as exc_info:
        attachments.store_upload(_upload(b"%PDF-1.4"), "assets")
    assert exc_info.value.status_code == 503


def test_store_upload_puts_object_and_returns_descriptor(monkeypatch):
    stored = {}

    def _put(*, key, data, content_type):
        stored.update(key=key, data=data, content_type=content_type)

    monkeypatch.setattr(attachments, "s3_enabled", lambda: True)
    monkeypatch.setattr(attachments, "put_bytes", _put)
    monkeypatch.setattr(attachments, "object_url", lambda key: f"https://files.example.org/{key}")

    out = attachments.store_upload(_upload(b"%PDF-1.4 body"), "maintenance")

    assert stored["data"] == b"%PDF-1.4 body"
    assert stored["content_type"] == "application/pdf"
    assert stored["key"].startswith("hospital-inventory/maintenance/scan_")
    assert out["key"] == stored["key"]
    assert out["url"] == f"https://files.example.org/{stored['key']}"
    assert out["original_name"] == "scan.pdf"
    assert out["size_bytes"] == len(b"%PDF-1.4 body")


def test_store_upload_rejects_bad_type_before_writing(monkeypatch):
    def _put(**kwargs):
        raise AssertionError("nothing should be stored")

    monkeypatch.setattr(attachments, "s3_enabled", lambda: True)
    monkeypatch.setattr(attachments, "put_bytes", _put)
    with pytest.raises(HTTPException) as exc_info:
        attachments.store_upload(_upload(b"MZ", filename="tool.exe", content_type="application/octet-stream"), "assets")
    assert exc_info.value.status_code == 415


def test_remove_upload_skips_blank_key(monkeypatch):
    calls = []
    monkeypatch.setattr(attachments, "s3_enabled", lambda: True)
    monkeypatch.setattr(attachments, "delete_object", lambda *, key: calls.append(key))
    attachments.remove_upload("")
    attachments.remove_upload("hospital-inventory/assets/a_1")
    assert calls == ["hospital-inventory/assets/a_1"]


def test_signed_link_requires_storage(monkeypatch):
    monkeypatch.setattr(attachments, "s3_enabled", lambda: False)
    with pytest.raises(HTTPException) as exc_info:
        attachments.signed_link({"key": "k"})
    assert exc_info.value.status_code == 503


def test_storage_config_and_public_urls(monkeypatch):
    from backend.app.storage import s3

    for name in ("S3_ENDPOINT_URL", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "S3_BUCKET", "S3_PUBLIC_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    assert s3.s3_enabled() is False

    monkeypatch.setenv("S3_ENDPOINT_URL", "http://minio:9000/")
    monkeypatch.setenv("S3_ACCESS_KEY_ID", "key")
    monkeypatch.setenv("S3_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setenv("S3_BUCKET", "inventory")
    monkeypatch.setenv("S3_USE_SSL", "false")
    cfg = s3.get_s3_config()
    assert cfg.use_ssl is False and cfg.region == "us-east-1"
    assert s3.object_url("a/b_1") == "http://minio:9000/inventory/a/b_1"

    monkeypatch.setenv("S3_PUBLIC_BASE_URL", "https://cdn.example.org/")
    assert s3.object_url("a/b_1") == "https://cdn.example.org/a/b_1"
