import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class S3Config:
    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    region: str
    use_ssl: bool
    public_base_url: Optional[str]


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def get_s3_config() -> Optional[S3Config]:
    """
    Object storage settings (S3 or MinIO). Returns None unless endpoint, credentials
    and bucket are all set, which disables attachment uploads.
    """
    endpoint = _env("S3_ENDPOINT_URL")
    access = _env("S3_ACCESS_KEY_ID")
    secret = _env("S3_SECRET_ACCESS_KEY")
    bucket = _env("S3_BUCKET")
    if not endpoint or not access or not secret or not bucket:
        return None
    return S3Config(
        endpoint_url=endpoint.rstrip("/"),
        access_key_id=access,
        secret_access_key=secret,
        bucket=bucket,
        region=_env("S3_REGION", "us-east-1") or "us-east-1",
        use_ssl=_env("S3_USE_SSL").lower() not in {"0", "false", "no"},
        # CDN / public bucket origin; without it links point at the endpoint.
        public_base_url=_env("S3_PUBLIC_BASE_URL").rstrip("/") or None,
    )


def s3_enabled() -> bool:
    return get_s3_config() is not None


def _require_config() -> S3Config:
    cfg = get_s3_config()
    if not cfg:
        raise RuntimeError("S3 not configured")
    return cfg


def _client(cfg: S3Config):
    import boto3
    from botocore.config import Config

    # MinIO needs v4 signatures and path-style addressing.
    bc = Config(signature_version="s3v4", s3={"addressing_style": "path"})
    return boto3.client(
        "s3",
        endpoint_url=cfg.endpoint_url,
        aws_access_key_id=cfg.access_key_id,
        aws_secret_access_key=cfg.secret_access_key,
        region_name=cfg.region,
        use_ssl=cfg.use_ssl,
        config=bc,
    )


def put_bytes(*, key: str, data: bytes, content_type: str) -> str:
    cfg = _require_config()
    res = _client(cfg).put_object(
        Bucket=cfg.bucket,
        Key=key,
        Body=data or b"",
        ContentType=content_type or "application/octet-stream",
    )
    return (res.get("ETag") or "").strip('"')


def delete_object(*, key: str) -> None:
    cfg = _require_config()
    _client(cfg).delete_object(Bucket=cfg.bucket, Key=key)


def object_url(key: str) -> str:
    cfg = _require_config()
    if cfg.public_base_url:
        return f"{cfg.public_base_url}/{key}"
    return f"{cfg.endpoint_url}/{cfg.bucket}/{key}"


def presign_get(
    *,
    key: str,
    filename: str,
    content_type: str,
    disposition: str,
    expires_seconds: int = 300,
) -> str:
    """
    Short-lived signed GET link for a stored attachment (30s to 1h).
    """
    cfg = _require_config()
    disp = "attachment" if (disposition or "").lower().startswith("attachment") else "inline"
    name = (filename or "attachment").replace("\n", " ").replace("\r", " ").strip() or "attachment"
    ct = (content_type or "").strip() or "application/octet-stream"
    return _client(cfg).generate_presigned_url(
        ClientMethod="get_object",
        Params={
            "Bucket": cfg.bucket,
            "Key": key,
            "ResponseContentDisposition": f'{disp}; filename="{name}"',
            "ResponseContentType": ct,
        },
        ExpiresIn=max(30, min(int(expires_seconds), 3600)),
    )
