import os
from typing import List


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = (
            os.getenv("APP_DATABASE_URL")
            or os.getenv("DATABASE_URL")
            or "postgresql://localhost/hospital_inventory"
        )
        # Conservative local defaults; raise in production.
        self.db_pool_min_size = max(1, self._env_int("DB_POOL_MIN_SIZE", 1))
        self.db_pool_max_size = max(self.db_pool_min_size, self._env_int("DB_POOL_MAX_SIZE", 10))
        # Comma-separated list of allowed CORS origins for the admin web client.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Signed access tokens. The dev secret only exists so local runs work out of the box.
        self.jwt_secret = os.getenv("JWT_SECRET", "").strip() or "dev-insecure-jwt-secret"
        self.jwt_algorithm = os.getenv("JWT_ALGORITHM", "HS256").strip() or "HS256"
        self.jwt_expires_minutes = max(1, self._env_int("JWT_EXPIRES_MINUTES", 24 * 60))

        raw_registration = (os.getenv("ALLOW_PUBLIC_REGISTRATION") or "").strip()
        if raw_registration:
            self.allow_public_registration = _truthy(raw_registration)
        else:
            self.allow_public_registration = self.env in {"local", "dev"}

        self.attachment_max_mb = max(1, min(self._env_int("ATTACHMENT_MAX_MB", 10), 100))

    @property
    def is_dev(self) -> bool:
        return self.env in {"local", "dev"}


settings = Settings()
