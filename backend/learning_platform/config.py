"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


class Settings:
    ENV: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    MAX_DOCUMENT_BYTES: int
    OWNER_BYPASS: bool
    PERMISSION_SWEEP_INTERVAL_SECONDS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    LOG_LEVEL: str
    AUTH_RATE_LIMIT_PER_MIN: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = _env_int("JWT_EXPIRE_HOURS", 24)
        self.MAX_DOCUMENT_BYTES = _env_int("MAX_DOCUMENT_BYTES", 1024 * 1024)  # 1 MB default
        self.OWNER_BYPASS = os.getenv("OWNER_BYPASS", "true").lower() == "true"
        self.PERMISSION_SWEEP_INTERVAL_SECONDS = _env_int("PERMISSION_SWEEP_INTERVAL_SECONDS", 300)
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.AUTH_RATE_LIMIT_PER_MIN = _env_int("AUTH_RATE_LIMIT_PER_MIN", 30)
        self._validate()

    def _validate(self):
        if self.ENV not in ("dev", "test") and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.JWT_EXPIRE_HOURS <= 0:
            raise RuntimeError("JWT_EXPIRE_HOURS must be positive")
        if self.MAX_DOCUMENT_BYTES <= 0:
            raise RuntimeError("MAX_DOCUMENT_BYTES must be positive")
        if self.PERMISSION_SWEEP_INTERVAL_SECONDS < 0:
            raise RuntimeError("PERMISSION_SWEEP_INTERVAL_SECONDS must be >= 0 (0 disables the sweeper)")
        if self.AUTH_RATE_LIMIT_PER_MIN <= 0:
            raise RuntimeError("AUTH_RATE_LIMIT_PER_MIN must be positive")


settings = Settings()
