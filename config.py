"""
Application Settings

Values come from environment variables (optionally a .env file).
"""

import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from .env file
load_dotenv()


class Settings(BaseModel):
    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: str = Field("bookstore", description="MongoDB database name")
    db_timeout_ms: int = Field(5000, ge=1, description="Client-side timeout per storage operation")
    use_transactions: bool = Field(False, description="Run checkout inside a multi-document transaction")
    cart_lock_timeout: float = Field(5.0, gt=0, description="Seconds to wait for a per-user cart lock")
    secret_key: str = Field("dev-secret-key-change-me", description="JWT signing key")
    access_token_expire_minutes: int = Field(60 * 24, ge=1)
    admin_email: Optional[str] = Field(None, description="Seed admin email")
    admin_password: Optional[str] = Field(None, description="Seed admin password")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def get_settings() -> Settings:
    """Build settings from the current environment"""
    values = {
        "database_url": os.getenv("DATABASE_URL"),
        "database_name": os.getenv("DATABASE_NAME", "bookstore"),
        "db_timeout_ms": int(os.getenv("DB_TIMEOUT_MS", 5000)),
        "use_transactions": _flag(os.getenv("USE_TRANSACTIONS")),
        "cart_lock_timeout": float(os.getenv("CART_LOCK_TIMEOUT", 5)),
        "secret_key": os.getenv("SECRET_KEY", "dev-secret-key-change-me"),
        "access_token_expire_minutes": int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24)),
        "admin_email": os.getenv("ADMIN_EMAIL"),
        "admin_password": os.getenv("ADMIN_PASSWORD"),
        "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
        "port": int(os.getenv("PORT", 8000)),
    }
    origins = os.getenv("CORS_ORIGINS")
    if origins:
        values["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
    return Settings(**values)
