import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env from the project root
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    gateway_api_url: str
    gateway_secret_key: Optional[str]
    gateway_timeout_seconds: float
    gateway_webhook_secret: Optional[str]
    platform_recipient_id: Optional[str]
    statement_descriptor: str
    pix_expires_in_seconds: int
    jwt_secret: Optional[str]
    log_level: str
    log_json: bool


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_settings() -> Settings:
    """Read settings from the environment on every call, so patched env vars apply."""
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        gateway_api_url=os.getenv("GATEWAY_API_URL", "https://api.pagar.me/core/v5"),
        gateway_secret_key=os.getenv("GATEWAY_SECRET_KEY"),
        gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15")),
        gateway_webhook_secret=os.getenv("GATEWAY_WEBHOOK_SECRET"),
        platform_recipient_id=os.getenv("PLATFORM_RECIPIENT_ID") or None,
        statement_descriptor=os.getenv("STATEMENT_DESCRIPTOR", "STOREFRONT"),
        pix_expires_in_seconds=int(os.getenv("PIX_EXPIRES_IN_SECONDS", "3600")),
        jwt_secret=os.getenv("JWT_SECRET"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_json=_flag(os.getenv("LOG_JSON"), True),
    )
