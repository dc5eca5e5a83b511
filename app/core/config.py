from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except Exception:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    public_base_url: str = Field(default="http://localhost:3000", alias="PUBLIC_BASE_URL")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="styleledger", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set; standalone servers leave this off.
    mongodb_transactions: bool = Field(default=False, alias="MONGODB_TRANSACTIONS")

    # Redis (arq queue)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Stripe
    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_single: str = Field(default="", alias="STRIPE_PRICE_SINGLE")
    stripe_price_pack5: str = Field(default="", alias="STRIPE_PRICE_PACK5")
    stripe_price_pack10: str = Field(default="", alias="STRIPE_PRICE_PACK10")
    stripe_price_per_credit: str = Field(default="", alias="STRIPE_PRICE_PER_CREDIT")

    # Analysis service
    analysis_service_url: str = Field(default="http://localhost:8100/v1/analyze", alias="ANALYSIS_SERVICE_URL")
    analysis_service_token: str = Field(default="", alias="ANALYSIS_SERVICE_TOKEN")
    analysis_timeout_seconds: int = Field(default=300, alias="ANALYSIS_TIMEOUT_SECONDS")

    # Session lifecycle
    stuck_session_minutes: int = Field(default=10, alias="STUCK_SESSION_MINUTES")
    paid_redispatch_minutes: int = Field(default=2, alias="PAID_REDISPATCH_MINUTES")
    guest_session_ttl_days: int = Field(default=7, alias="GUEST_SESSION_TTL_DAYS")

    # Storage
    storage_backend: str = Field(default="local", alias="STORAGE_BACKEND")
    storage_local_path: str = Field(default="./uploads", alias="STORAGE_LOCAL_PATH")
    gcs_bucket_name: str | None = Field(default=None, alias="GCS_BUCKET_NAME")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    @property
    def price_credits(self) -> dict[str, int]:
        """Gateway price id -> credits granted per unit of that price."""
        table = {
            self.stripe_price_single: 1,
            self.stripe_price_pack5: 5,
            self.stripe_price_pack10: 10,
            self.stripe_price_per_credit: 1,
        }
        return {k: v for k, v in table.items() if k}


@lru_cache
def get_settings() -> Settings:
    return Settings()
