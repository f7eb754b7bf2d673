import os
from dataclasses import dataclass


def _get_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


@dataclass(frozen=True)
class Settings:
    # HTTP
    http_host: str = _get_env("HTTP_HOST", "127.0.0.1")
    http_port: int = int(_get_env("HTTP_PORT", "8000"))
    public_base_url: str = _get_env("PUBLIC_BASE_URL", "http://localhost:8000")
    admin_user_ids: list[int] = None  # populated in __post_init__

    # DB
    database_url: str = _get_env("DATABASE_URL", "sqlite+aiosqlite:///./billing.db")

    # Plans (minor currency units)
    monthly_price: int = int(_get_env("MONTHLY_PRICE", "9900"))
    yearly_price: int = int(_get_env("YEARLY_PRICE", "94800"))
    monthly_period_days: int = int(_get_env("MONTHLY_PERIOD_DAYS", "30"))
    yearly_period_days: int = int(_get_env("YEARLY_PERIOD_DAYS", "365"))
    currency: str = _get_env("CURRENCY", "KRW")

    # Payment gateway
    gateway_mode: str = _get_env("GATEWAY_MODE", "mock")
    toss_secret_key: str = _get_env("TOSS_SECRET_KEY", "")
    toss_base_url: str = _get_env("TOSS_BASE_URL", "https://api.tosspayments.com")

    # Scheduler
    premium_reconcile_minutes: int = int(_get_env("PREMIUM_RECONCILE_MINUTES", "15"))
    stale_claim_minutes: int = int(_get_env("STALE_CLAIM_MINUTES", "30"))
    scheduler_timezone: str = _get_env("SCHEDULER_TZ", "UTC")

    def __post_init__(self):
        admin_ids_raw = _get_env("ADMIN_USER_IDS", "")
        admin_ids = []
        for item in admin_ids_raw.split(","):
            item = item.strip()
            if not item:
                continue
            try:
                admin_ids.append(int(item))
            except ValueError as exc:
                raise RuntimeError(
                    "ADMIN_USER_IDS must be a comma-separated list of integers"
                ) from exc
        object.__setattr__(self, "admin_user_ids", admin_ids)
        if self.gateway_mode not in ("mock", "toss"):
            raise RuntimeError("GATEWAY_MODE must be 'mock' or 'toss'")


settings = Settings()
