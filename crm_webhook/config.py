import os
import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple
from dotenv import load_dotenv
from sqlalchemy.engine import URL

load_dotenv()


class ConfigurationError(Exception):
    """Raised when the process cannot start with the given environment."""


class AckPolicy(enum.Enum):
    DEFERRED = "deferred"  # ack first, persist in the background
    SYNC = "sync"          # persist first, 500 on storage failure


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def database_url_from_env() -> str:
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    host = os.getenv("DB_HOST")
    user = os.getenv("DB_USER")
    name = os.getenv("DB_NAME")
    if not (host and user and name):
        raise ConfigurationError(
            "No DATABASE_URL set and DB_HOST/DB_USER/DB_NAME are incomplete"
        )
    return URL.create(
        "postgresql+asyncpg",
        username=user,
        password=os.getenv("DB_PASS"),
        host=host,
        port=_get_int("DB_PORT", 5432),
        database=name,
    ).render_as_string(hide_password=False)


@dataclass(frozen=True)
class Settings:
    webhook_secret: str
    database_url: str
    db_ssl: bool = False
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_timeout: float = 5.0
    db_timeout: float = 5.0
    auto_create_tables: bool = True
    ack_policy: AckPolicy = AckPolicy.DEFERRED
    qualifying_statuses: Tuple[str, ...] = ("captured",)
    slab_micro_max: int = 9900
    slab_standard_max: int = 150000
    default_currency: str = "INR"
    crm_api_url: Optional[str] = None
    crm_api_key: Optional[str] = field(default=None, repr=False)
    crm_timeout: float = 5.0
    shutdown_drain_timeout: float = 10.0
    log_level: str = "INFO"
    display_timezone: str = "Asia/Kolkata"
    host: str = "0.0.0.0"
    port: int = 3000

    def __post_init__(self):
        if not self.webhook_secret:
            raise ConfigurationError("WEBHOOK_SECRET is not set; refusing to start")
        if not self.database_url:
            raise ConfigurationError("Database URL is empty")
        if not self.qualifying_statuses:
            raise ConfigurationError("QUALIFYING_STATUSES must name at least one status")

    @classmethod
    def from_env(cls) -> "Settings":
        secret = os.getenv("WEBHOOK_SECRET", "").strip()
        if not secret:
            raise ConfigurationError("WEBHOOK_SECRET is not set; refusing to start")

        raw_policy = os.getenv("ACK_POLICY", AckPolicy.DEFERRED.value).strip().lower()
        try:
            ack_policy = AckPolicy(raw_policy)
        except ValueError:
            raise ConfigurationError(f"ACK_POLICY must be 'deferred' or 'sync', got {raw_policy!r}")

        statuses = tuple(
            s.strip().lower()
            for s in os.getenv("QUALIFYING_STATUSES", "captured").split(",")
            if s.strip()
        )

        return cls(
            webhook_secret=secret,
            database_url=database_url_from_env(),
            db_ssl=_get_bool("DB_SSL", False),
            db_pool_size=_get_int("DB_POOL_SIZE", 5),
            db_max_overflow=_get_int("DB_MAX_OVERFLOW", 5),
            db_pool_timeout=_get_float("DB_POOL_TIMEOUT", 5.0),
            db_timeout=_get_float("DB_TIMEOUT", 5.0),
            auto_create_tables=_get_bool("AUTO_CREATE_TABLES", True),
            ack_policy=ack_policy,
            qualifying_statuses=statuses,
            slab_micro_max=_get_int("SLAB_MICRO_MAX", 9900),
            slab_standard_max=_get_int("SLAB_STANDARD_MAX", 150000),
            default_currency=os.getenv("DEFAULT_CURRENCY", "INR"),
            crm_api_url=os.getenv("CRM_API_URL") or None,
            crm_api_key=os.getenv("CRM_API_KEY") or None,
            crm_timeout=_get_float("CRM_TIMEOUT", 5.0),
            shutdown_drain_timeout=_get_float("SHUTDOWN_DRAIN_TIMEOUT", 10.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            display_timezone=os.getenv("DISPLAY_TIMEZONE", "Asia/Kolkata"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_get_int("PORT", 3000),
        )
