import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

from filing_sync.errors import FatalConfigError

# A local .env only fills variables the environment leaves unset.
load_dotenv()


_TRUTHY = frozenset({"1", "true", "yes", "y", "on"})
_FALSY = frozenset({"0", "false", "no", "n", "off"})


def _env_bool(name: str, default: Optional[bool] = None) -> Optional[bool]:
    """True/False for a recognised value of `name`, else `default`."""
    v = (os.environ.get(name) or "").strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return default


def _env_csv(name: str, default: str) -> Tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(p.strip().upper() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Config:
    """Runtime configuration.

    IMPORTANT: Provide secrets (CRON_SECRET, database passwords) via environment
    variables or a .env file. Do not hardcode them in source code.
    """

    # -----------------
    # Core
    # -----------------
    # Preferred: set FILING_SYNC_DATABASE_URL (or DATABASE_URL) to use Postgres.
    # Fallback: FILING_SYNC_DB_PATH for SQLite.
    DB_DSN: str = (
        os.environ.get("FILING_SYNC_DATABASE_URL")
        or os.environ.get("DATABASE_URL")
        or os.environ.get("FILING_SYNC_DB_PATH", "./filing_sync.sqlite")
    )

    # SEC (EDGAR requires a descriptive User-Agent)
    SEC_USER_AGENT: str = os.environ.get(
        "SEC_USER_AGENT",
        "FilingSync/0.1 (contact: you@example.com)",
    )
    SEC_BASE_URL: str = os.environ.get("SEC_BASE_URL", "https://www.sec.gov")

    # SEC throttling (polite rate limiting, ~10 req/s max per SEC guidance).
    SEC_MIN_INTERVAL_SECONDS: float = float(os.environ.get("SEC_MIN_INTERVAL_SECONDS", "0.12"))
    SEC_TIMEOUT_SECONDS: float = float(os.environ.get("SEC_TIMEOUT_SECONDS", "60"))
    # Retries apply only to SEC throttling responses (429/503).
    SEC_MAX_RETRIES: int = int(os.environ.get("SEC_MAX_RETRIES", "2"))
    SEC_MAX_RETRY_WAIT_SECONDS: float = float(os.environ.get("SEC_MAX_RETRY_WAIT_SECONDS", "30"))

    # -----------------
    # Sync
    # -----------------
    SYNC_DEFAULT_FORMS: Tuple[str, ...] = _env_csv("SYNC_DEFAULT_FORMS", "13F,13DG")
    SYNC_BATCH_SIZE: int = int(os.environ.get("SYNC_BATCH_SIZE", "100"))
    # First run (no watermark): only keep filings from the last N days of the current quarter.
    SYNC_DEFAULT_LOOKBACK_DAYS: int = int(os.environ.get("SYNC_DEFAULT_LOOKBACK_DAYS", "7"))
    # Wall-clock budget for a whole run; matches the platform ceiling on the sync endpoint.
    SYNC_DEADLINE_SECONDS: float = float(os.environ.get("SYNC_DEADLINE_SECONDS", "300"))
    # Store lease on a family; must outlive the deadline.
    SYNC_LOCK_TTL_SECONDS: int = int(os.environ.get("SYNC_LOCK_TTL_SECONDS", "900"))
    RETENTION_YEARS: int = int(os.environ.get("RETENTION_YEARS", "3"))
    # 13D/G: read issuer and filer from each new submission's SEC-HEADER (one request per filing).
    SYNC_13DG_RESOLVE_PARTIES: bool = _env_bool("SYNC_13DG_RESOLVE_PARTIES", True) is True
    # Form 3/4/5: load reporting owners and transactions from the quarterly data sets.
    SYNC_FORM345_DATASETS: bool = _env_bool("SYNC_FORM345_DATASETS", True) is True

    # -----------------
    # Sync endpoint auth
    # -----------------
    CRON_SECRET: str | None = (os.environ.get("CRON_SECRET") or "").strip() or None
    # Scheduler bypass header (e.g. a platform cron that cannot send Authorization).
    # Only honoured when TRUST_SCHEDULER_HEADER=1 and the header value is "1".
    SCHEDULER_HEADER: str = os.environ.get("SCHEDULER_HEADER", "x-scheduler-cron")
    TRUST_SCHEDULER_HEADER: bool = _env_bool("TRUST_SCHEDULER_HEADER", False) is True

    # -----------------
    # Rate limiting
    # -----------------
    RATE_LIMIT_SYNC_REQUESTS: int = int(os.environ.get("RATE_LIMIT_SYNC_REQUESTS", "10"))
    RATE_LIMIT_SYNC_WINDOW_SECONDS: float = float(os.environ.get("RATE_LIMIT_SYNC_WINDOW_SECONDS", "60"))
    RATE_LIMIT_API_REQUESTS: int = int(os.environ.get("RATE_LIMIT_API_REQUESTS", "100"))
    RATE_LIMIT_API_WINDOW_SECONDS: float = float(os.environ.get("RATE_LIMIT_API_WINDOW_SECONDS", "60"))
    RATE_LIMIT_IDLE_SECONDS: float = float(os.environ.get("RATE_LIMIT_IDLE_SECONDS", "600"))
    RATE_LIMIT_SWEEP_SECONDS: float = float(os.environ.get("RATE_LIMIT_SWEEP_SECONDS", "300"))

    # Behind a trusted proxy (production), X-Forwarded-For / X-Real-IP identify the client.
    # Elsewhere those headers are client-controlled and ignored.
    TRUST_PROXY_HEADERS: bool = _env_bool("TRUST_PROXY_HEADERS", False) is True

    # -----------------
    # CORS (development)
    # -----------------
    CORS_ALLOW_ORIGINS: str = os.environ.get("CORS_ALLOW_ORIGINS", "")

    def validate(self) -> "Config":
        """Fail fast before any side effect when required settings are unusable."""
        if not (self.DB_DSN or "").strip():
            raise FatalConfigError("DB_DSN is not set (FILING_SYNC_DATABASE_URL / FILING_SYNC_DB_PATH)")
        if not (self.SEC_USER_AGENT or "").strip():
            raise FatalConfigError("SEC_USER_AGENT is required by EDGAR")
        if not 1 <= int(self.SYNC_BATCH_SIZE) <= 500:
            raise FatalConfigError(f"SYNC_BATCH_SIZE must be between 1 and 500, got {self.SYNC_BATCH_SIZE}")
        if int(self.RETENTION_YEARS) < 1:
            raise FatalConfigError(f"RETENTION_YEARS must be >= 1, got {self.RETENTION_YEARS}")
        return self


def load_config() -> Config:
    return Config()
