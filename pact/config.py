# pact/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000
    expected_schema_version: str = "001_init.sql"  # Latest migration the app was built against

    # Storage backend for site entries / wallets
    # "postgres" - asyncpg-backed tables (production)
    # "memory"   - process-local store, for local runs and demos only
    store_backend: Literal["postgres", "memory"] = "postgres"
    memory_seed_path: str | None = None  # JSON fixture loaded into the memory backend at startup
    site_query_page_size: int = 200  # Rows fetched per page when iterating query() results

    # Wallet / Settlement
    ledger_currency: str = "SDG"
    settlement_retry_enabled: bool = True        # Queue a retry job when the ledger write fails
    settlement_max_attempts: int = 8
    settlement_base_retry_delay: float = 30.0    # seconds, doubles on each retry

    # Security
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]

    # Job Worker (DB-backed queue)
    job_worker_enabled: bool = False          # Master switch: enable explicitly in worker service
    job_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    job_worker_batch_size: int = 5            # Jobs claimed per poll cycle
    job_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    job_worker_stale_timeout: int = 300       # Reset jobs stuck 'running' for this long (seconds)

    # Monitoring
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []
        required_fields = [
            ("admin_token", self.admin_token),
            ("database_url", self.database_url),
        ]
        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.store_backend == "memory" and (s.is_production or s.is_staging):
        warnings.append(
            f"{s.app_env}: store_backend=memory keeps site entries in process memory "
            "(claims are not shared across instances and are lost on restart)."
        )

    if not s.settlement_retry_enabled:
        warnings.append(
            "settlement_retry_enabled=False: failed wallet credits must be retried "
            "manually (POST /admin/settlements/retry)."
        )
    elif not s.job_worker_enabled and s.run_mode in ("all", "worker"):
        warnings.append(
            "job_worker_enabled=False: queued settlement retries will not run in this process."
        )

    if s.site_query_page_size < 1:
        warnings.append("site_query_page_size < 1: falling back to single-row pages.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
