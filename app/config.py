# app/config.py
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
    expected_schema_version: str = "001_dispatch_schema.sql"  # Update on deploy when new migrations are added
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

    # Security
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]

    # Matching
    dispatch_default_radius_miles: float = 25.0
    dispatch_max_radius_miles: float = 50.0
    dispatch_max_results: int = 10
    dispatch_max_concurrent_jobs: int = 5
    dispatch_prep_buffer_minutes: int = 15   # Added to travel time for the arrival estimate
    dispatch_schedule_timezone: str = "America/Chicago"  # Appraiser schedules are local wall-clock windows

    # Scoring weights (must sum to 1.0)
    score_weight_distance: float = 0.30
    score_weight_rating: float = 0.25
    score_weight_completion: float = 0.20
    score_weight_availability: float = 0.15
    score_weight_experience: float = 0.10

    # SLA Monitor
    sla_sweep_enabled: bool = False          # Master switch, enable explicitly in the worker service
    sla_sweep_interval_seconds: float = 60.0
    sla_sweep_batch_size: int = 100          # Oldest-first jobs examined per check per sweep
    sla_at_risk_hours: float = 2.0           # Remaining time under which a job is AT_RISK

    # Notifications
    notifications_enabled: bool = True       # Master switch to disable all outbound e-mail/push
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str = "dispatch@localhost"
    push_gateway_url: str | None = None      # e.g. https://push.example.com/v1/send
    push_gateway_token: str | None = None
    push_timeout_seconds: float = 15.0
    notification_max_attempts: int = 3
    notification_base_retry_delay: float = 5.0   # seconds, doubles on each retry
    notification_max_retry_delay: float = 300.0
    notification_queue_interval: float = 30.0    # seconds between retry queue passes

    # Monitoring & Metrics
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def smtp_enabled(self) -> bool:
        """Check if SMTP e-mail delivery is configured"""
        return bool(self.smtp_host)

    @property
    def push_enabled(self) -> bool:
        """Check if the push gateway is configured"""
        return bool(self.push_gateway_url)

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"host={self.pghost} port={self.pgport} "
            f"dbname={self.pgdatabase} user={self.pguser} "
            f"password={self.pgpassword} "
            f"connect_timeout={self.pg_connect_timeout} "
            f"options='-c statement_timeout={self.pg_statement_timeout_ms} "
            f"-c idle_in_transaction_session_timeout={self.pg_idle_in_tx_timeout_ms}'"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("admin_token", self.admin_token),
            ("database_url or pghost", self.database_url or self.pghost),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Admin / Security ---
    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not s.admin_token:
        warnings.append("admin_token is not set (dispatch and admin endpoints will reject every request).")

    # --- Matching ---
    weight_sum = (
        s.score_weight_distance
        + s.score_weight_rating
        + s.score_weight_completion
        + s.score_weight_availability
        + s.score_weight_experience
    )
    if abs(weight_sum - 1.0) > 1e-6:
        warnings.append(f"score weights sum to {weight_sum:.3f}, expected 1.0 (matcher will refuse to start).")

    if s.dispatch_default_radius_miles > s.dispatch_max_radius_miles:
        warnings.append("dispatch_default_radius_miles exceeds dispatch_max_radius_miles (default will be clamped).")

    # --- Notifications ---
    if s.notifications_enabled:
        if not s.smtp_enabled:
            warnings.append("notifications_enabled=True but smtp_host is not set (e-mail notifications are disabled).")
        if not s.push_enabled:
            warnings.append("notifications_enabled=True but push_gateway_url is not set (push notifications are disabled).")
        if s.push_enabled and not s.push_gateway_token:
            warnings.append("push_gateway_url is set but push_gateway_token is missing.")

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
