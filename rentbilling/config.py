from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ---- App ----
    app_env: str = "local"  # local|dev|prod
    app_version: str = "2026-10-01.v1"
    database_url: str = "sqlite:///./rentbilling.db"

    # ---- CORS (used by main.py) ----
    cors_allow_origins: list[str] | str = ["*"]

    # ---- Invoicing ----
    invoice_initial_status: str = "issued"  # issued|draft
    currency_code: str = "KES"

    # ---- Retry / backoff (utility lookups + persistence) ----
    billing_retry_attempts: int = 3
    billing_retry_base_seconds: float = 0.2
    billing_retry_max_seconds: float = 2.0

    # Whole-allocation retries on conflict (stale invoice rows, duplicate keys)
    allocation_max_attempts: int = 3

    # ---- Logging ----
    log_level: str = "INFO"
    log_format: str = "json"  # json|text
    sql_log_level: str = "WARNING"

    # ---- Auth ----
    auth_mode: str = "dev"  # dev only; real auth lives in the platform gateway
    dev_header_org_slug: str = "X-Org-Slug"
    dev_header_user_email: str = "X-User-Email"
    dev_header_user_role: str = "X-User-Role"
    dev_header_tenant_id: str = "X-Tenant-Id"
    dev_auto_provision: bool = True

    # ---- Celery ----
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    invoice_generation_hour_utc: int = 2
    overdue_sweep_hour_utc: int = 3

    def model_post_init(self, __context) -> None:
        status = (self.invoice_initial_status or "issued").strip().lower()
        if status not in ("issued", "draft"):
            raise ValueError(f"invoice_initial_status must be issued|draft, got {self.invoice_initial_status!r}")
        object.__setattr__(self, "invoice_initial_status", status)

        env = (self.app_env or "local").strip().lower()
        if env in ("prod", "production"):
            # Header-spoofed principals are for local work only
            if (self.auth_mode or "").strip().lower() == "dev":
                raise ValueError("SECURITY: auth_mode=dev is not allowed in prod")

            origins = self.cors_allow_origins
            if origins == "*" or origins == ["*"] or (isinstance(origins, str) and "*" in origins):
                raise ValueError("SECURITY: cors_allow_origins wildcard is not allowed in prod")


settings = Settings()
