from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    app_env: str = "development"  # development | production | test

    # Storage (SQLite files; "memory://" keeps the control plane in-process)
    data_dir: str = "data"
    control_db_path: str = ""  # default: <data_dir>/control.db
    app_db_path: str = ""      # default: <data_dir>/app.db

    # Scheduler control plane - closed job-id set, known at deploy time
    scheduler_ids: str = "umf,news"
    job_aliases: str = "guru=news"  # legacy ids accepted at the boundary
    scheduler_autostart: bool = False

    # Run cadence: UMF hourly, news every 2 hours
    umf_interval_seconds: int = 3600
    news_interval_seconds: int = 7200
    umf_lock_lease_seconds: int = 300
    news_lock_lease_seconds: int = 600

    # External fetch collaborators (CoinGecko / RSS workers)
    umf_trigger_url: str = ""
    news_trigger_url: str = ""
    trigger_timeout_seconds: float = 120.0

    # UMF in-memory cache
    umf_cache_ttl_seconds: int = 3600

    # Health aggregation
    health_timeout_seconds: float = 5.0
    health_recent_events: int = 10

    # Admin API
    admin_token: str = ""  # empty = dev mode, no auth
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Zoho CRM (integration probe)
    zoho_client_id: str = ""
    zoho_client_secret: str = ""
    zoho_refresh_token: str = ""
    zoho_accounts_url: str = "https://accounts.zoho.com/oauth/v2/token"

    # Reported as present / missing only
    database_url: str = ""
    fb_project_id: str = ""
    fb_client_email: str = ""
    fb_private_key: str = ""
    coingecko_api_key: str = ""

    # Logging
    log_level: str = "INFO"

    @property
    def job_ids(self) -> tuple[str, ...]:
        return tuple(j.strip() for j in self.scheduler_ids.split(",") if j.strip())

    @property
    def aliases(self) -> dict[str, str]:
        pairs = (p.split("=", 1) for p in self.job_aliases.split(",") if "=" in p)
        return {k.strip(): v.strip() for k, v in pairs}

    @property
    def resolved_control_db(self) -> str:
        return self.control_db_path or str(Path(self.data_dir) / "control.db")

    @property
    def resolved_app_db(self) -> str:
        return self.app_db_path or str(Path(self.data_dir) / "app.db")

    def interval_for(self, job_id: str) -> int:
        return getattr(self, f"{job_id}_interval_seconds", 3600)

    def lease_for(self, job_id: str) -> int:
        return getattr(self, f"{job_id}_lock_lease_seconds", 300)

    def trigger_url_for(self, job_id: str) -> str:
        return getattr(self, f"{job_id}_trigger_url", "")


settings = Settings()
