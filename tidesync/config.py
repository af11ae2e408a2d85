"""Application configuration loaded from environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Tidepool API hosts, keyed by the server names used in the mobile apps
TIDEPOOL_SERVERS: dict[str, str] = {
    "production": "https://api.tidepool.org",
    "staging": "https://stg-api.tidepool.org",
    "development": "https://dev-api.tidepool.org",
}


class Settings(BaseSettings):
    """All configuration is loaded from TIDESYNC_* environment variables (or .env file)."""

    # --- App ---
    app_name: str = "tidesync"
    app_version: str = "0.1.0"
    app_bundle_id: str = "org.tidepool.tidesync"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Tidepool ---
    tidepool_server: str = "production"  # production | staging | development
    tidepool_base_url: str = ""  # explicit override, wins over tidepool_server
    tidepool_username: str = ""
    tidepool_password: str = ""
    tidepool_session_token: str = ""
    tidepool_user_id: str = ""
    tidepool_client_name: str = "org.tidepool.mobile"
    request_timeout_seconds: float = 30.0

    # --- Local storage ---
    data_dir: Path = Path("./data")
    database_filename: str = "tidesync.sqlite3"
    health_store_filename: str = "health_store.sqlite3"
    store_id: str = "local"  # identity of the local health store
    timezone: str = "UTC"  # reported in upload manifests
    max_import_size_bytes: int = 200 * 1024 * 1024  # Apple Health export.xml upload cap

    # --- Scheduler ---
    scheduler_enabled: bool = False
    sync_config_path: Path | None = None  # override for sync_config.yaml

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "TIDESYNC_",
    }

    @property
    def tidepool_api_url(self) -> str:
        if self.tidepool_base_url:
            return self.tidepool_base_url.rstrip("/")
        try:
            return TIDEPOOL_SERVERS[self.tidepool_server]
        except KeyError:
            raise ValueError(
                f"Unknown Tidepool server '{self.tidepool_server}'. "
                f"Available: {list(TIDEPOOL_SERVERS)}"
            ) from None

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_filename

    @property
    def health_store_path(self) -> Path:
        return self.data_dir / self.health_store_filename


@lru_cache
def get_settings() -> Settings:
    return Settings()
