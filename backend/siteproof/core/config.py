from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "SiteProof Offline ITP Sync"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Local durable queue (SQLite via aiosqlite)
    LOCAL_DB_URL: str = "sqlite+aiosqlite:///./siteproof_offline.db"

    # Hosted backend (PostgREST-style REST + object storage)
    REMOTE_API_URL: Optional[str] = None
    REMOTE_API_KEY: Optional[str] = None
    REMOTE_TIMEOUT: float = 10.0
    REMOTE_MOCK_MODE: bool = True  # Use synthetic ids when the hosted backend is unavailable
    EVIDENCE_BUCKET: str = "itp-evidence"
    ORGANIZATION_ID: Optional[str] = None

    # Sync engine
    AUTO_SYNC_ENABLED: bool = True
    AUTO_SYNC_INTERVAL_SECONDS: float = 30.0
    SYNC_CONCURRENCY: int = 1
    SYNC_CALL_TIMEOUT: float = 30.0  # Upper bound for one gateway call, keeps the sweep lock from wedging
    START_ONLINE: bool = True
    SYNCED_RETENTION_DAYS: int = 30


settings = Settings()
