# tekitoi/settings.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# This settings.py file is at <project>/tekitoi/settings.py
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
DOTENV_PATH = PROJECT_ROOT / ".env"

SUPPORTED_STORAGE_BACKENDS = ("sqlite", "redis", "memory")


class Settings(BaseSettings):
    """Broker settings, read from TEKITOI_* environment variables or the project .env file."""

    app_name: str = "Tekitoi"
    debug_mode: bool = False
    log_level: str = "INFO"

    host: str = "127.0.0.1"
    port: int = 3000
    base_url: Optional[str] = Field(
        default=None,
        description="Public URL of the broker. Upstream providers call back on {base_url}/api/redirect."
    )

    dataset_path: Optional[str] = Field(
        default=None,
        description="JSON file holding the applications, providers and users."
    )

    storage_backend: str = "sqlite"

    # Redis configuration
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_ssl: bool = False
    redis_key_prefix: str = "tekitoi:"

    # SQLite configuration
    sqlite_db_path: str = "./tekitoi_data.sqlite3"
    expiry_sweep_interval_seconds: int = 60

    # Lifetimes
    authorization_ttl_seconds: int = 600
    access_token_ttl_seconds: Optional[int] = 86400

    upstream_timeout_seconds: float = 10.0
    token_encryption_key: Optional[str] = Field(
        default=None,
        description="Fernet key used to encrypt upstream access tokens at rest."
    )

    model_config = SettingsConfigDict(
        env_prefix="TEKITOI_",
        env_file=DOTENV_PATH if DOTENV_PATH.exists() else None,
        extra="ignore",
        env_file_encoding='utf-8'
    )

    def public_base_url(self) -> str:
        """Base URL advertised to upstream providers, without trailing slash."""
        if self.base_url:
            return self.base_url.rstrip("/")
        return f"http://{self.host}:{self.port}"

    def upstream_redirect_url(self) -> str:
        return f"{self.public_base_url()}/api/redirect"


def configure_logging(settings: Settings) -> None:
    """Install a root handler once, honouring debug_mode and log_level."""
    if logging.getLogger().hasHandlers():
        return
    level = "DEBUG" if settings.debug_mode else settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s [%(levelname)s] - %(message)s'
    )
    logger.debug(
        f"Logging configured at {level}. storage_backend='{settings.storage_backend}', "
        f"dataset_path='{settings.dataset_path}', "
        f"token_encryption_key={'********' if settings.token_encryption_key else 'None'}"
    )
