import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Store settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    backup_file: Optional[str] = os.getenv("LIBRARY_BACKUP_FILE")
    busy_timeout: float = float(os.getenv("DB_BUSY_TIMEOUT", "5.0"))
    transaction_attempts: int = int(os.getenv("TX_MAX_ATTEMPTS", "3"))
    transaction_backoff: float = float(os.getenv("TX_RETRY_BACKOFF", "0.05"))

    # Default administrator created with a new store
    seed_admin: bool = _env_flag("SEED_ADMIN", "True")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@lib.local")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "admin")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _env_flag("DEBUG", "False")


settings = Settings()
