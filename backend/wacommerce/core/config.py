# wacommerce/core/config.py

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from loguru import logger
from pathlib import Path


def find_dotenv_path(filename='.env', raise_error_if_not_found=False, usecwd=False) -> str | None:
    """Walks up from this file (or the CWD) looking for a dotenv file."""
    if usecwd or '__file__' not in globals(): start_dir = Path.cwd()
    else: start_dir = Path(__file__).resolve().parent
    current_dir = start_dir
    for _ in range(10):
        env_path = current_dir / filename
        if env_path.is_file(): logger.debug(f"Found {filename} file at: {env_path}"); return str(env_path)
        parent_dir = current_dir.parent
        if parent_dir == current_dir: break
        current_dir = parent_dir
    if not usecwd and '__file__' in globals():
        env_path_cwd = Path.cwd() / filename
        if env_path_cwd.is_file(): logger.debug(f"Found {filename} file at CWD: {env_path_cwd}"); return str(env_path_cwd)
    logger.debug(f"{filename} not found in parent directories of {start_dir} or CWD.")
    if raise_error_if_not_found: raise IOError(f'{filename} not found')
    return None


def dotenv_files() -> tuple[str, ...] | None:
    """.env first, then .env.local (overrides). None when neither exists."""
    found = tuple(p for p in (find_dotenv_path('.env'), find_dotenv_path('.env.local')) if p)
    return found or None


class Settings(BaseSettings):
    PROJECT_NAME: str = "WaCommerce Realtime"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"

    # Realtime server
    WS_PATH: str = "/ws"
    WS_HEARTBEAT_INTERVAL_SECONDS: float = 30.0
    WS_PONG_TIMEOUT_SECONDS: float = 5.0
    WS_HISTORY_SIZE: int = 100
    WS_HISTORY_REPLAY_SIZE: int = 10

    # Realtime client
    REALTIME_URL: str = Field(default="ws://localhost:8000/ws", description="Base URL used by RealtimeClient")
    WS_RECONNECT_DELAY_SECONDS: float = 3.0
    WS_MAX_RECONNECT_ATTEMPTS: int = 5

    # Bot -> dashboard bridge
    DASHBOARD_URL: str = "http://localhost:8000"
    EVENTS_API_KEY: str | None = None
    EVENT_QUEUE_SIZE: int = 100
    EVENT_POST_TIMEOUT_SECONDS: float = 5.0
    EVENT_RETRY_INTERVAL_SECONDS: float = 10.0

    # External commerce API (Supabase edge functions)
    COMMERCE_API_URL: str | None = None
    COMMERCE_API_KEY: str | None = None
    COMMERCE_API_TIMEOUT_SECONDS: float = 25.0

    # Bot
    BOT_COMMAND_PREFIX: str = "!"
    SESSION_TTL_SECONDS: float = 1800.0
    SESSION_MAX_ENTRIES: int = 10_000

    model_config = SettingsConfigDict(
        env_file=dotenv_files(),
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=False,
    )


@lru_cache()
def get_settings() -> Settings:
    """Loads and validates application settings."""
    logger.info("Loading application settings...")
    env_files_found = dotenv_files() or ()
    if env_files_found:
        logger.info(f"Loading environment variables from: {', '.join(env_files_found)}")
    else:
        logger.warning("No .env file found. Loading settings from system environment variables only.")

    try:
        settings_instance = Settings()

        if settings_instance.WS_HISTORY_REPLAY_SIZE > settings_instance.WS_HISTORY_SIZE:
            raise ValueError("WS_HISTORY_REPLAY_SIZE cannot be larger than WS_HISTORY_SIZE")

        # Integrations are optional: the realtime layer runs without them
        if not settings_instance.COMMERCE_API_URL:
            logger.warning("COMMERCE_API_URL missing. Bot commands will answer with failure messages.")
        if not settings_instance.EVENTS_API_KEY:
            logger.warning("EVENTS_API_KEY missing. Bridge event ingestion is disabled.")

        logger.info("Settings loaded and validated successfully.")
        return settings_instance
    except ValueError as val_err:
        logger.critical(f"CRITICAL ERROR in settings validation: {val_err}")
        raise SystemExit(f"Settings validation failed: {val_err}")


settings = get_settings()
