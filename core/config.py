from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings
from typing import List, Optional
from functools import lru_cache
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    # API Settings
    DEBUG: bool = False
    PORT: int = 8742
    WORKERS: int = 1  # Admission state lives in-process, keep a single worker
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/solver.log"
    PROJECT_NAME: str = "Challenge Clearance API"
    ALLOWED_HOSTS: List[str] = ["*"]
    AUTH_TOKEN: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("AUTH_TOKEN", "authToken")
    )

    # Admission Settings
    MAX_CONCURRENT: int = Field(
        default=20, validation_alias=AliasChoices("MAX_CONCURRENT", "browserLimit")
    )
    MAX_QUEUE: int = 100

    # Solver Settings
    TIMEOUT: int = Field(
        default=60000, validation_alias=AliasChoices("TIMEOUT", "timeOut")
    )  # in milliseconds
    POLL_INTERVAL: float = 1.5  # seconds between cookie jar checks
    TURNSTILE_POLL_INTERVAL: int = 250  # in milliseconds
    MIN_CLEARANCE_LENGTH: int = 20
    MIN_TOKEN_LENGTH: int = 10
    TURNSTILE_SCRIPT_PATH: Optional[str] = None
    TURNSTILE_SCRIPT_URL: str = (
        "https://challenges.cloudflare.com/turnstile/v0/b/88d68f5d5ea3/api.js"
    )

    # Browser Settings
    BROWSER_HEADLESS: bool = False
    BROWSER_EXECUTABLE_PATH: Optional[str] = None
    BROWSER_CHANNEL: Optional[str] = None
    BROWSER_LAUNCH_RETRIES: int = 3
    BROWSER_LAUNCH_RETRY_DELAY: float = 1.0  # seconds
    PROXY_SERVER: Optional[str] = None

    # Cache Settings
    CACHE_TTL: int = 30 * 60 * 1000  # 30 minutes in milliseconds
    CACHE_SWEEP_INTERVAL: float = 60.0  # seconds

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

@lru_cache()
def get_settings() -> Settings:
    """Get cached settings to avoid loading .env file multiple times"""
    return Settings()

settings = get_settings()
