"""Configuration management from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


class Config:
    """Application configuration loaded from environment variables."""

    # Database
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", "./data/platewise.db"))
    DB_BUSY_TIMEOUT_SECONDS: float = float(os.getenv("DB_BUSY_TIMEOUT_SECONDS", "5"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Notification driver
    NOTIFICATION_WINDOW_MINUTES: int = int(os.getenv("NOTIFICATION_WINDOW_MINUTES", "10"))
    DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "UTC")

    # Push transport (FCM HTTP v1)
    FCM_PROJECT_ID: str = os.getenv("FCM_PROJECT_ID", "")
    FCM_ACCESS_TOKEN: str = os.getenv("FCM_ACCESS_TOKEN", "")
    PUSH_TIMEOUT_SECONDS: float = float(os.getenv("PUSH_TIMEOUT_SECONDS", "10"))

    # Workflows
    DEEP_LINK_BASE_URL: str = os.getenv("DEEP_LINK_BASE_URL", "https://platewise.app")

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        if not cls.FCM_PROJECT_ID:
            raise ValueError("FCM_PROJECT_ID environment variable is required")

        if not cls.FCM_ACCESS_TOKEN:
            raise ValueError("FCM_ACCESS_TOKEN environment variable is required")

        if 60 % cls.NOTIFICATION_WINDOW_MINUTES != 0:
            raise ValueError("NOTIFICATION_WINDOW_MINUTES must divide 60")

        # Ensure database directory exists
        cls.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)
