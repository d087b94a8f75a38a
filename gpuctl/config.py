"""Configuration management for the gpuctl application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


class Config:
    """Application configuration with sensible defaults."""

    # Logging
    LOG_LEVEL: str = os.getenv("GPUCTL_LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "GPUCTL_LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Installer settings file (overridden by --config)
    SETTINGS_FILE: str = os.getenv("GPUCTL_CONFIG", "")

    # Security
    REDACT_KEYS: tuple = ("auth_key", "password", "secret", "token")
