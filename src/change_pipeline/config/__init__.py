"""Configuration and logging setup."""

from change_pipeline.config.logging import configure_logging
from change_pipeline.config.settings import Settings, get_settings

__all__ = ["Settings", "configure_logging", "get_settings"]
