"""Configuration module for Clinical Store."""

from clinical_store.config.base import Settings
from clinical_store.config.loader import get_settings

__all__ = ["Settings", "get_settings"]
