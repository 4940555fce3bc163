"""Configuration module."""

from taskpulse.core.config.loader import load_config
from taskpulse.core.config.schema import Config

__all__ = ["Config", "load_config"]
