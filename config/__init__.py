"""Configuration module for the evidence pipeline.

Centralized configuration management using pydantic-settings, loading and
validating every tunable from environment variables or a local .env file.
"""

from config.settings import GlobalConfig, get_config

__all__ = ["GlobalConfig", "get_config"]
