"""Application configuration helpers."""

from __future__ import annotations

from .env import env_bool, env_choice, env_float, env_int, require_env_vars
from .errors import ConfigurationError, InvalidConfigurationError, MissingConfigurationError
from .http_resilience import HttpRetryPolicy, RateLimit, ResilienceConfig
from .pipeline import PipelineConfig, get_pipeline_config
from .storage import DatabaseConfig, StorageConfig, get_database_config, get_storage_config
from .store import HttpStoreConfig, get_http_store_config

__all__ = [
    "ConfigurationError",
    "DatabaseConfig",
    "HttpRetryPolicy",
    "HttpStoreConfig",
    "InvalidConfigurationError",
    "MissingConfigurationError",
    "PipelineConfig",
    "RateLimit",
    "ResilienceConfig",
    "StorageConfig",
    "env_bool",
    "env_choice",
    "env_float",
    "env_int",
    "get_database_config",
    "get_http_store_config",
    "get_pipeline_config",
    "get_storage_config",
    "require_env_vars",
]
