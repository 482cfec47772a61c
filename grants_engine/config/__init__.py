"""
Configuration module for the scraping engine.

Provides:
- Environment configuration with validation
- YAML source seed loading
- Environment variable substitution
"""

from .settings import (
    ApiConfig,
    BrowserConfig,
    EngineConfig,
    ProxyConfig,
    RateLimitConfig,
    SchedulerConfig,
    StaticConfig,
    ensure_valid,
    load_config,
    validate_config,
)
from .loader import SourceLoader, load_sources, parse_source, substitute_env_vars

__all__ = [
    "ApiConfig",
    "BrowserConfig",
    "EngineConfig",
    "ProxyConfig",
    "RateLimitConfig",
    "SchedulerConfig",
    "StaticConfig",
    "ensure_valid",
    "load_config",
    "validate_config",
    "SourceLoader",
    "load_sources",
    "parse_source",
    "substitute_env_vars",
]
