"""
Engine configuration from environment variables.

All values are read once at startup, validated as a whole, and collected
into an EngineConfig. Validation collects every problem before raising
ConfigError so a misconfigured deployment reports everything at once.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Union

import structlog

from grants_engine.errors import ConfigError

logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

SQLITE_SCHEME = "sqlite:///"

# Reference name used by sources -> environment variable holding the key
API_KEY_ENV = {
    "grants_gov": "GRANTS_GOV_API_KEY",
    "foundation_center": "FOUNDATION_CENTER_API_KEY",
    "nih": "NIH_API_KEY",
    "nsf": "NSF_API_KEY",
}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class SchedulerConfig:
    max_concurrent_jobs: int = 5
    retry_attempts: int = 3
    backoff_base: int = 1000  # ms
    backoff_max: int = 300_000  # ms
    tick_interval: int = 60  # seconds
    job_timeout: int = 120_000  # ms
    slot_timeout: int = 600_000  # ms
    failure_threshold: int = 5
    batch_size: int = 25


@dataclass
class RateLimitConfig:
    requests_per_minute: int = 10
    delay_between_requests: int = 2000  # ms
    max_wait: int = 120_000  # ms


@dataclass
class BrowserConfig:
    headless: bool = True
    timeout: int = 30_000  # ms


@dataclass
class StaticConfig:
    timeout: int = 30_000  # ms
    follow_redirects: bool = True
    user_agent: str = DEFAULT_USER_AGENT


@dataclass
class ProxyConfig:
    enabled: bool = False
    host: Optional[str] = None
    port: Optional[int] = None

    @property
    def url(self) -> Optional[str]:
        if not self.enabled:
            return None
        return f"http://{self.host}:{self.port}"


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class EngineConfig:
    """Complete engine configuration."""

    backing_store_url: str = ""
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    static: StaticConfig = field(default_factory=StaticConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    api_keys: dict[str, str] = field(default_factory=dict)

    @property
    def database_path(self) -> str:
        return sqlite_path(self.backing_store_url)


def sqlite_path(url: str) -> str:
    """
    Filesystem path of a ``sqlite:///path`` URL.

    Raises:
        ConfigError: if the URL is not a sqlite URL
    """
    if not url or not url.startswith(SQLITE_SCHEME):
        raise ConfigError(f"Unsupported backing store URL: {url!r} (expected sqlite:///path)")

    path = url[len(SQLITE_SCHEME):]
    if not path:
        raise ConfigError(f"Backing store URL has no path: {url!r}")
    return path


class _EnvReader:
    """Typed environment access that records problems instead of raising."""

    def __init__(self, env: Mapping[str, str]):
        self.env = env
        self.errors: list[str] = []

    def get_str(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.env.get(name)
        if value is None or value.strip() == "":
            return default
        return value.strip()

    def get_int(self, name: str, default: int) -> int:
        raw = self.get_str(name)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            self.errors.append(f"{name} must be an integer, got {raw!r}")
            return default

    def get_bool(self, name: str, default: bool) -> bool:
        raw = self.get_str(name)
        if raw is None:
            return default
        if raw.lower() in TRUE_VALUES:
            return True
        if raw.lower() in FALSE_VALUES:
            return False
        self.errors.append(f"{name} must be a boolean, got {raw!r}")
        return default


def load_config(env: Optional[Mapping[str, str]] = None, validate: bool = True) -> EngineConfig:
    """
    Build EngineConfig from environment variables.

    Args:
        env: Environment mapping (defaults to os.environ)
        validate: Raise ConfigError on invalid values

    Returns:
        EngineConfig

    Raises:
        ConfigError: with every validation message collected
    """
    reader = _EnvReader(os.environ if env is None else env)
    timeout = reader.get_int("SCRAPING_TIMEOUT", 30_000)

    proxy_port = reader.get_int("PROXY_PORT", 0) or None
    user_agent = reader.env.get("SCRAPING_USER_AGENT", DEFAULT_USER_AGENT).strip()

    config = EngineConfig(
        backing_store_url=reader.get_str("SCRAPING_BACKING_STORE_URL") or reader.get_str("DATABASE_URL", ""),
        scheduler=SchedulerConfig(
            max_concurrent_jobs=reader.get_int("SCRAPING_MAX_CONCURRENT_JOBS", 5),
            retry_attempts=reader.get_int("SCRAPING_RETRY_ATTEMPTS", 3),
            backoff_base=reader.get_int("SCRAPING_BACKOFF_BASE", 1000),
            backoff_max=reader.get_int("SCRAPING_BACKOFF_MAX", 300_000),
            tick_interval=reader.get_int("SCRAPING_TICK_INTERVAL", 60),
            job_timeout=reader.get_int("SCRAPING_JOB_TIMEOUT", 120_000),
            slot_timeout=reader.get_int("SCRAPING_SLOT_TIMEOUT", 600_000),
            failure_threshold=reader.get_int("SCRAPING_FAILURE_THRESHOLD", 5),
            batch_size=reader.get_int("SCRAPING_BATCH_SIZE", 25),
        ),
        rate_limit=RateLimitConfig(
            requests_per_minute=reader.get_int("SCRAPING_DEFAULT_RATE_LIMIT", 10),
            delay_between_requests=reader.get_int("SCRAPING_DEFAULT_DELAY", 2000),
            max_wait=reader.get_int("SCRAPING_RATE_LIMIT_MAX_WAIT", 120_000),
        ),
        browser=BrowserConfig(
            headless=reader.get_bool("SCRAPING_HEADLESS", True),
            timeout=timeout,
        ),
        static=StaticConfig(
            timeout=timeout,
            follow_redirects=reader.get_bool("SCRAPING_FOLLOW_REDIRECTS", True),
            user_agent=user_agent,
        ),
        proxy=ProxyConfig(
            enabled=reader.get_bool("PROXY_ENABLED", False),
            host=reader.get_str("PROXY_HOST"),
            port=proxy_port,
        ),
        api=ApiConfig(
            host=reader.get_str("SCRAPING_API_HOST", "0.0.0.0"),
            port=reader.get_int("SCRAPING_API_PORT", 8080),
        ),
        api_keys={
            ref: reader.env[var].strip()
            for ref, var in API_KEY_ENV.items()
            if reader.get_str(var)
        },
    )

    if validate:
        ensure_valid(config, reader.errors)

    return config


def validate_config(config: EngineConfig) -> list[str]:
    """
    Check configuration values.

    Returns:
        List of error messages (empty when valid)
    """
    errors = []

    if not config.backing_store_url:
        errors.append("Backing store URL is required (SCRAPING_BACKING_STORE_URL or DATABASE_URL)")
    elif not config.backing_store_url.startswith(SQLITE_SCHEME):
        errors.append(
            f"Unsupported backing store URL {config.backing_store_url!r}, expected sqlite:///path"
        )
    elif not config.backing_store_url[len(SQLITE_SCHEME):]:
        errors.append("Backing store URL has no database path")

    scheduler = config.scheduler
    if scheduler.max_concurrent_jobs <= 0:
        errors.append("max_concurrent_jobs must be greater than 0")
    if scheduler.retry_attempts < 0:
        errors.append("retry_attempts cannot be negative")
    if scheduler.backoff_base < 0:
        errors.append("backoff_base cannot be negative")
    if scheduler.backoff_max < scheduler.backoff_base:
        errors.append("backoff_max must be at least backoff_base")
    if scheduler.tick_interval <= 0:
        errors.append("tick_interval must be greater than 0")
    if scheduler.job_timeout <= 0:
        errors.append("job_timeout must be greater than 0")
    if scheduler.slot_timeout <= 0:
        errors.append("slot_timeout must be greater than 0")
    if scheduler.failure_threshold <= 0:
        errors.append("failure_threshold must be greater than 0")
    if scheduler.batch_size <= 0:
        errors.append("batch_size must be greater than 0")

    if config.rate_limit.requests_per_minute <= 0:
        errors.append("Rate limit must be greater than 0")
    if config.rate_limit.delay_between_requests < 0:
        errors.append("Delay between requests cannot be negative")
    if config.rate_limit.max_wait <= 0:
        errors.append("Rate limit max wait must be greater than 0")

    if config.browser.timeout <= 0:
        errors.append("Browser timeout must be greater than 0")
    if config.static.timeout <= 0:
        errors.append("Static parser timeout must be greater than 0")
    if not config.static.user_agent or not config.static.user_agent.strip():
        errors.append("User agent cannot be empty")

    if config.proxy.enabled:
        if not config.proxy.host:
            errors.append("Proxy host is required when proxy is enabled")
        if not config.proxy.port:
            errors.append("Proxy port is required when proxy is enabled")
        elif not 0 < config.proxy.port < 65536:
            errors.append(f"Proxy port out of range: {config.proxy.port}")

    if not 0 < config.api.port < 65536:
        errors.append(f"API port out of range: {config.api.port}")

    return errors


def ensure_valid(config: EngineConfig, parse_errors: Optional[list[str]] = None) -> None:
    """
    Raise ConfigError if the configuration is invalid.

    Args:
        config: Configuration to check
        parse_errors: Problems found while reading the environment
    """
    errors = list(parse_errors or []) + validate_config(config)
    if errors:
        for message in errors:
            logger.error("invalid_config", error=message)
        raise ConfigError(
            f"Invalid configuration: {'; '.join(errors)}",
            errors=errors,
        )


def config_for_database(path: Union[str, Path], **overrides) -> EngineConfig:
    """Default configuration pointing at a sqlite file (handy for tools and tests)."""
    config = EngineConfig(backing_store_url=f"{SQLITE_SCHEME}{path}")
    for name, value in overrides.items():
        setattr(config, name, value)
    return config
