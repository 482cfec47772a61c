"""
YAML source seed loader.

Loads source definitions from YAML files with:
- Environment variable substitution
- Required field validation
- Default values for schedule, engine and status
"""

import os
import re
from pathlib import Path
from typing import Optional

import yaml
import structlog

from grants_engine.core.models import (
    EngineKind,
    Frequency,
    RateLimitOverride,
    Source,
    SourceSelectors,
    SourceStatus,
    SourceType,
)
from grants_engine.errors import ConfigError

logger = structlog.get_logger(__name__)

REQUIRED_FIELDS = ["id", "name", "url", "selectors"]


def substitute_env_vars(text: str) -> str:
    """
    Substitute environment variables in text.

    Supports formats:
    - ${VAR_NAME} - required, empty string (with a warning) if missing
    - ${VAR_NAME:-default} - optional with default

    Args:
        text: Text with env var placeholders

    Returns:
        Text with substituted values
    """
    def replace(match):
        var_expr = match.group(1)
        if ":-" in var_expr:
            var_name, default = var_expr.split(":-", 1)
            return os.getenv(var_name, default)
        else:
            value = os.getenv(var_expr)
            if value is None:
                logger.warning("env_var_not_set", var=var_expr)
                return ""
            return value

    return re.sub(r"\$\{([^}]+)\}", replace, text)


class SourceLoader:
    """
    Loader for source seed files.

    Each entry of the top-level ``sources`` list becomes a Source.
    Invalid entries are logged and skipped; the remaining ones load.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.errors: list[str] = []

    def load_file(self) -> dict:
        """
        Load and parse the YAML file.

        Returns:
            Parsed config dict

        Raises:
            ConfigError: if the file is missing or not valid YAML
        """
        if not self.path.exists():
            raise ConfigError(f"Source file not found: {self.path}")

        logger.info("loading_sources", file=str(self.path))

        with open(self.path, "r", encoding="utf-8") as f:
            content = f.read()

        content = substitute_env_vars(content)

        try:
            config = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.path}: {e}") from e

        if config is not None and not isinstance(config, dict):
            raise ConfigError(f"Expected a mapping at the top of {self.path}")

        return config or {}

    def load_sources(self) -> list[Source]:
        """
        Load source definitions.

        Returns:
            List of Source objects
        """
        config = self.load_file()

        sources = []
        seen = set()
        for index, source_data in enumerate(config.get("sources") or []):
            try:
                source = parse_source(source_data)
            except (ConfigError, ValueError, TypeError, AttributeError) as e:
                source_id = source_data.get("id", f"#{index}") if isinstance(source_data, dict) else f"#{index}"
                self.errors.append(f"{source_id}: {e}")
                logger.error("source_load_failed", source=source_id, error=str(e))
                continue

            if source.id in seen:
                self.errors.append(f"{source.id}: duplicate source id")
                logger.error("duplicate_source", source=source.id)
                continue

            seen.add(source.id)
            sources.append(source)
            logger.debug("source_loaded", source_id=source.id)

        logger.info("sources_loaded", count=len(sources), failed=len(self.errors))
        return sources


def parse_source(data: dict) -> Source:
    """
    Parse a source definition into a Source.

    Args:
        data: Source definition dict

    Returns:
        Source object

    Raises:
        ConfigError: if required fields are missing or values are invalid
    """
    if not isinstance(data, dict):
        raise ConfigError("Source definition must be a mapping")

    for field in REQUIRED_FIELDS:
        if not data.get(field):
            raise ConfigError(f"Missing required field: {field}")

    selectors = data["selectors"]
    if not isinstance(selectors, dict):
        raise ConfigError("selectors must be a mapping")
    for field in ("grant_container", "title"):
        if not selectors.get(field):
            raise ConfigError(f"Missing required selector: {field}")

    rate_limit = data.get("rate_limit") or {}

    return Source(
        id=str(data["id"]),
        name=data["name"],
        url=data["url"],
        selectors=SourceSelectors.from_dict(selectors),
        source_type=_enum(SourceType, data.get("type", "OTHER"), "type"),
        category=data.get("category"),
        region=data.get("region"),
        engine=_engine_name(data),
        frequency=_enum(Frequency, data.get("frequency", "DAILY"), "frequency"),
        status=_enum(SourceStatus, data.get("status", "ACTIVE"), "status"),
        headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
        funder_name=data.get("funder_name"),
        api_key_ref=data.get("api_key_ref"),
        rate_limit=RateLimitOverride(
            requests_per_minute=rate_limit.get("requests_per_minute"),
            delay_between_requests=rate_limit.get("delay_between_requests"),
        ),
    )


def _engine_name(data: dict) -> str:
    engine = str(data.get("engine") or EngineKind.STATIC.value).strip().lower()
    if engine not in {kind.value for kind in EngineKind}:
        logger.warning("unknown_engine", source=data.get("id"), engine=engine)
    return engine


def _enum(enum_cls, value, name: str):
    raw = str(value)
    for candidate in (raw, raw.upper(), raw.lower()):
        try:
            return enum_cls(candidate)
        except ValueError:
            continue
    allowed = ", ".join(member.value for member in enum_cls)
    raise ConfigError(f"Invalid {name} {value!r} (allowed: {allowed})")


def load_sources(config_path: Optional[str] = None) -> list[Source]:
    """
    Convenience function to load source definitions.

    Args:
        config_path: Path to the seed file (defaults to sources.yml in
                     the working directory)

    Returns:
        List of Source objects
    """
    return SourceLoader(config_path or "sources.yml").load_sources()
