"""
Base class for fetch/parse engines.

An engine retrieves a source's listing page and turns it into raw
records using the source's CSS selectors. Expected failures (network,
HTTP status, timeouts, selectors matching nothing) are returned in
``FetchResult.error`` rather than raised.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog
from soupsieve import SelectorSyntaxError

from grants_engine.config.settings import EngineConfig
from grants_engine.core.clock import Clock
from grants_engine.core.models import FetchResult, RawRecord, Source
from grants_engine.core.selectors import extract_records
from grants_engine.errors import EngineError, ParseError

logger = structlog.get_logger(__name__)

API_KEY_HEADER = "X-Api-Key"


class FetchEngine(ABC):
    """
    Abstract base class for fetch/parse engines.

    Engines are long-lived: open once (``async with`` or ``start()``),
    fetch many sources, close on shutdown.
    """

    name = "base"

    def __init__(self, config: EngineConfig, clock: Optional[Clock] = None):
        """
        Initialize engine.

        Args:
            config: Engine configuration
            clock: Time source for durations
        """
        self.config = config
        self.clock = clock or Clock()
        self.logger = logger.bind(engine=self.name)

    async def __aenter__(self) -> "FetchEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        """Acquire long-lived resources (HTTP client, browser)."""

    async def close(self) -> None:
        """Release resources acquired by start()."""

    async def fetch(self, source: Source) -> FetchResult:
        """
        Fetch and parse a source's listing page.

        Args:
            source: Source to scrape

        Returns:
            FetchResult with records, or with the typed error set
        """
        started = self.clock.monotonic()
        records: list[RawRecord] = []
        error: Optional[EngineError] = None

        try:
            records = await self._fetch(source)
        except EngineError as e:
            error = e
            self.logger.warning(
                "fetch_failed",
                source_id=source.id,
                error_type=e.code,
                error=e.message,
            )

        duration_ms = int((self.clock.monotonic() - started) * 1000)
        if error is None:
            self.logger.info(
                "fetch_complete",
                source_id=source.id,
                records=len(records),
                duration_ms=duration_ms,
            )

        return FetchResult(records=records, duration_ms=duration_ms, error=error)

    @abstractmethod
    async def _fetch(self, source: Source) -> list[RawRecord]:
        """
        Retrieve and parse the page, raising EngineError subclasses on failure.
        """

    def request_headers(self, source: Source) -> dict[str, str]:
        """Source headers plus the API key header when the source names one."""
        headers = dict(source.headers or {})

        if source.api_key_ref:
            api_key = self.config.api_keys.get(source.api_key_ref)
            if api_key:
                headers.setdefault(API_KEY_HEADER, api_key)
            else:
                self.logger.warning(
                    "api_key_missing", source_id=source.id, api_key_ref=source.api_key_ref
                )

        return headers

    def parse(self, html: str, source: Source, url: str) -> list[RawRecord]:
        """
        Extract records from page HTML.

        Raises:
            ParseError: if a non-empty page yields no records and the
                        source's empty marker is absent, or a selector
                        is invalid
        """
        try:
            result = extract_records(html, source.selectors, url)
        except SelectorSyntaxError as e:
            raise ParseError(f"Invalid selector for source {source.id}: {e}", url=url) from e

        if result.records:
            return result.records

        if result.empty_marker_found:
            self.logger.info("no_grants_listed", source_id=source.id, url=url)
            return []

        if result.body_empty:
            self.logger.warning("empty_response", source_id=source.id, url=url)
            return []

        self.logger.warning(
            "selector_matched_nothing",
            source_id=source.id,
            url=url,
            containers=result.containers,
            selector=source.selectors.grant_container,
        )
        raise ParseError(
            f"Selectors matched no grants on {url} "
            f"({result.containers} containers for {source.selectors.grant_container!r})",
            url=url,
        )
