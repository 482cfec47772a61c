"""
Static HTML engine.

Fetches the listing page with httpx and parses it with BeautifulSoup.
Suitable for server-rendered sites; sources that need JavaScript use
the browser engine instead.
"""

from typing import Optional

import httpx

from grants_engine.config.settings import EngineConfig
from grants_engine.core.clock import Clock
from grants_engine.core.models import RawRecord, Source
from grants_engine.errors import FetchError

from .base import FetchEngine


class StaticEngine(FetchEngine):
    """
    Engine for server-rendered pages.

    Usage:
        async with StaticEngine(config) as engine:
            result = await engine.fetch(source)
    """

    name = "static"

    def __init__(
        self,
        config: EngineConfig,
        clock: Optional[Clock] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize static engine.

        Args:
            config: Engine configuration
            clock: Time source for durations
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        super().__init__(config, clock)
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self._client is not None:
            return

        static = self.config.static
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(static.timeout / 1000),
            follow_redirects=static.follow_redirects,
            headers={
                "User-Agent": static.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
            proxy=self.config.proxy.url,
            transport=self.transport,
        )
        self.logger.debug(
            "client_started",
            follow_redirects=static.follow_redirects,
            proxy=self.config.proxy.enabled,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _fetch(self, source: Source) -> list[RawRecord]:
        if self._client is None:
            await self.start()

        self.logger.debug("http_get", source_id=source.id, url=source.url)

        try:
            response = await self._client.get(source.url, headers=self.request_headers(source))
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise FetchError(
                f"Timeout fetching {source.url}", url=source.url, kind="timeout"
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise FetchError(
                f"HTTP {status} from {source.url}",
                url=source.url,
                status_code=status,
                kind="http",
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchError(
                f"Request to {source.url} failed: {e.__class__.__name__}: {e}",
                url=source.url,
            ) from e

        return self.parse(response.text, source, str(response.url))
