"""
Fetch/parse engines.

Engines implement retrieval of a source's listing page and extraction
of raw grant records:
- static: httpx + BeautifulSoup for server-rendered pages
- browser: playwright Chromium for client-rendered pages

The engine used for a source is configuration (``Source.engine``).
"""

from typing import Optional

from grants_engine.config.settings import EngineConfig
from grants_engine.core.clock import Clock

from .base import FetchEngine
from .static import StaticEngine
from .browser import BrowserEngine

ENGINES: dict[str, type[FetchEngine]] = {
    StaticEngine.name: StaticEngine,
    BrowserEngine.name: BrowserEngine,
}


def create_engines(config: EngineConfig, clock: Optional[Clock] = None) -> dict[str, FetchEngine]:
    """Instantiate every engine kind (resources are acquired lazily)."""
    return {name: engine_cls(config, clock) for name, engine_cls in ENGINES.items()}


__all__ = [
    "ENGINES",
    "FetchEngine",
    "StaticEngine",
    "BrowserEngine",
    "create_engines",
]
