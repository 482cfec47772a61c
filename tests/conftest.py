"""Shared fixtures for engine tests."""

import asyncio
from typing import Optional

import pytest

from grants_engine.config.settings import EngineConfig, SchedulerConfig
from grants_engine.core.clock import ManualClock
from grants_engine.core.models import RawRecord, Source, SourceSelectors
from grants_engine.core.rate_limiter import RateLimiter
from grants_engine.engines.base import FetchEngine
from grants_engine.processor import Processor
from grants_engine.registry import SourceRegistry
from grants_engine.scheduler import JobScheduler
from grants_engine.storage import Database


LISTING_HTML = """
<html>
<body>
    <div class="grant">
        <h3 class="title">Community Health Innovation Fund</h3>
        <p class="summary">Support for public health programs in rural areas.</p>
        <span class="deadline">March 31, 2025</span>
        <span class="amount">$10,000 - $50,000</span>
        <span class="funder">Ford Foundation</span>
        <a class="apply" href="/grants/health-innovation">Apply</a>
    </div>
    <div class="grant">
        <h3 class="title">STEM Education Grants</h3>
        <p class="summary">Grants for school science and university training.</p>
        <span class="deadline">2025-06-15</span>
        <span class="amount">up to $1.5M</span>
        <a class="apply" href="https://example.org/stem">Apply</a>
    </div>
</body>
</html>
"""


def make_selectors(**overrides) -> SourceSelectors:
    values = {
        "grant_container": ".grant",
        "title": ".title",
        "description": ".summary",
        "deadline": ".deadline",
        "funding_amount": ".amount",
        "funder": ".funder",
        "application_url": "a.apply",
    }
    values.update(overrides)
    return SourceSelectors(**values)


def make_source(source_id: str = "test_source", **overrides) -> Source:
    values = {
        "id": source_id,
        "name": f"Source {source_id}",
        "url": f"https://{source_id.replace('_', '-')}.example.org/grants",
        "selectors": make_selectors(),
    }
    values.update(overrides)
    return Source(**values)


def make_record(title: str = "Test Grant", **overrides) -> RawRecord:
    values = {"title": title, "source_url": "https://example.org/grants"}
    values.update(overrides)
    return RawRecord(**values)


class StubEngine(FetchEngine):
    """
    Engine returning scripted results.

    Each fetch consumes the next step of the script; the last step
    repeats once the script runs out. A step is a list of RawRecord
    or an EngineError instance to raise.
    """

    name = "stub"

    def __init__(self, script=None, gate: Optional[asyncio.Event] = None, yields: int = 3):
        super().__init__(EngineConfig())
        self.script = list(script or [[make_record()]])
        self.gate = gate
        self.yields = yields
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def _fetch(self, source: Source) -> list[RawRecord]:
        self.calls.append(source.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            for _ in range(self.yields):
                await asyncio.sleep(0)

            step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
            if isinstance(step, Exception):
                raise step
            return list(step)
        finally:
            self.active -= 1


async def wait_until(predicate, attempts: int = 200) -> None:
    """Yield to the event loop until predicate() holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "catalog.db"))


@pytest.fixture
def registry(db, clock):
    return SourceRegistry(db, clock=clock, failure_threshold=3)


@pytest.fixture
def processor(db, clock):
    return Processor(db, clock=clock, batch_size=25)


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(requests_per_minute=100, delay_between_requests=0, clock=clock)


@pytest.fixture
def make_scheduler(registry, processor, rate_limiter, clock):
    """Factory: make_scheduler(engine, **scheduler_config_overrides)."""

    def factory(engine: FetchEngine, **overrides) -> JobScheduler:
        config = SchedulerConfig(**overrides)
        return JobScheduler(
            registry,
            processor,
            {"static": engine},
            rate_limiter,
            config,
            clock=clock,
        )

    return factory
