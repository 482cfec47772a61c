"""
Scraping service.

Wires the engine together:
- Catalog database and source registry
- Rate limiter and fetch/parse engines
- Processor, scheduler and dashboard aggregator

One ScrapingService per process; the control API and the CLI both
drive the engine through it.
"""

from typing import Optional

import structlog

from .config.loader import SourceLoader
from .config.settings import EngineConfig
from .core.clock import Clock
from .core.models import Source, SourceStatus
from .core.rate_limiter import RateLimiter
from .engines import FetchEngine, create_engines
from .monitoring import DashboardAggregator
from .processor import Processor
from .registry import SourceRegistry
from .scheduler import JobScheduler
from .storage import Database, GrantStore

logger = structlog.get_logger(__name__)


class ScrapingService:
    """
    Scraping engine facade.

    Usage:
        async with ScrapingService(load_config()) as service:
            service.seed("sources.yml")
            await service.scheduler.run_forever()
    """

    def __init__(
        self,
        config: EngineConfig,
        clock: Optional[Clock] = None,
        engines: Optional[dict[str, FetchEngine]] = None,
    ):
        """
        Initialize service.

        Args:
            config: Validated engine configuration
            clock: Time source (wall clock by default)
            engines: Engine instances by name (defaults to static + browser)
        """
        self.config = config
        self.clock = clock or Clock()

        self.db = Database(config.database_path)
        self.registry = SourceRegistry(
            self.db,
            clock=self.clock,
            failure_threshold=config.scheduler.failure_threshold,
        )
        self.grants = GrantStore(self.db)
        self.rate_limiter = RateLimiter.from_config(config.rate_limit, clock=self.clock)
        self.processor = Processor(self.db, clock=self.clock, batch_size=config.scheduler.batch_size)
        self.engines = engines if engines is not None else create_engines(config, self.clock)
        self.scheduler = JobScheduler(
            self.registry,
            self.processor,
            self.engines,
            self.rate_limiter,
            config.scheduler,
            clock=self.clock,
        )
        self.dashboard = DashboardAggregator(self.registry, clock=self.clock)

    async def __aenter__(self) -> "ScrapingService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        """Fail jobs orphaned by a previous process."""
        recovered = self.scheduler.recover()
        logger.info(
            "service_started",
            database=self.db.path,
            engines=sorted(self.engines),
            recovered_jobs=len(recovered),
        )

    async def close(self, cancel_jobs: bool = False) -> None:
        """Stop scheduling, finish in-flight jobs and release engine resources."""
        await self.scheduler.shutdown(cancel=cancel_jobs)
        for name, engine in self.engines.items():
            try:
                await engine.close()
            except Exception as e:
                logger.error("engine_close_failed", engine=name, error=str(e))
        logger.info("service_stopped")

    def seed(self, path: str) -> int:
        """
        Register sources from a YAML seed file.

        Returns:
            Number of sources registered
        """
        loader = SourceLoader(path)
        count = self.registry.register_all(loader.load_sources())
        if loader.errors:
            logger.warning("seed_incomplete", registered=count, failed=len(loader.errors))
        return count

    async def set_source_status(self, source_id: str, status: SourceStatus) -> Source:
        """
        Change a source's status.

        Pausing or disabling a source also cancels its in-flight job, which
        ends FAILED with error_type "cancelled".

        Raises:
            NotFoundError: unknown source
        """
        source = self.registry.set_status(source_id, status)
        if not source.is_active:
            job = await self.scheduler.cancel_source(source_id)
            if job is not None:
                logger.info("source_job_aborted", source_id=source_id, job_id=job.id, status=status.value)
        return source

    def status(self) -> dict:
        """Registry snapshot plus scheduler state."""
        return {
            "sources": self.registry.snapshot(self.scheduler.running_sources),
            "scheduler": self.scheduler.state(),
            "catalog": {
                "grants": self.grants.count(),
                "funders": self.grants.count_funders(),
            },
            "generatedAt": self.clock.now().isoformat(),
        }
