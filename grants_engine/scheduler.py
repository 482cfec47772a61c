"""
Job scheduler.

Drives scraping: picks due sources, runs one job per source under a
global concurrency cap, retries transient failures with exponential
backoff and feeds every outcome back into the source registry.

Flow per job:
    slot -> rate limit permit -> engine fetch -> processor ingest
         -> terminal job state -> registry.record_outcome
"""

import asyncio
from typing import Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from grants_engine.config.settings import SchedulerConfig
from grants_engine.core.clock import Clock
from grants_engine.core.models import (
    IngestResult,
    Job,
    JobOutcome,
    JobStatus,
    JobTrigger,
    Source,
)
from grants_engine.core.rate_limiter import RateLimiter
from grants_engine.engines import FetchEngine
from grants_engine.errors import (
    RETRYABLE_ERRORS,
    ConfigError,
    EngineError,
    FetchError,
    InvalidTransitionError,
    SourceBusyError,
    SourceInactiveError,
)
from grants_engine.processor import Processor
from grants_engine.registry import SourceRegistry
from grants_engine.storage import JobStore

logger = structlog.get_logger(__name__)

CANCELLED = "cancelled"


class AttemptCounter:
    """Attempts made by one job, readable after the retry loop raises."""

    def __init__(self):
        self.count = 0


class JobScheduler:
    """
    Scheduler for scraping jobs.

    Usage:
        scheduler = JobScheduler(registry, processor, engines, limiter, config.scheduler)
        scheduler.recover()
        await scheduler.run_forever()
    """

    def __init__(
        self,
        registry: SourceRegistry,
        processor: Processor,
        engines: dict[str, FetchEngine],
        rate_limiter: RateLimiter,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize scheduler.

        Args:
            registry: Source registry (due sources, health)
            processor: Catalog writer
            engines: Engine instances by name ("static", "browser")
            rate_limiter: Per-source request gate
            config: Scheduler settings
            clock: Time source for timestamps, backoff and the tick loop

        Raises:
            ConfigError: on a non-positive concurrency cap or negative retries
        """
        self.config = config or SchedulerConfig()
        if self.config.max_concurrent_jobs <= 0:
            raise ConfigError("max_concurrent_jobs must be greater than 0")
        if self.config.retry_attempts < 0:
            raise ConfigError("retry_attempts cannot be negative")

        self.registry = registry
        self.processor = processor
        self.engines = engines
        self.rate_limiter = rate_limiter
        self.clock = clock or registry.clock
        self.jobs = JobStore(registry.db)

        self._slots = asyncio.Semaphore(self.config.max_concurrent_jobs)
        self._active: dict[str, str] = {}  # source_id -> job_id
        self._tasks: dict[str, asyncio.Task] = {}  # job_id -> task
        self._running: set[str] = set()  # job ids holding a slot
        self._started: set[str] = set()  # job ids whose coroutine began
        self._stopping = asyncio.Event()
        self._loop_running = False

    # Selection

    async def tick(self) -> list[str]:
        """
        Start jobs for due sources while slots are free.

        Sources already running are skipped. When no slot is free the
        tick stops; remaining sources stay due for the next tick.

        Returns:
            IDs of the started jobs
        """
        now = self.clock.now()
        due = self.registry.list_due(now)
        started = []

        for source in due:
            if source.id in self._active:
                logger.debug("source_already_running", source_id=source.id)
                continue

            if self._slots.locked():
                logger.info("no_free_slots", deferred=len(due) - len(started))
                break

            await self._slots.acquire()
            try:
                job = self.jobs.create(source.id, JobTrigger.SCHEDULED, now)
                self.jobs.mark_running(job.id, now)
            except SourceBusyError:
                self._slots.release()
                logger.debug("source_busy", source_id=source.id)
                continue
            except BaseException:
                self._slots.release()
                raise

            self._running.add(job.id)
            self._spawn(job, source, slot_held=True)
            started.append(job.id)

        if due:
            logger.info("tick", due=len(due), started=len(started))
        return started

    async def trigger_source(self, source_id: str) -> str:
        """
        Start a manual job for a source, bypassing the due check.

        The job is created PENDING and returned immediately; it becomes
        RUNNING once a concurrency slot is free.

        Raises:
            NotFoundError: unknown source
            SourceInactiveError: source is paused or disabled
            SourceBusyError: a job is already active for the source
        """
        source = self.registry.get(source_id)
        if not source.is_active:
            raise SourceInactiveError(
                f"Source {source_id} is {source.status.value} and cannot be triggered"
            )
        if source_id in self._active:
            raise SourceBusyError(f"Source {source_id} already has an active job")

        job = self.jobs.create(source_id, JobTrigger.MANUAL, self.clock.now())
        self._spawn(job, source, slot_held=False)
        logger.info("job_triggered", job_id=job.id, source_id=source_id)
        return job.id

    async def trigger_all(self) -> list[str]:
        """
        Start manual jobs for every active source not already running.

        Jobs wait for slots, so the concurrency cap still holds.

        Returns:
            IDs of the created jobs
        """
        job_ids = []
        for source in self.registry.list_active():
            if source.id in self._active:
                continue
            try:
                job = self.jobs.create(source.id, JobTrigger.MANUAL, self.clock.now())
            except SourceBusyError:
                continue
            self._spawn(job, source, slot_held=False)
            job_ids.append(job.id)

        logger.info("all_sources_triggered", jobs=len(job_ids))
        return job_ids

    # Execution

    def _spawn(self, job: Job, source: Source, slot_held: bool) -> None:
        self._active[source.id] = job.id
        task = asyncio.create_task(self._run_job(job, source, slot_held))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._on_done(job, source))

    def _on_done(self, job: Job, source: Source) -> None:
        if job.id not in self._started:
            # Cancelled before the coroutine ran; its finally never executed
            if job.id in self._running:
                self._running.discard(job.id)
                self._slots.release()
            self._finish_failed(
                job, source, self.clock.monotonic(), 0, CANCELLED, "Job cancelled",
                logger.bind(job_id=job.id, source_id=source.id), record=False,
            )
        self._started.discard(job.id)
        self._forget(job.id, source.id)

    def _forget(self, job_id: str, source_id: str) -> None:
        self._tasks.pop(job_id, None)
        self._running.discard(job_id)
        if self._active.get(source_id) == job_id:
            del self._active[source_id]

    async def _run_job(self, job: Job, source: Source, slot_held: bool) -> None:
        """Run one job to a terminal state. Never raises except on cancellation."""
        self._started.add(job.id)
        log = logger.bind(job_id=job.id, source_id=source.id)
        holds_slot = slot_held
        started = self.clock.monotonic()
        attempts = AttemptCounter()

        try:
            if not holds_slot:
                try:
                    await asyncio.wait_for(
                        self._slots.acquire(), timeout=self.config.slot_timeout / 1000
                    )
                except asyncio.TimeoutError:
                    # The source was never contacted, so its health is left alone
                    self._finish_failed(
                        job, source, started, 0, FetchError.code,
                        "Timed out waiting for a free job slot", log, record=False,
                    )
                    return
                holds_slot = True
                self._running.add(job.id)
                self.jobs.mark_running(job.id, self.clock.now())
                started = self.clock.monotonic()

            log.info("job_started", engine=source.engine, trigger=job.trigger.value)

            result = await self._execute(source, job, attempts, log)

            duration_ms = self._elapsed_ms(started)
            self.jobs.finish(job.id, JobStatus.SUCCESS, self.clock.now(), duration_ms, attempts.count)
            self.registry.record_outcome(source.id, JobOutcome(success=True, duration_ms=duration_ms))
            log.info(
                "job_succeeded",
                attempts=attempts.count,
                duration_ms=duration_ms,
                found=result.found,
                inserted=result.inserted,
                updated=result.updated,
            )

        except asyncio.CancelledError:
            self._finish_failed(
                job, source, started, attempts.count, CANCELLED, "Job cancelled", log, record=False
            )
            raise

        except EngineError as e:
            self._finish_failed(job, source, started, attempts.count, e.code, e.message, log)

        except Exception as e:
            log.exception("job_crashed", error=str(e))
            self._finish_failed(
                job, source, started, attempts.count, "internal", f"{e.__class__.__name__}: {e}", log
            )

        finally:
            if holds_slot:
                self._running.discard(job.id)
                self._slots.release()
            self._forget(job.id, source.id)

    async def _execute(self, source: Source, job: Job, attempts: "AttemptCounter", log) -> IngestResult:
        engine = self.engines.get(source.engine)
        if engine is None:
            raise ConfigError(
                f"Unknown engine {source.engine!r} for source {source.id} "
                f"(available: {', '.join(sorted(self.engines))})"
            )

        async def attempt() -> IngestResult:
            attempts.count += 1
            async with self.rate_limiter.permit(source.id, source.rate_limit):
                try:
                    fetched = await asyncio.wait_for(
                        engine.fetch(source), timeout=self.config.job_timeout / 1000
                    )
                except asyncio.TimeoutError:
                    raise FetchError(
                        f"Fetch of {source.url} exceeded job timeout", url=source.url, kind="timeout"
                    ) from None
            fetched.raise_for_error()
            return await self.processor.ingest(source.id, job.id, fetched.records)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            wait=wait_exponential(
                multiplier=self.config.backoff_base / 1000,
                max=self.config.backoff_max / 1000,
            ),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            sleep=self.clock.sleep,
            before_sleep=self._log_retry(log),
            reraise=True,
        )
        return await retrying(attempt)

    @staticmethod
    def _log_retry(log):
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            log.warning(
                "job_attempt_failed",
                attempt=retry_state.attempt_number,
                retry_in=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
                error_type=getattr(error, "code", None),
                error=str(error),
            )
        return before_sleep

    def _finish_failed(
        self,
        job: Job,
        source: Source,
        started: float,
        attempts: int,
        error_type: str,
        message: str,
        log,
        record: bool = True,
    ) -> None:
        duration_ms = self._elapsed_ms(started)
        try:
            self.jobs.finish(
                job.id,
                JobStatus.FAILED,
                self.clock.now(),
                duration_ms,
                attempts,
                error=message,
                error_type=error_type,
            )
            if record:
                self.registry.record_outcome(
                    source.id,
                    JobOutcome(success=False, duration_ms=duration_ms, error=message),
                )
        except InvalidTransitionError:
            log.warning("job_already_terminal")
        except Exception as e:
            log.exception("job_finalize_failed", error=str(e))
            return

        log.warning(
            "job_failed",
            attempts=attempts,
            duration_ms=duration_ms,
            error_type=error_type,
            error=message,
        )

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self.clock.monotonic() - started) * 1000))

    # Cancellation

    async def cancel(self, job_id: str) -> Job:
        """
        Cancel a pending or running job.

        The job ends FAILED with error_type "cancelled"; source health is
        not touched. Batches already committed stay in the catalog.

        Raises:
            NotFoundError: unknown job
            InvalidTransitionError: job already finished
        """
        job = self.jobs.get(job_id)
        if job.status.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} already finished ({job.status.value})")

        task = self._tasks.get(job_id)
        if task is not None:
            task.cancel()
            await asyncio.wait({task})
        else:
            # Left over from another process
            self.jobs.finish(
                job_id,
                JobStatus.FAILED,
                self.clock.now(),
                duration_ms=0,
                attempts=job.attempts,
                error="Job cancelled",
                error_type=CANCELLED,
            )

        logger.info("job_cancelled", job_id=job_id, source_id=job.source_id)
        return self.jobs.get(job_id)

    async def cancel_source(self, source_id: str) -> Optional[Job]:
        """Cancel the active job of a source, if any (None when nothing was running)."""
        job_id = self._active.get(source_id)
        if job_id is None:
            return None
        try:
            return await self.cancel(job_id)
        except InvalidTransitionError:
            # Finished before its bookkeeping was cleared
            return None

    # Loop control

    async def run_forever(self, interval: Optional[float] = None) -> None:
        """
        Tick every ``interval`` seconds until stop() is called.

        Args:
            interval: Seconds between ticks (defaults to tick_interval)
        """
        interval = interval if interval is not None else self.config.tick_interval
        self._stopping.clear()
        self._loop_running = True
        logger.info("scheduler_started", interval=interval, slots=self.config.max_concurrent_jobs)

        try:
            while not self._stopping.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.exception("tick_failed", error=str(e))
                await self._sleep_until_stopped(interval)
        finally:
            self._loop_running = False
            logger.info("scheduler_stopped")

    async def _sleep_until_stopped(self, seconds: float) -> None:
        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        stopper = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                if not task.done():
                    task.cancel()

    def stop(self) -> None:
        """Ask run_forever to exit after the current tick."""
        self._stopping.set()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for all in-flight jobs to finish."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("draining_jobs", jobs=len(tasks))
        await asyncio.wait(tasks, timeout=timeout)

    async def shutdown(self, cancel: bool = False, timeout: Optional[float] = None) -> None:
        """Stop the loop and finish (or cancel) in-flight jobs."""
        self.stop()
        if cancel:
            for task in list(self._tasks.values()):
                task.cancel()
        await self.drain(timeout)

    def recover(self) -> list[str]:
        """
        Fail jobs left PENDING/RUNNING by a previous process.

        Call once at startup, before the first tick.
        """
        return self.jobs.fail_orphaned(self.clock.now())

    # State

    @property
    def running_sources(self) -> set[str]:
        """Sources with a job in flight (pending or running)."""
        return set(self._active)

    @property
    def running_jobs(self) -> int:
        return len(self._running)

    def state(self) -> dict:
        """Scheduler state for the status API."""
        return {
            "loopRunning": self._loop_running,
            "maxConcurrentJobs": self.config.max_concurrent_jobs,
            "runningJobs": len(self._running),
            "pendingJobs": len(self._active) - len(self._running),
            "availableSlots": self.config.max_concurrent_jobs - len(self._running),
            "activeJobs": [
                {"jobId": job_id, "sourceId": source_id}
                for source_id, job_id in sorted(self._active.items())
            ],
        }
