"""
CLI entry point for grants-engine.

Usage:
    python -m grants_engine seed sources.yml
    python -m grants_engine serve
    python -m grants_engine trigger nih_reporter
    python -m grants_engine trigger --all
    python -m grants_engine dashboard --time-range 7d
"""

import argparse
import asyncio
import json
import logging
import sys

import structlog

from .config.settings import load_config
from .errors import ConfigError, EngineError

# Log level mapping
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

EXIT_CONFIG_ERROR = 2


def setup_logging(level: str = "INFO", json_output: bool = False):
    """Configure structured logging."""
    log_level = LOG_LEVELS.get(level.upper(), logging.INFO)

    if json_output:
        renderer = structlog.processors.JSONRenderer()
        timestamper = structlog.processors.TimeStamper(fmt="iso")
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S")

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            timestamper,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # stdout carries command output; logs go to stderr
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="grants-engine",
        description="Grant scraping orchestration engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Register sources from a seed file
  python -m grants_engine seed sources.yml

  # Run the scheduler loop and the control API
  python -m grants_engine serve --port 8080

  # Run one scheduler tick and wait for its jobs
  python -m grants_engine tick

  # Scrape one source now
  python -m grants_engine trigger grants_gov

  # Dashboard for the last week
  python -m grants_engine dashboard --time-range 7d

Configuration is read from the environment (SCRAPING_BACKING_STORE_URL,
SCRAPING_MAX_CONCURRENT_JOBS, SCRAPING_RETRY_ATTEMPTS, ...).
        """,
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON (for production)",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the scheduler loop and the control API")
    serve.add_argument("--host", help="Bind address (default: SCRAPING_API_HOST)")
    serve.add_argument("--port", type=int, help="Bind port (default: SCRAPING_API_PORT)")
    serve.add_argument("--sources", help="Seed file registered before serving")

    commands.add_parser("tick", help="Start jobs for due sources and wait for them")

    trigger = commands.add_parser("trigger", help="Scrape sources now and wait for the jobs")
    target = trigger.add_mutually_exclusive_group(required=True)
    target.add_argument("source_id", nargs="?", help="Source to scrape")
    target.add_argument("--all", action="store_true", help="Scrape every active source")

    dashboard = commands.add_parser("dashboard", help="Print the monitoring dashboard")
    dashboard.add_argument(
        "--time-range",
        choices=["24h", "7d", "30d"],
        default="24h",
        help="Aggregation window (default: 24h)",
    )

    commands.add_parser("status", help="Print sources and scheduler state")

    seed = commands.add_parser("seed", help="Register sources from a YAML file")
    seed.add_argument("path", help="Path to sources.yml")

    return parser, parser.parse_args(argv)


def print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def run_jobs(service, job_ids: list[str]) -> bool:
    """Wait for jobs, print their final state and report overall success."""
    await service.scheduler.drain()
    jobs = [service.scheduler.jobs.get(job_id).to_dict() for job_id in job_ids]
    print_json({"jobs": jobs})
    return all(job["status"] == "SUCCESS" for job in jobs)


async def main_async(args, config) -> int:
    """Async main function."""
    from .api import serve
    from .service import ScrapingService

    logger = structlog.get_logger(__name__)
    logger.info("starting_grants_engine", command=args.command, database=config.database_path)

    async with ScrapingService(config) as service:
        if args.command == "seed":
            count = service.seed(args.path)
            print_json({"registered": count})
            return 0

        if args.command == "status":
            print_json(service.status())
            return 0

        if args.command == "dashboard":
            print_json(service.dashboard.get_dashboard(args.time_range).to_dict())
            return 0

        if args.command == "tick":
            job_ids = await service.scheduler.tick()
            return 0 if await run_jobs(service, job_ids) else 1

        if args.command == "trigger":
            if args.all:
                job_ids = await service.scheduler.trigger_all()
            else:
                job_ids = [await service.scheduler.trigger_source(args.source_id)]
            return 0 if await run_jobs(service, job_ids) else 1

        if args.command == "serve":
            if args.sources:
                service.seed(args.sources)
            await serve(
                service,
                host=args.host or config.api.host,
                port=args.port or config.api.port,
            )
            return 0

    return 0


def main(argv=None):
    """Main entry point."""
    parser, args = parse_args(argv)

    # Version check
    if args.version:
        from . import __version__
        print(f"grants-engine {__version__}")
        sys.exit(0)

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_CONFIG_ERROR)

    # Setup logging
    setup_logging(args.log_level, args.json_logs)
    logger = structlog.get_logger(__name__)

    try:
        config = load_config()
    except ConfigError as e:
        for error in e.errors:
            logger.error("invalid_configuration", error=error)
        sys.exit(EXIT_CONFIG_ERROR)

    # Run async main
    try:
        sys.exit(asyncio.run(main_async(args, config)))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except ConfigError as e:
        logger.error("invalid_configuration", error=e.message, errors=e.errors)
        sys.exit(EXIT_CONFIG_ERROR)
    except EngineError as e:
        logger.error("command_failed", error_type=e.code, error=e.message)
        sys.exit(1)
    except Exception as e:
        logger.exception("fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
