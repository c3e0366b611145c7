#!/usr/bin/env python3
"""
Event System CLI.

Primary entry point for all event system operations.
Use --service to select what to run.

Usage:
    python cli.py --help
    python cli.py --service worker --verbose
    python cli.py --service stats
    python cli.py --service init-db
    python cli.py --service config
    python cli.py --service health --debug
    python cli.py --service test --test-type unit
"""

import asyncio
import signal
import subprocess
import sys
from pathlib import Path

import click

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from modules.backend.core.logging import bind_source, get_logger, setup_logging


def validate_project_root() -> Path:
    """Validate that we're running from the project root."""
    if not (PROJECT_ROOT / ".project_root").exists():
        click.echo(
            click.style("Error: .project_root not found. Run from project root.", fg="red"),
            err=True,
        )
        sys.exit(1)
    return PROJECT_ROOT


@click.command()
@click.option(
    "--service", "-s",
    type=click.Choice(["worker", "stats", "init-db", "config", "health", "test", "info"]),
    default="info",
    help="Service or command to run.",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Enable verbose output (INFO level logging).",
)
@click.option(
    "--debug", "-d",
    is_flag=True,
    help="Enable debug output (DEBUG level logging).",
)
@click.option(
    "--once",
    is_flag=True,
    help="Run a single outbox poll cycle and exit (worker only).",
)
@click.option(
    "--limit",
    default=10,
    type=int,
    help="Number of recent dead letters to list (stats only).",
)
@click.option(
    "--test-type",
    type=click.Choice(["all", "unit", "integration"]),
    default="all",
    help="Test type to run.",
)
@click.option(
    "--coverage",
    is_flag=True,
    help="Run tests with coverage.",
)
def main(
    service: str,
    verbose: bool,
    debug: bool,
    once: bool,
    limit: int,
    test_type: str,
    coverage: bool,
) -> None:
    """
    Event System CLI.

    Use --service to select what to run.

    \b
    Examples:
        python cli.py --service worker --verbose
        python cli.py --service worker --once --debug
        python cli.py --service stats --limit 20
        python cli.py --service init-db
        python cli.py --service config
        python cli.py --service health
        python cli.py --service test --test-type unit --coverage
        python cli.py --service info
    """
    validate_project_root()

    if debug:
        log_level = "DEBUG"
    elif verbose:
        log_level = "INFO"
    else:
        log_level = "WARNING"

    setup_logging(level=log_level, format_type="console")

    bind_source("cli")

    logger = get_logger(__name__)

    logger.debug("CLI invoked", extra={"service": service, "log_level": log_level})

    if service == "worker":
        run_worker(logger, once)
    elif service == "stats":
        show_stats(logger, limit)
    elif service == "init-db":
        init_db(logger)
    elif service == "config":
        show_config(logger)
    elif service == "health":
        check_health(logger)
    elif service == "test":
        run_tests(logger, test_type, coverage)
    elif service == "info":
        show_info(logger)


def run_worker(logger, once: bool) -> None:
    """Start the outbox worker."""
    from modules.backend.events.config import get_event_config

    config = get_event_config()
    if not config.enabled:
        click.echo(
            click.style("Error: event system is disabled (EVENT_ENABLED=false).", fg="red"),
            err=True,
        )
        sys.exit(1)

    logger.info(
        "Starting outbox worker",
        extra={"polling_interval": config.outbox_polling_interval, "once": once},
    )

    if once:
        completed = asyncio.run(_run_worker_once())
        click.echo(f"Processed {completed} event(s).")
        return

    click.echo(f"Starting outbox worker (polling every {config.outbox_polling_interval}s)")
    click.echo("Press Ctrl+C to stop\n")

    try:
        asyncio.run(_run_worker_forever(logger))
    except KeyboardInterrupt:
        logger.info("Worker stopped")


async def _run_worker_once() -> int:
    from modules.backend.core.database import dispose_engine
    from modules.backend.events.broker import create_event_worker

    worker = create_event_worker()
    try:
        return await worker.run_once(sweep_stuck=True)
    finally:
        await dispose_engine()


async def _run_worker_forever(logger) -> None:
    """Run the worker until SIGINT or SIGTERM."""
    from modules.backend.core.database import dispose_engine
    from modules.backend.events.broker import create_event_worker

    worker = create_event_worker()
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await worker.start()
    try:
        await stop_requested.wait()
        logger.info("Received shutdown signal")
    finally:
        await worker.stop()
        await dispose_engine()


def show_stats(logger, limit: int) -> None:
    """Display outbox status counts and recent dead letters."""
    try:
        counts, dead_letter_count, dead_letters = asyncio.run(_load_stats(limit))
    except Exception as e:
        logger.error("Failed to load outbox statistics", extra={"error": str(e)})
        click.echo(click.style(f"Error loading statistics: {e}", fg="red"), err=True)
        sys.exit(1)

    click.echo("Outbox:")
    click.echo("-" * 40)
    for status in ("pending", "processing", "completed", "failed"):
        click.echo(f"  {status:<12} {counts.get(status, 0)}")

    click.echo(f"\nDead letters: {dead_letter_count}")
    click.echo("-" * 40)
    for record in dead_letters:
        click.echo(
            f"  {record.failed_at.isoformat()}  {record.event_name}  "
            f"retries={record.retry_count}  {record.failure_reason}"
        )

    logger.info("Statistics displayed successfully")


async def _load_stats(limit: int):
    from modules.backend.core.database import dispose_engine, get_session_factory
    from modules.backend.events.outbox import Outbox

    outbox = Outbox(get_session_factory())
    try:
        counts = await outbox.get_status_counts()
        dead_letter_count = await outbox.count_dead_letters()
        dead_letters = await outbox.get_dead_letters(limit)
    finally:
        await dispose_engine()
    return counts, dead_letter_count, dead_letters


def init_db(logger) -> None:
    """Create the event system tables."""
    from modules.backend.core.database import dispose_engine, init_event_tables

    async def _init() -> None:
        try:
            await init_event_tables()
        finally:
            await dispose_engine()

    try:
        asyncio.run(_init())
    except Exception as e:
        logger.error("Failed to create event tables", extra={"error": str(e)})
        click.echo(click.style(f"Error creating tables: {e}", fg="red"), err=True)
        sys.exit(1)

    click.echo(click.style("Event tables created.", fg="green"))


def show_config(logger) -> None:
    """Display loaded configuration."""
    click.echo("Configuration:\n")

    try:
        from modules.backend.core.config import get_app_config, redact_database_url
        from modules.backend.events.config import get_event_config

        app_config = get_app_config()

        click.echo("Application Settings (from YAML):")
        click.echo("-" * 40)
        for key, value in app_config.application.model_dump().items():
            click.echo(f"  {key}: {value}")

        click.echo("\nDatabase Settings (from YAML):")
        click.echo("-" * 40)
        for key, value in app_config.database.model_dump().items():
            click.echo(f"  {key}: {value}")
        click.echo(f"  url: {redact_database_url()}")

        click.echo("\nEvent Settings (from EVENT_* environment):")
        click.echo("-" * 40)
        for key, value in get_event_config().model_dump().items():
            if isinstance(value, dict):
                click.echo(f"  {key}:")
                for k, v in value.items():
                    click.echo(f"    {k}: {v}")
            else:
                click.echo(f"  {key}: {value}")

        logger.info("Configuration displayed successfully")

    except Exception as e:
        logger.error("Failed to load configuration", extra={"error": str(e)})
        click.echo(click.style(f"Error loading configuration: {e}", fg="red"))
        sys.exit(1)


def check_health(logger) -> None:
    """Check configuration, handler registration and database connectivity."""
    click.echo("Checking event system health...\n")

    checks = []

    try:
        from modules.backend.core.config import get_app_config
        app_name = get_app_config().application.name
        checks.append(("YAML configuration", True, f"App: {app_name}"))
    except Exception as e:
        checks.append(("YAML configuration", False, str(e)))
        logger.error("Configuration failed", extra={"error": str(e)})

    try:
        from modules.backend.events.config import get_event_config
        enabled = get_event_config().enabled
        checks.append(("Event configuration", True, f"Enabled: {enabled}"))
    except Exception as e:
        checks.append(("Event configuration", False, str(e)))
        logger.error("Event configuration failed", extra={"error": str(e)})

    try:
        from modules.backend.events.bootstrap import bootstrap, collect_module_handlers
        from modules.backend.events.registry import EventRegistry

        registry = EventRegistry()
        result = bootstrap(collect_module_handlers(_NullResponder()), registry)
        checks.append((
            "Handler registration",
            result.failed == 0,
            f"{result.registered} registered, {result.failed} failed",
        ))
    except Exception as e:
        checks.append(("Handler registration", False, str(e)))
        logger.error("Handler registration failed", extra={"error": str(e)})

    try:
        from modules.backend.core.config import redact_database_url

        asyncio.run(_check_database())
        checks.append(("Database connection", True, redact_database_url()))
    except Exception as e:
        checks.append(("Database connection", False, str(e)))
        logger.error("Database connection failed", extra={"error": str(e)})

    click.echo("Health Check Results:")
    click.echo("-" * 50)

    all_passed = True
    for name, passed, detail in checks:
        status = click.style("✓ PASS", fg="green") if passed else click.style("✗ FAIL", fg="red")
        detail_str = f" ({detail})" if detail else ""
        click.echo(f"  {status}  {name}{detail_str}")
        if not passed:
            all_passed = False

    click.echo("-" * 50)

    if all_passed:
        click.echo(click.style("\nAll checks passed!", fg="green"))
    else:
        click.echo(click.style("\nSome checks failed. See details above.", fg="yellow"))
        sys.exit(1)


class _NullResponder:
    """Stands in for the bus when only registration is being checked."""

    def respond(self, correlation_id: str, response: object) -> None:
        pass


async def _check_database() -> None:
    from sqlalchemy import text

    from modules.backend.core.database import dispose_engine, get_engine

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    finally:
        await dispose_engine()


def run_tests(logger, test_type: str, coverage: bool) -> None:
    """Run the test suite."""
    logger.info("Running tests", extra={"type": test_type, "coverage": coverage})

    cmd = [sys.executable, "-m", "pytest"]

    if test_type == "unit":
        cmd.append("tests/unit")
    elif test_type == "integration":
        cmd.append("tests/integration")
    else:
        cmd.append("tests/")

    cmd.append("-v")

    if coverage:
        cmd.extend(["--cov=modules/backend", "--cov-report=term-missing"])

    click.echo(f"Running: {' '.join(cmd)}\n")

    try:
        result = subprocess.run(cmd)
        sys.exit(result.returncode)
    except FileNotFoundError:
        logger.error("pytest not found. Install with: pip install -e '.[test]'")
        sys.exit(1)


def show_info(logger) -> None:
    """Display application information."""
    click.echo("Inter-module Event System")
    click.echo("=" * 40)

    try:
        from modules.backend.core.config import get_app_config
        app_config = get_app_config()
        click.echo(f"Name: {app_config.application.name}")
        click.echo(f"Version: {app_config.application.version}")
        click.echo(f"Description: {app_config.application.description}")
    except Exception as e:
        logger.error(
            "Failed to load application configuration",
            extra={"error": str(e)},
        )
        click.echo(
            click.style(
                "Error: Could not load application.yaml configuration.",
                fg="red",
            ),
            err=True,
        )
        sys.exit(1)

    click.echo()
    click.echo("Services (--service):")
    click.echo("  worker         Outbox worker (delivers stored events)")
    click.echo("  stats          Outbox status counts and dead letters")
    click.echo("  init-db        Create the event tables")
    click.echo("  config         Display configuration")
    click.echo("  health         Check configuration, handlers and database")
    click.echo("  test           Run test suite")
    click.echo("  info           Show this information")
    click.echo()
    click.echo("Options:")
    click.echo("  --verbose, -v  Enable INFO level logging")
    click.echo("  --debug, -d    Enable DEBUG level logging")
    click.echo("  --once         Single worker poll cycle")
    click.echo()
    click.echo("Examples:")
    click.echo("  python cli.py --service init-db")
    click.echo("  python cli.py --service worker --verbose")
    click.echo("  python cli.py --service stats --limit 20")
    click.echo("  python cli.py --service test --test-type unit --coverage")

    logger.debug("Info displayed")


if __name__ == "__main__":
    main()
