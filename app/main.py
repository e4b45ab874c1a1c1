"""
Process Entry Point for budgetkeeper

Starts the collection store and the recurring scheduler and keeps them
running until the process is interrupted.

Run with:
    python -m app.main

The route layer (out of scope here) is expected to share the
LedgerService built by create_app_components() in this same process.
"""

import asyncio

import structlog

from budgetkeeper.audit import configure_logging
from budgetkeeper.config import get_settings, validate_all_settings
from budgetkeeper.orchestrator import create_app_components


logger = structlog.get_logger(__name__)


async def run() -> None:
    """Initialize the store, start the scheduler and wait for cancellation."""
    settings = get_settings()
    store, engine, scheduler, ledger = create_app_components(settings)

    await store.init_db()
    scheduler.start()
    logger.info(
        "budgetkeeper_started",
        data_dir=str(store.root),
        interval_seconds=scheduler.interval_seconds,
    )

    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.shutdown()
        await store.close()
        logger.info(
            "budgetkeeper_stopped",
            runs_completed=scheduler.runs_completed,
            ticks_skipped=scheduler.ticks_skipped,
        )


def main() -> None:
    checks = validate_all_settings()
    failed = [name for name, ok in checks.items() if ok is False]
    if failed:
        configure_logging()
        logger.error("invalid_settings", sections=failed, errors={
            name: checks[f"{name}_error"] for name in failed
        })
        raise SystemExit(1)

    configure_logging(get_settings().app.log_level)
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
