"""
Reconciliation background worker.

Sweeps recent pending orders against the processor every
``sweep_interval_seconds``, so payments whose webhook never arrived are
still applied.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from registration_payments.config import Settings, get_settings
from registration_payments.core.reconciliation import ReconciliationEngine
from registration_payments.monitoring.logging import setup_logging
from registration_payments.services import build_services

logger = structlog.get_logger(__name__)


async def run_pending_sweep(engine: ReconciliationEngine) -> None:
    """Run one sweep and log its totals."""
    logger.info("pending_sweep_run_started")

    result = await engine.sweep_pending()

    logger.info(
        "pending_sweep_run_completed",
        checked=result.checked,
        updated=result.updated,
        errors=result.errors,
    )
    if result.errors:
        logger.warning(
            "pending_sweep_errors_detected",
            errors=result.errors,
            order_ids=[r.order_id for r in result.results if r.outcome == "error"],
        )


async def start_reconciliation_worker(
    settings: Optional[Settings] = None, run_once: bool = False
) -> None:
    """
    Start the reconciliation worker.

    Args:
        settings: Application settings (read from the environment if omitted)
        run_once: Run a single sweep and exit
    """
    settings = settings or get_settings()
    setup_logging(settings)

    interval = settings.sweep_interval_seconds
    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    services = build_services(settings)
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_pending_sweep(services.reconciliation)
            except Exception as e:
                logger.error("pending_sweep_execution_error", error=str(e))
                # Continue running even if one sweep fails

            if run_once:
                break

            # Wait for the next run (with periodic checks for shutdown signal)
            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        await services.close()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Pending order reconciliation worker")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(run_once=args.once))


if __name__ == "__main__":
    main()
