"""
Stale payment expiry worker.

Runs the expiry sweep on a fixed interval. Payments the sweep could not
resolve (gateway down, order busy) stay pending and are retried on the
next run.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from enrollment_checkout.container import CheckoutContainer, build_container
from enrollment_checkout.core.orchestrator import CheckoutOrchestrator, ExpirySummary
from enrollment_checkout.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_expiry_sweep(orchestrator: CheckoutOrchestrator) -> ExpirySummary:
    """Run one sweep and log its outcome."""
    logger.info("expiry_sweep_started")
    summary = await orchestrator.expire_stale_payments()

    if summary.errors:
        logger.warning(
            "expiry_sweep_left_payments_pending",
            payment_ids=summary.errors,
            count=len(summary.errors),
        )
    logger.info("expiry_sweep_completed", **summary.to_dict())
    return summary


async def start_expiry_worker(
    interval_seconds: int = 300,
    container: Optional[CheckoutContainer] = None,
    once: bool = False,
) -> None:
    """
    Start the expiry worker.

    Args:
        interval_seconds: Pause between sweeps
        container: Components to use (built from settings when omitted)
        once: Run a single sweep and return
    """
    owned = container is None
    container = container or build_container()
    await container.startup()

    logger.info("expiry_worker_starting", interval_seconds=interval_seconds, once=once)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("expiry_worker_shutdown_signal_received", signal=sig)
        running = False

    if not once:
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_expiry_sweep(container.orchestrator)
            except Exception as e:
                logger.error("expiry_sweep_error", error=str(e))
                # Keep running; the next sweep retries
                if once:
                    raise

            if once:
                break

            # Sleep in short steps so a shutdown signal is noticed quickly
            remaining = interval_seconds
            while remaining > 0 and running:
                step = min(remaining, 5)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        if owned:
            await container.close()
        logger.info("expiry_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Stale payment expiry worker")
    parser.add_argument(
        "--interval", type=int, default=300, help="Seconds between sweeps"
    )
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(start_expiry_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
