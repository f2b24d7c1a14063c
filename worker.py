#!/usr/bin/env python
"""
Integration Worker

Runs the bus consumers and the maintenance scheduler outside the API
process (start the API with WORKERS_ENABLED=false):
1. Dispatcher and amendment subscriptions on the event bus
2. Retention sweep, archival, compliance check, amendment expiry, alerts

Run with:
    python worker.py

Or with environment:
    BUS_WORKER_COUNT=8 python worker.py
"""

import asyncio
import logging
import signal
import sys

from ota_core.config import settings
from ota_core.container import ServiceContainer
from ota_core.database import create_tables
from ota_core.utils.logging_config import setup_logging

setup_logging(level=settings.log_level, json_format=settings.is_production)
logger = logging.getLogger("worker")

STATUS_INTERVAL = 60  # seconds


async def run_worker():
    """Main worker loop"""
    logger.info("=" * 50)
    logger.info("Starting Integration Worker")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Shutdown grace: {settings.shutdown_grace_seconds}s")
    logger.info("=" * 50)

    create_tables()
    services = ServiceContainer()

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await services.start(workers=True)
    try:
        while not stop_requested.is_set():
            try:
                await asyncio.wait_for(stop_requested.wait(), timeout=STATUS_INTERVAL)
            except asyncio.TimeoutError:
                depth = services.bus.queue_depth()
                if depth:
                    open_circuits = sum(1 for c in services.circuits.snapshot() if c["state"] != "closed")
                    logger.info(f"Queue depth: {depth} | Open circuits: {open_circuits}")
        logger.info("Received shutdown signal, draining in-flight deliveries...")
    finally:
        await services.stop()

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)
