#!/usr/bin/env python3
"""
Report Queue worker.

Drains `report_queue` by handing each job to its registered reporter, then
sleeps until the next job is due (earliest retry_after), capped at
WORKER_IDLE_SECONDS so jobs enqueued by the web processes are picked up.

Reporters are registered on the engine's HookRegistry by whatever module
WORKER_HOOKS_MODULE names (it must expose `register(hooks)`).
"""
import importlib
import logging
import os
import signal
import sys
import time

# Ensure project root is in path
sys.path.append(os.getcwd())

from app import create_app
from services.conversions import get_engine

logger = logging.getLogger("worker")

IDLE_SECONDS = float(os.environ.get("WORKER_IDLE_SECONDS", "5"))

# Graceful Shutdown
SHUTDOWN = False


def handle_sigterm(signum, frame):
    global SHUTDOWN
    logger.info("Received shutdown signal. Finishing current batch...")
    SHUTDOWN = True


def load_hooks(engine):
    module_name = os.environ.get("WORKER_HOOKS_MODULE", "").strip()
    if not module_name:
        logger.warning("WORKER_HOOKS_MODULE not set; jobs for unregistered reporters will fail.")
        return
    module = importlib.import_module(module_name)
    module.register(engine.hooks)
    logger.info(f"Loaded reporter hooks from {module_name}: {sorted(engine.hooks.reporters)}")


def run_once(engine):
    """One drain pass; returns seconds to sleep before the next one."""
    scheduler = engine.scheduler
    if hasattr(scheduler, "clear"):
        scheduler.clear()

    next_run = engine.processor.process()
    if next_run is None:
        return IDLE_SECONDS
    if hasattr(scheduler, "seconds_until_wakeup"):
        return scheduler.seconds_until_wakeup(IDLE_SECONDS)
    return IDLE_SECONDS


def run_worker():
    app = create_app({"AD_ATTR_QUEUE_RUNNER": "worker"})
    engine = get_engine(app)
    load_hooks(engine)

    logger.info("Worker Started. Polling report_queue...")
    while not SHUTDOWN:
        # Fresh app context per pass so the DB connection is returned each time
        with app.app_context():
            try:
                delay = run_once(engine)
            except Exception as e:
                logger.error(f"Worker Loop Error: {e}", exc_info=True)
                delay = IDLE_SECONDS  # Brief pause on crash loop

        # Sleep in short slices so SIGTERM is honoured quickly
        deadline = time.monotonic() + delay
        while not SHUTDOWN and time.monotonic() < deadline:
            time.sleep(min(0.5, max(0.0, deadline - time.monotonic())))

    logger.info("Worker Stopped.")


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, handle_sigterm)
    signal.signal(signal.SIGINT, handle_sigterm)

    from scripts.wait_for_db import main as wait_main
    if wait_main() != 0:
        logger.critical("DB Not Reachable. Worker exiting.")
        sys.exit(1)

    run_worker()
