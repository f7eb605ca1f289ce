"""
SC Event Tracker - Main Entrypoint.

One container of the tracker fleet. A single asyncio event loop drives:
    1. Reconciler     - periodic convergence of local listeners onto the
                        directory's active workflows
    2. Supervisors    - one monitor task per listener process

Each workflow's blockchain subscription runs in its own OS process
(``listener.listener_worker``); containers coordinate only through Redis.

Exit codes:
    0  clean shutdown (SIGINT / SIGTERM)
    1  configuration invalid or Redis unreachable at boot

Usage:
    python main.py
"""

from __future__ import annotations

import asyncio
import signal
import socket
import sys
import uuid

from dotenv import load_dotenv

from config.loader import get_config
from config.validate import ConfigValidationError, validate_all_configs
from tracker_logging.logger_manager import create_module_log_directories, setup_module_logger

# ---------------------------------------------------------------------------
# Module logger
# ---------------------------------------------------------------------------
_logger = setup_module_logger("main", "main.log", module_folder="Main_Logs")


def generate_container_id() -> str:
    """Unique per process start; never reused."""
    return f"{socket.gethostname()}-{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(container_id: str, environment: str, redis_url: str, service_url: str, interval: float) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("SC Event Tracker starting")
    _logger.info("=" * 60)
    _logger.info("  container_id    : %s", container_id)
    _logger.info("  environment     : %s", environment)
    _logger.info("  redis           : %s", redis_url.split("@")[-1])
    _logger.info("  service_url     : %s", service_url)
    _logger.info("  interval        : %.0fs", interval)
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Task done callback - detect unhandled exceptions
# ---------------------------------------------------------------------------


def _task_done_callback(
    task: asyncio.Task[None],
    shutdown_event: asyncio.Event,
) -> None:
    """Called when the reconciler task finishes (normally or with error)."""
    try:
        exc = task.exception()
    except asyncio.CancelledError:
        _logger.info("Task %s cancelled", task.get_name())
        return

    if exc is not None:
        _logger.critical(
            "Task %s failed with unhandled exception: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
        shutdown_event.set()


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> None:
    """Register the container, run the reconciler until signalled, then clean up."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    create_module_log_directories()

    cfg = get_config()
    container_id = generate_container_id()

    from core.coordination_store import CoordinationStore, CoordinationStoreError
    from core.reconciler import Reconciler
    from execution.directory_client import DirectoryClient

    store = CoordinationStore.from_config()
    reconciler_interval = float(cfg.get_timing_config()["reconciliation"]["interval_seconds"])
    _log_banner(
        container_id,
        cfg.get_environment(),
        cfg.get_redis_config()["redis_url"],
        cfg.get_services_config()["service_url"],
        reconciler_interval,
    )

    # ------------------------------------------------------------------
    # 2. Coordination store (fatal if unreachable)
    # ------------------------------------------------------------------
    try:
        await store.ping()
    except CoordinationStoreError as exc:
        _logger.critical("%s", exc)
        await store.close()
        sys.exit(1)

    await store.remove_container(container_id)
    await store.register_container(container_id)

    directory = DirectoryClient()
    reconciler = Reconciler(store, directory, container_id)

    # ------------------------------------------------------------------
    # 3. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s - initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 4. Launch reconciliation loop
    # ------------------------------------------------------------------
    task_reconciler = asyncio.create_task(reconciler.run(), name="reconciler")
    task_reconciler.add_done_callback(lambda done_task: _task_done_callback(done_task, shutdown_event))

    _logger.info("Reconciler launched for container %s", container_id)

    # ------------------------------------------------------------------
    # 5. Wait for shutdown signal, then stop listeners and deregister
    # ------------------------------------------------------------------
    try:
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down - stopping reconciler and listeners")

        reconciler.stop()
        if not task_reconciler.done():
            task_reconciler.cancel()
        results = await asyncio.gather(task_reconciler, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                _logger.error("Task %s exited with error: %s", task_reconciler.get_name(), result)

        await reconciler.shutdown()
        await store.remove_container(container_id)

        # Cleanup resources
        await directory.close()
        await store.close()
        _logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
