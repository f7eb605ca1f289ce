"""
Process Supervisor - one per Listener Worker.

Owns the OS process running ``listener.listener_worker.run_listener_worker``
for a single workflow:

    spawn ("spawn" context) -> send {workflowDefinition, networkCatalog}
    -> register ProcessEntry -> monitor task

The monitor task polls the process exit code and drains worker status
messages from the pipe. An exit that was not requested, or an ``error``
status, is a crash: the ProcessEntry is removed and the worker respawned
after ``min(base * 2^n, max)`` seconds, where ``n`` counts crashes since
the worker last reported ``listening``. A restart requested through
``stop(should_restart=True)`` respawns at once and is not counted as a crash.

Usage:
    supervisor = ProcessSupervisor(definition, networks, store, container_id)
    await supervisor.start()
    ...
    await supervisor.restart_with_definition(new_definition)
    await supervisor.stop()
"""

from __future__ import annotations

import asyncio
import multiprocessing
from multiprocessing.connection import Connection
from typing import Any, Callable

from config.loader import get_config
from core.coordination_store import CoordinationStore
from listener.listener_worker import run_listener_worker
from shared.constants import (
    DEFAULT_RESTART_BASE_DELAY_SECONDS,
    DEFAULT_RESTART_MAX_DELAY_SECONDS,
    DEFAULT_STOP_TIMEOUT_SECONDS,
    DEFAULT_SUPERVISOR_POLL_INTERVAL_SECONDS,
    PAYLOAD_NETWORK_CATALOG,
    PAYLOAD_WORKFLOW_DEFINITION,
)
from shared.types import Network, WorkerStatus, WorkflowDefinition
from tracker_logging.logger_manager import setup_module_logger


class SupervisorError(Exception):
    """Raised when a listener process cannot be spawned."""


class ProcessSupervisor:
    """Spawns, monitors and restarts the listener process for one workflow."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        networks: dict[int, Network],
        store: CoordinationStore,
        container_id: str,
        *,
        mp_context: Any = None,
        process_target: Callable[[Connection], None] = run_listener_worker,
    ) -> None:
        self._definition = definition
        self._networks = dict(networks)
        self._store = store
        self._container_id = container_id
        self._ctx = mp_context or multiprocessing.get_context("spawn")
        self._target = process_target

        supervisor_cfg = get_config().get_timing_config().get("supervisor", {})
        self._poll_interval = float(
            supervisor_cfg.get("poll_interval_seconds", DEFAULT_SUPERVISOR_POLL_INTERVAL_SECONDS)
        )
        self._stop_timeout = float(supervisor_cfg.get("stop_timeout_seconds", DEFAULT_STOP_TIMEOUT_SECONDS))
        self._restart_base = float(
            supervisor_cfg.get("restart_base_delay_seconds", DEFAULT_RESTART_BASE_DELAY_SECONDS)
        )
        self._restart_max = float(
            supervisor_cfg.get("restart_max_delay_seconds", DEFAULT_RESTART_MAX_DELAY_SECONDS)
        )

        self._logger = setup_module_logger("supervisor", "supervisor.log", module_folder="Supervisor_Logs")

        self._process: Any = None
        self._conn: Connection | None = None
        self._monitor_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._should_restart = True
        self._restart_requested = False
        self._last_status: WorkerStatus | None = None
        self._restart_count = 0
        self._consecutive_crashes = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def workflow_id(self) -> str:
        return self._definition.id

    @property
    def definition(self) -> WorkflowDefinition:
        return self._definition

    @property
    def network(self) -> Network | None:
        chain_id = self._definition.trigger.chain_id
        return self._networks.get(chain_id) if chain_id is not None else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def last_status(self) -> WorkerStatus | None:
        return self._last_status

    @property
    def restart_count(self) -> int:
        """Number of crash respawns since this supervisor was created."""
        return self._restart_count

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Spawn the listener and register its ProcessEntry.

        Raises:
            SupervisorError: the process could not be spawned.
        """
        async with self._lock:
            self._should_restart = True
            await self._spawn()

    async def stop(self, should_restart: bool = False) -> None:
        """
        Terminate the listener.

        With ``should_restart=False`` the monitor is cancelled and the
        ProcessEntry removed before returning. With ``should_restart=True``
        the monitor observes the exit and respawns the worker at once; a
        requested restart is not counted as a crash.
        """
        self._should_restart = should_restart
        self._restart_requested = should_restart
        async with self._lock:
            if not should_restart:
                await self._cancel_monitor()

            process = self._process
            if process is not None:
                await self._terminate(process)

            if not should_restart:
                self._close_conn()
                await self._store.remove_process(self._container_id, self.workflow_id)
                self._logger.info(
                    "Listener for workflow %s stopped (pid %s)",
                    self.workflow_id,
                    process.pid if process is not None else None,
                )

    async def restart_with_definition(
        self, definition: WorkflowDefinition, networks: dict[int, Network] | None = None
    ) -> None:
        """Stop the current listener and start a new one with ``definition``."""
        if definition.id != self.workflow_id:
            raise ValueError(f"cannot restart workflow {self.workflow_id} as {definition.id}")
        self._logger.info("Restarting workflow %s with updated configuration", self.workflow_id)
        await self.stop(should_restart=False)
        self._definition = definition
        if networks is not None:
            self._networks = dict(networks)
        self._consecutive_crashes = 0
        self._last_status = None
        await self.start()

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    def _payload(self) -> dict[str, Any]:
        return {
            PAYLOAD_WORKFLOW_DEFINITION: self._definition.to_dict(),
            PAYLOAD_NETWORK_CATALOG: [network.to_dict() for network in self._networks.values()],
        }

    async def _spawn(self) -> None:
        parent_conn, child_conn = self._ctx.Pipe()
        process = self._ctx.Process(
            target=self._target,
            args=(child_conn,),
            name=f"listener:{self.workflow_id}",
            daemon=True,
        )
        try:
            process.start()
            parent_conn.send(self._payload())
        except (OSError, RuntimeError, ValueError) as exc:
            parent_conn.close()
            raise SupervisorError(f"Failed to spawn listener for {self.workflow_id}: {exc}") from exc
        finally:
            child_conn.close()

        self._close_conn()
        self._process = process
        self._conn = parent_conn
        self._last_status = None

        await self._store.register_process(self._container_id, self.workflow_id, process.pid)
        self._logger.info("Started workflow %s with pid %d", self.workflow_id, process.pid)

        self._monitor_task = asyncio.create_task(self._monitor(process, parent_conn))

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def _monitor(self, process: Any, conn: Connection) -> None:
        while process.exitcode is None:
            self._drain_messages(process, conn)
            await asyncio.sleep(self._poll_interval)
        self._drain_messages(process, conn)

        if not self._should_restart:
            return

        requested = self._restart_requested
        self._restart_requested = False
        if requested:
            self._logger.info("Workflow %s listener (pid %s) stopped for restart", self.workflow_id, process.pid)
        else:
            self._logger.warning(
                "Workflow %s listener (pid %s) exited with code %s",
                self.workflow_id,
                process.pid,
                process.exitcode,
            )
        if self._conn is conn:
            self._close_conn()
        else:
            conn.close()
        await self._store.remove_process(self._container_id, self.workflow_id)
        await self._respawn(after_crash=not requested)

    async def _respawn(self, after_crash: bool = True) -> None:
        backoff = after_crash
        while self._should_restart:
            if backoff:
                delay = self._backoff_delay()
                self._consecutive_crashes += 1
                self._logger.warning("Respawning workflow %s in %.1fs", self.workflow_id, delay)
                await asyncio.sleep(delay)

            async with self._lock:
                if not self._should_restart:
                    return
                try:
                    await self._spawn()
                except SupervisorError as exc:
                    self._logger.error("%s", exc)
                    backoff = True
                    continue
                if after_crash:
                    self._restart_count += 1
                return

    def _backoff_delay(self) -> float:
        return min(self._restart_base * (2 ** self._consecutive_crashes), self._restart_max)

    def _drain_messages(self, process: Any, conn: Connection) -> None:
        try:
            while conn.poll():
                self._handle_message(process, conn.recv())
        except (EOFError, OSError):
            # Worker end closed; exit code tells the rest
            return

    def _handle_message(self, process: Any, message: Any) -> None:
        if not isinstance(message, dict):
            self._logger.warning("Unexpected message from workflow %s: %r", self.workflow_id, message)
            return

        status = message.get("status")
        if status == WorkerStatus.LISTENING.value:
            self._last_status = WorkerStatus.LISTENING
            self._consecutive_crashes = 0
            self._logger.info(
                "Workflow %s listening on chain %s (pid %s)",
                self.workflow_id,
                message.get("chain"),
                message.get("pid"),
            )
        elif status == WorkerStatus.ERROR.value:
            self._last_status = WorkerStatus.ERROR
            self._logger.warning(
                "Workflow %s reported error: %s - terminating (pid %s)",
                self.workflow_id,
                message.get("error"),
                message.get("pid"),
            )
            if process.exitcode is None:
                process.terminate()
        else:
            self._logger.warning("Unknown status from workflow %s: %r", self.workflow_id, message)

    # ------------------------------------------------------------------
    # Teardown helpers
    # ------------------------------------------------------------------

    async def _cancel_monitor(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _terminate(self, process: Any) -> None:
        if process.exitcode is not None:
            return
        process.terminate()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._stop_timeout
        while process.exitcode is None and loop.time() < deadline:
            await asyncio.sleep(min(self._poll_interval, 0.1))

        if process.exitcode is None:
            self._logger.warning(
                "Workflow %s (pid %s) ignored SIGTERM for %.0fs - killing",
                self.workflow_id,
                process.pid,
                self._stop_timeout,
            )
            process.kill()
            await asyncio.to_thread(process.join, self._stop_timeout)

    def _close_conn(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
