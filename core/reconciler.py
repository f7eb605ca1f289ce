"""
Reconciliation Loop for the SC Event Tracker.

Every ``reconciliation.interval_seconds`` the container compares the desired
set of workflows (directory service) with the listeners it runs and with the
ownership records of other containers in Redis, then converges:

    0. refresh own heartbeat and registration (re-adding anything a peer
       pruned), prune containers whose heartbeat expired
    1. fetch desired workflows + network catalog
    2. stop local listeners whose workflow is no longer desired
    3. per desired workflow: skip / yield / keep / restart / start
    4. record per-workflow errors and keep going

Ownership conflicts between containers are settled deterministically: when
two containers both run a workflow, the one with the lexicographically
smaller container id keeps it and the other stops its listener.

Passes never overlap within one container.
"""

from __future__ import annotations

import asyncio
import traceback
from typing import Callable

from config.loader import get_config
from core.coordination_store import CoordinationStore
from core.supervisor import ProcessSupervisor
from execution.directory_client import DirectoryClient
from shared.constants import DEFAULT_RECONCILIATION_INTERVAL_SECONDS
from shared.types import Network, ReconcileReport, WorkflowDefinition
from tracker_logging.logger_manager import setup_module_logger

SupervisorFactory = Callable[[WorkflowDefinition, dict[int, Network]], ProcessSupervisor]


class Reconciler:
    """Converges this container's listeners onto the directory's desired state."""

    def __init__(
        self,
        store: CoordinationStore,
        directory: DirectoryClient,
        container_id: str,
        supervisor_factory: SupervisorFactory | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._container_id = container_id
        self._factory = supervisor_factory or self._default_factory

        reconciliation_cfg = get_config().get_timing_config().get("reconciliation", {})
        self._interval = float(
            reconciliation_cfg.get("interval_seconds", DEFAULT_RECONCILIATION_INTERVAL_SECONDS)
        )
        self._teardown_on_directory_failure = bool(
            reconciliation_cfg.get("teardown_on_directory_failure", False)
        )

        self._supervisors: dict[str, ProcessSupervisor] = {}
        self._lock = asyncio.Lock()
        self._running: bool = False
        self._pass_count: int = 0

        self._logger = setup_module_logger("reconciler", "reconciler.log", module_folder="Reconciler_Logs")

    def _default_factory(
        self, definition: WorkflowDefinition, networks: dict[int, Network]
    ) -> ProcessSupervisor:
        return ProcessSupervisor(definition, networks, self._store, self._container_id)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def supervisors(self) -> dict[str, ProcessSupervisor]:
        return dict(self._supervisors)

    @property
    def interval(self) -> float:
        return self._interval

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Reconcile now and then every interval. Launch as an asyncio.Task."""
        self._running = True
        self._logger.info(
            "Reconciliation loop started for container %s (every %.0fs)",
            self._container_id,
            self._interval,
        )
        try:
            while self._running:
                try:
                    await self.reconcile_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._logger.error(
                        "Reconciliation pass failed: %s\n%s", exc, traceback.format_exc()
                    )
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            self._logger.info("Reconciliation loop cancelled")
        finally:
            self._running = False

    def stop(self) -> None:
        """Signal the run loop to stop after the current pass."""
        self._running = False

    async def shutdown(self) -> None:
        """Stop every local listener without respawn."""
        async with self._lock:
            supervisors = list(self._supervisors.values())
            self._supervisors.clear()
            results = await asyncio.gather(
                *(supervisor.stop(should_restart=False) for supervisor in supervisors),
                return_exceptions=True,
            )
        for supervisor, result in zip(supervisors, results):
            if isinstance(result, BaseException):
                self._logger.error("Error stopping workflow %s: %s", supervisor.workflow_id, result)
        self._logger.info("Stopped %d local listeners", len(supervisors))

    # ------------------------------------------------------------------
    # Single pass
    # ------------------------------------------------------------------

    async def reconcile_once(self) -> ReconcileReport:
        async with self._lock:
            self._pass_count += 1
            report = ReconcileReport()

            await self._store.ensure_container(self._container_id)
            await self._restore_process_entries()
            pruned = await self._store.prune_dead_containers(self._container_id)
            if pruned:
                self._logger.warning("Pruned dead containers: %s", ", ".join(pruned))

            snapshot = await self._directory.fetch_active_workflows()
            if not snapshot.ok:
                if not self._teardown_on_directory_failure:
                    self._logger.error("Directory unavailable - pass %d aborted", self._pass_count)
                    report.aborted = True
                    return report
                self._logger.error("Directory unavailable - tearing down all local listeners")

            desired: dict[str, WorkflowDefinition] = {}
            for definition in snapshot.enabled_workflows:
                desired.setdefault(definition.id, definition)

            await self._remove_excess(desired, report)

            for definition in desired.values():
                try:
                    await self._converge(definition, snapshot.networks, report)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._logger.error(
                        "Error reconciling workflow %s: %s\n%s",
                        definition.id,
                        exc,
                        traceback.format_exc(),
                    )
                    report.errors[definition.id] = str(exc)
                await self._store.touch_container(self._container_id)

            log = self._logger.info if report.has_actions or report.errors else self._logger.debug
            log("Pass %d: %s", self._pass_count, report.summary())
            return report

    async def _remove_excess(self, desired: dict[str, WorkflowDefinition], report: ReconcileReport) -> None:
        for workflow_id in list(self._supervisors):
            if workflow_id in desired:
                continue
            self._logger.info("Workflow %s no longer active - stopping listener", workflow_id)
            try:
                await self._stop_local(workflow_id, report)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("Error stopping workflow %s: %s", workflow_id, exc)
                report.errors[workflow_id] = str(exc)
            await self._store.touch_container(self._container_id)

        # Entries for this container with no local supervisor behind them
        for workflow_id in await self._store.list_processes_for_container(self._container_id):
            if workflow_id not in self._supervisors:
                self._logger.warning("Removing orphaned process entry for workflow %s", workflow_id)
                await self._store.remove_process(self._container_id, workflow_id)

    async def _restore_process_entries(self) -> None:
        """Re-register running listeners whose ProcessEntry a peer pruned."""
        for workflow_id, supervisor in self._supervisors.items():
            if not supervisor.is_alive or supervisor.pid is None:
                continue
            if await self._store.get_process(self._container_id, workflow_id) is not None:
                continue
            self._logger.warning("Process entry for running workflow %s missing - re-registering", workflow_id)
            await self._store.register_process(self._container_id, workflow_id, supervisor.pid)

    async def _stop_local(self, workflow_id: str, report: ReconcileReport) -> None:
        # Stays tracked if stop() fails so a later pass can retry
        await self._supervisors[workflow_id].stop(should_restart=False)
        del self._supervisors[workflow_id]
        report.stopped.append(workflow_id)

    async def _converge(
        self,
        definition: WorkflowDefinition,
        networks: dict[int, Network],
        report: ReconcileReport,
    ) -> None:
        workflow_id = definition.id
        local = self._supervisors.get(workflow_id)

        owners = await self._store.get_workflow_owners(workflow_id, self._container_id)
        if owners:
            if local is None:
                self._logger.debug("Workflow %s owned by %s - skipping", workflow_id, ", ".join(owners))
                report.skipped.append(workflow_id)
                return
            winner = min(owners)
            if winner < self._container_id:
                self._logger.warning(
                    "Workflow %s also owned by %s - yielding to lower container id",
                    workflow_id,
                    winner,
                )
                await self._stop_local(workflow_id, report)
                return

        chain_id = definition.trigger.chain_id
        network = networks.get(chain_id) if chain_id is not None else None

        if local is not None:
            changes = local.definition.config_changes(definition)
            if not changes and network is not None and local.network != network:
                changes = ["network_endpoints"]

            if changes:
                if network is None:
                    self._logger.error(
                        "Workflow %s changed (%s) but network %r is not in the catalog - keeping current listener",
                        workflow_id,
                        ", ".join(changes),
                        definition.trigger.network,
                    )
                    report.skipped.append(workflow_id)
                    return
                self._logger.info("Workflow %s configuration changed: %s", workflow_id, ", ".join(changes))
                await local.restart_with_definition(definition, networks)
                report.restarted.append(workflow_id)
                return

            if local.is_alive:
                return

            self._logger.warning("Workflow %s listener is not running - starting fresh", workflow_id)
            await local.stop(should_restart=False)
            del self._supervisors[workflow_id]

        if network is None:
            self._logger.error(
                "Network %r for workflow %s not found in catalog - skipping",
                definition.trigger.network,
                workflow_id,
            )
            report.skipped.append(workflow_id)
            return

        supervisor = self._factory(definition, networks)
        await supervisor.start()
        self._supervisors[workflow_id] = supervisor
        report.started.append(workflow_id)
