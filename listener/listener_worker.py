"""
Listener Worker - per-workflow blockchain event subscription.

Runs inside its own OS process (spawned by ``core.supervisor``). One worker
watches one contract for one workflow:

    1. Receive {workflowDefinition, networkCatalog} from the supervisor pipe
    2. Resolve the Network, connect to Redis, build the ABI signature index
    3. Verify the HTTP RPC endpoint (chain id mismatch is only a warning)
    4. eth_subscribe("logs", {address}) over WebSocket, primary endpoint
       first, rotating to the fallback on failure
    5. Report {status: "listening", pid, chain} to the supervisor

Per incoming log (each in its own task):
    jitter -> drop reorged -> decode -> event name match -> dedup check ->
    dedup mark (SET NX) -> POST trigger

Exit codes:
    0  stopped by SIGTERM/SIGINT
    1  provider reconnect attempts exhausted
    2  bad payload, unknown network or Redis unreachable at boot
"""

from __future__ import annotations

import asyncio
import json
import os
import random
import signal
import sys
import time
import traceback
from multiprocessing.connection import Connection
from typing import Any

import psutil
import websockets
from dotenv import load_dotenv
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from config.loader import get_config
from core.coordination_store import CoordinationStore, CoordinationStoreError
from execution.trigger_client import TriggerClient
from listener.event_decoder import AbiEventDecoder, EventDecodeError, EventDecoder
from shared.constants import (
    DEFAULT_DRAIN_TIMEOUT_SECONDS,
    DEFAULT_MAX_JITTER_SECONDS,
    EXIT_BOOT_FAILURE,
    EXIT_OK,
    EXIT_PROVIDER_FAILURE,
    PAYLOAD_NETWORK_CATALOG,
    PAYLOAD_WORKFLOW_DEFINITION,
)
from shared.types import (
    Network,
    WorkerState,
    WorkerStatus,
    WorkflowDefinition,
    parse_network_catalog,
)
from tracker_logging.logger_manager import (
    log_data_entry,
    log_data_output,
    setup_module_logger,
)

_trace_counter: int = 0


def _generate_trace_id() -> str:
    """Lightweight trace ID: timestamp_ms-LW-pid-counter."""
    global _trace_counter
    _trace_counter += 1
    return f"{int(time.time() * 1000)}-LW-{os.getpid()}-{_trace_counter:06d}"


def worker_logger(workflow_id: str):
    return setup_module_logger(
        f"listener_worker.{workflow_id}",
        f"workflow_{workflow_id}.log",
        module_folder="Listener_Worker_Logs",
    )


class ListenerWorker:
    """Subscription loop and per-log pipeline for a single workflow."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        network: Network,
        store: CoordinationStore,
        trigger: TriggerClient,
        decoder: EventDecoder | None = None,
        status_conn: Connection | None = None,
    ) -> None:
        self._definition = definition
        self._network = network
        self._store = store
        self._trigger = trigger
        self._decoder = decoder or AbiEventDecoder(definition.trigger.parsed_abi())
        self._status_conn = status_conn

        cfg = get_config()
        timing_cfg = cfg.get_timing_config()
        listener_cfg = timing_cfg.get("listener", {})
        self._web3_cfg = timing_cfg.get("web3_connection", {})
        self._max_jitter = float(listener_cfg.get("max_jitter_seconds", DEFAULT_MAX_JITTER_SECONDS))
        self._drain_timeout = float(listener_cfg.get("drain_timeout_seconds", DEFAULT_DRAIN_TIMEOUT_SECONDS))
        self._verify_rpc = bool(listener_cfg.get("verify_rpc_on_boot", True))

        ws_cfg = cfg.get_websocket_config()
        conn_cfg = ws_cfg.get("connection", {})
        timeout_cfg = ws_cfg.get("timeouts", {})
        reconnect_cfg = ws_cfg.get("reconnection", {})
        self._max_attempts = int(conn_cfg.get("max_connection_attempts", 5))
        self._ping_interval = conn_cfg.get("ping_interval_seconds", 20)
        self._ping_timeout = conn_cfg.get("ping_timeout_seconds", 30)
        self._close_timeout = conn_cfg.get("close_timeout_seconds", 10)
        self._max_message_bytes = conn_cfg.get("max_message_bytes", 10 * 1024 * 1024)
        self._subscription_timeout = timeout_cfg.get("subscription_response_timeout_seconds", 15.0)
        self._message_timeout = timeout_cfg.get("message_receive_timeout_seconds", 60.0)
        self._reconnect_base = reconnect_cfg.get("base_delay_seconds", 2)
        self._reconnect_max = reconnect_cfg.get("max_delay_seconds", 60)
        self._reconnect_jitter = reconnect_cfg.get("jitter_max_seconds", 1.0)

        self._logger = worker_logger(definition.id)

        self._state = WorkerState.STARTING
        self._processing = 0
        self._listening_reported = False
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._jittering: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def workflow_id(self) -> str:
        return self._definition.id

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Supervisor messaging
    # ------------------------------------------------------------------

    def _report(self, status: WorkerStatus, **fields: Any) -> None:
        if self._status_conn is None:
            return
        message = {"status": status.value, "pid": os.getpid(), **fields}
        try:
            self._status_conn.send(message)
        except (OSError, ValueError) as exc:
            self._logger.warning("Could not report %s to supervisor: %s", status.value, exc)

    def _report_listening(self) -> None:
        self._state = WorkerState.LISTENING
        if self._listening_reported:
            return
        self._listening_reported = True
        self._report(WorkerStatus.LISTENING, chain=self._network.chain_id)
        rss_mb = psutil.Process().memory_info().rss / (1024 * 1024)
        self._logger.info(
            "Listening for %s on %s (chain %d) - memory: %.2f MB",
            self._definition.trigger.event_name,
            self._definition.trigger.contract_address,
            self._network.chain_id,
            rss_mb,
        )

    # ------------------------------------------------------------------
    # Per-log pipeline
    # ------------------------------------------------------------------

    def dispatch(self, log: dict[str, Any]) -> asyncio.Task:
        """Process a log concurrently; the task is tracked for shutdown."""
        task = asyncio.create_task(self.handle_log(log))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "Log task failed: %s\n%s",
                exc,
                "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            )

    async def _jitter(self) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._jittering.add(task)
        try:
            await asyncio.sleep(random.uniform(0, self._max_jitter))
        finally:
            if task is not None:
                self._jittering.discard(task)

    async def handle_log(self, log: dict[str, Any]) -> bool:
        """
        Run one log through the pipeline.

        Returns True if the execution trigger was called for this log.
        Duplicates, mismatched events and undecodable logs return False.
        """
        if self._max_jitter > 0:
            await self._jitter()

        if log.get("removed"):
            self._logger.info("Discarding removed log (reorg) tx=%s", log.get("transactionHash"))
            return False

        try:
            decoded = self._decoder.decode(log)
        except EventDecodeError as exc:
            self._logger.warning("Failed to decode log tx=%s: %s", log.get("transactionHash"), exc)
            return False
        if decoded is None:
            self._logger.debug("Log topic not in ABI - tx=%s", log.get("transactionHash"))
            return False

        if decoded.event_name != self._definition.trigger.event_name:
            return False

        workflow_id = self._definition.id
        tx_hash = decoded.transaction_hash
        if not tx_hash:
            self._logger.warning("Decoded %s without a transaction hash - skipping", decoded.event_name)
            return False

        if await self._store.is_transaction_marked(workflow_id, tx_hash):
            self._logger.info("Transaction %s already processed - skipping", tx_hash)
            return False
        if not await self._store.mark_transaction(workflow_id, tx_hash):
            self._logger.info("Transaction %s claimed by another listener - skipping", tx_hash)
            return False

        self._processing += 1
        self._state = WorkerState.PROCESSING
        try:
            payload = decoded.to_payload()
            trace_id = _generate_trace_id()
            log_data_entry(
                trace_id=trace_id,
                source_module="listener_worker",
                what=f"{decoded.event_name} matched for workflow {workflow_id}",
                why="Configured trigger event observed on chain",
                data_type="DecodedLog",
                data=payload,
                previous_stage="eth_subscribe",
            )
            self._logger.info(
                "Event %s matched in block %s tx %s - triggering workflow %s",
                decoded.event_name,
                decoded.block_number,
                tx_hash,
                workflow_id,
            )
            result = await self._trigger.execute_workflow(workflow_id, payload)
            log_data_output(
                trace_id=trace_id,
                source_module="listener_worker",
                what=f"Execution trigger for workflow {workflow_id}",
                why="Downstream execution requested",
                data_type="TriggerResult",
                data={"ok": result is not None, "response": result},
                next_stage="execution_service",
            )
        finally:
            self._processing -= 1
            if self._processing == 0 and self._state is WorkerState.PROCESSING:
                self._state = WorkerState.LISTENING
        return True

    # ------------------------------------------------------------------
    # Provider
    # ------------------------------------------------------------------

    async def verify_rpc(self) -> int | None:
        """
        Check the HTTP RPC endpoint answers and serves the expected chain.

        Returns the reported chain id, or None if no endpoint answered.
        Never fatal: the subscription endpoint is what the worker depends on.
        """
        endpoints = self._network.rpc_endpoints
        if not endpoints:
            return None

        max_retries = int(self._web3_cfg.get("max_retries", 3))
        retry_delay = float(self._web3_cfg.get("retry_delay_seconds", 2.0))

        for attempt in range(max_retries):
            url = endpoints[attempt % len(endpoints)]
            w3 = None
            try:
                w3 = AsyncWeb3(AsyncHTTPProvider(url))
                chain_id = await w3.eth.chain_id
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.warning(
                    "RPC check attempt %d/%d on %s failed: %s", attempt + 1, max_retries, url, exc
                )
                if attempt < max_retries - 1:
                    await asyncio.sleep(retry_delay * (2 ** attempt))
                continue
            finally:
                if w3 is not None:
                    await self._close_provider(w3)

            if chain_id != self._network.chain_id:
                self._logger.warning(
                    "RPC %s reports chain %d, workflow expects %d", url, chain_id, self._network.chain_id
                )
            else:
                self._logger.info("RPC %s connected (chain %d)", url, chain_id)
            return chain_id

        self._logger.warning("No RPC endpoint answered for chain %d", self._network.chain_id)
        return None

    async def _close_provider(self, w3: AsyncWeb3) -> None:
        try:
            await w3.provider.disconnect()
        except Exception as exc:
            self._logger.debug("Error closing RPC provider session: %s", exc)

    def _build_subscription_params(self) -> dict[str, Any]:
        address = self._definition.trigger.contract_address
        try:
            address = Web3.to_checksum_address(address)
        except ValueError:
            self._logger.warning("Contract address %r is not a valid address", address)
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", {"address": address}],
        }

    def _reconnect_delay(self, attempt: int) -> float:
        return min(
            self._reconnect_base * (2 ** attempt) + random.uniform(0, self._reconnect_jitter),
            self._reconnect_max,
        )

    async def subscribe(self) -> bool:
        """
        Hold the log subscription open, reconnecting on failure.

        Returns False once ``max_connection_attempts`` consecutive attempts
        fail, True if the loop ended because a stop was requested.
        """
        endpoints = self._network.subscription_endpoints
        retry_count = 0
        endpoint_index = 0

        while not self._stop_event.is_set() and retry_count < self._max_attempts:
            url = endpoints[endpoint_index % len(endpoints)]
            try:
                self._logger.info("[WEBSOCKET] Connecting to %s...", url)
                async with websockets.connect(
                    url,
                    ping_interval=self._ping_interval,
                    ping_timeout=self._ping_timeout,
                    close_timeout=self._close_timeout,
                    max_size=self._max_message_bytes,
                ) as ws:
                    await ws.send(json.dumps(self._build_subscription_params()))

                    try:
                        response = json.loads(
                            await asyncio.wait_for(ws.recv(), timeout=self._subscription_timeout)
                        )
                    except asyncio.TimeoutError:
                        raise ConnectionError("subscription response timed out")
                    if "error" in response:
                        raise ConnectionError(f"subscription rejected: {response['error']}")
                    self._logger.info("[WEBSOCKET] Subscribed. Subscription ID: %s", response.get("result"))

                    retry_count = 0
                    self._report_listening()

                    await self._receive_loop(ws)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                retry_count += 1
                endpoint_index += 1
                if self._stop_event.is_set() or retry_count >= self._max_attempts:
                    self._logger.error("[WEBSOCKET] %s failed: %s", url, exc)
                    continue
                delay = self._reconnect_delay(retry_count)
                self._logger.warning(
                    "[WEBSOCKET] %s failed: %s. Retry %d/%d in %.1fs",
                    url,
                    exc,
                    retry_count,
                    self._max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)

        if self._stop_event.is_set():
            return True
        self._logger.critical("[WEBSOCKET] Exhausted %d connection attempts", self._max_attempts)
        return False

    async def _receive_loop(self, ws: Any) -> None:
        while not self._stop_event.is_set():
            try:
                raw_message = await asyncio.wait_for(ws.recv(), timeout=self._message_timeout)
            except asyncio.TimeoutError:
                self._logger.debug("[WEBSOCKET] No message received, checking connection...")
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self._ping_timeout)
                continue

            try:
                message = json.loads(raw_message)
            except json.JSONDecodeError as exc:
                self._logger.warning("[WEBSOCKET] Invalid JSON message: %s", exc)
                continue

            if message.get("method") != "eth_subscription":
                continue
            log = message.get("params", {}).get("result")
            if log:
                self.dispatch(log)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            self._logger.warning("Stop requested for workflow %s", self._definition.id)
            self._stop_event.set()

    async def run(self) -> int:
        """Run until stopped or the provider is exhausted. Returns the process exit code."""
        if not self._network.subscription_endpoints:
            self._logger.error("Network %d has no WebSocket endpoint", self._network.chain_id)
            self._report(WorkerStatus.ERROR, error="no subscription endpoint")
            return EXIT_BOOT_FAILURE

        known_events = getattr(self._decoder, "event_names", None)
        if known_events is not None and self._definition.trigger.event_name not in known_events:
            self._logger.warning(
                "Event %s is not declared in the workflow ABI - no log will match",
                self._definition.trigger.event_name,
            )

        if self._verify_rpc:
            await self.verify_rpc()

        subscription = asyncio.create_task(self.subscribe())
        stop_waiter = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({subscription, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()
            if not subscription.done():
                subscription.cancel()
                try:
                    await subscription
                except asyncio.CancelledError:
                    pass
            await self.shutdown()

        if self._stop_event.is_set():
            return EXIT_OK
        if subscription.exception() is not None:
            error = str(subscription.exception())
        elif not subscription.result():
            error = "provider reconnect attempts exhausted"
        else:
            return EXIT_OK
        self._report(WorkerStatus.ERROR, error=error)
        return EXIT_PROVIDER_FAILURE

    async def shutdown(self) -> None:
        """Cancel logs still in their jitter delay, give issued triggers time to finish."""
        for task in list(self._jittering):
            task.cancel()

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self._drain_timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                self._logger.warning("Cancelled %d triggers after drain timeout", len(still_running))
                await asyncio.gather(*still_running, return_exceptions=True)

        self._state = WorkerState.STOPPED
        self._logger.info("Listener for workflow %s stopped", self._definition.id)


# ============================================================================
# PROCESS ENTRY POINT
# ============================================================================

def _send_error(conn: Connection, error: str) -> None:
    try:
        conn.send({"status": WorkerStatus.ERROR.value, "pid": os.getpid(), "error": error})
    except (OSError, ValueError):
        # Supervisor end already closed
        pass


async def _async_main(
    conn: Connection, definition: WorkflowDefinition, networks: dict[int, Network]
) -> int:
    logger = worker_logger(definition.id)

    network = networks.get(definition.trigger.chain_id) if definition.trigger.chain_id is not None else None
    if network is None:
        logger.error("Network %r not in catalog for workflow %s", definition.trigger.network, definition.id)
        _send_error(conn, f"unknown network {definition.trigger.network}")
        return EXIT_BOOT_FAILURE

    store = CoordinationStore.from_config()
    try:
        await store.ping()
    except CoordinationStoreError as exc:
        logger.critical("[INIT] %s", exc)
        _send_error(conn, str(exc))
        await store.close()
        return EXIT_BOOT_FAILURE

    trigger = TriggerClient()
    worker = ListenerWorker(definition, network, store, trigger, status_conn=conn)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.request_stop)

    try:
        return await worker.run()
    finally:
        await trigger.close()
        await store.close()


def run_listener_worker(conn: Connection) -> None:
    """
    Process target for a listener worker.

    Reads the {workflowDefinition, networkCatalog} payload from ``conn`` and
    exits with the worker's exit code.
    """
    load_dotenv()
    try:
        message = conn.recv()
        definition = WorkflowDefinition.from_dict(message[PAYLOAD_WORKFLOW_DEFINITION])
        networks = parse_network_catalog(message.get(PAYLOAD_NETWORK_CATALOG, {}))
    except (EOFError, KeyError, TypeError, ValueError) as exc:
        _send_error(conn, f"invalid worker payload: {exc}")
        sys.exit(EXIT_BOOT_FAILURE)

    try:
        exit_code = asyncio.run(_async_main(conn, definition, networks))
    except KeyboardInterrupt:
        exit_code = EXIT_OK
    sys.exit(exit_code)
