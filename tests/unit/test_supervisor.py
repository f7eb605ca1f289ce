"""
Unit tests for core/supervisor.py.

Tests verify:
- start() spawns with the workflow payload and registers the ProcessEntry
- A crashed worker is respawned by the supervisor itself with backoff
- Every superseded parent pipe is closed on respawn
- An ``error`` status terminates the worker, which is then respawned
- A ``listening`` status resets the crash counter
- stop() removes the ProcessEntry and never respawns
- stop(should_restart=True) respawns at once and is not counted as a crash
- SIGTERM is escalated to SIGKILL after the stop timeout
- restart_with_definition() replaces the running worker

Mock strategy: a fake multiprocessing context whose processes and pipes are
driven by the test; CoordinationStore over FakeRedis.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from conftest import build_config_loader, make_network, make_workflow
from shared.constants import PAYLOAD_NETWORK_CATALOG, PAYLOAD_WORKFLOW_DEFINITION
from shared.types import WorkerStatus

CONTAINER_ID = "c1"


# ---------------------------------------------------------------------------
# Fake multiprocessing context
# ---------------------------------------------------------------------------


class FakeConn:
    def __init__(self) -> None:
        self.inbox: list = []
        self.sent: list = []
        self.closed = False
        self.peer: FakeConn | None = None

    def send(self, obj) -> None:
        self.sent.append(obj)
        if self.peer is not None:
            self.peer.inbox.append(obj)

    def poll(self) -> bool:
        return bool(self.inbox)

    def recv(self):
        return self.inbox.pop(0)

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self, ctx, target, args, name, daemon) -> None:
        self.ctx = ctx
        self.target = target
        self.args = args
        self.name = name
        self.daemon = daemon
        self.pid = None
        self.exitcode = None
        self.terminated = False
        self.killed = False

    def start(self) -> None:
        if self.ctx.fail_start:
            raise OSError("fork failed")
        self.ctx.next_pid += 1
        self.pid = self.ctx.next_pid

    def is_alive(self) -> bool:
        return self.pid is not None and self.exitcode is None

    def terminate(self) -> None:
        self.terminated = True
        if not self.ctx.ignore_sigterm:
            self.exitcode = -15

    def kill(self) -> None:
        self.killed = True
        self.exitcode = -9

    def join(self, timeout=None) -> None:
        return None

    def crash(self, code: int = 1) -> None:
        self.exitcode = code


class FakeContext:
    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.pipes: list[tuple[FakeConn, FakeConn]] = []
        self.next_pid = 1000
        self.fail_start = False
        self.ignore_sigterm = False

    def Pipe(self):
        parent, child = FakeConn(), FakeConn()
        parent.peer, child.peer = child, parent
        self.pipes.append((parent, child))
        return parent, child

    def Process(self, target, args, name, daemon):
        process = FakeProcess(self, target, args, name, daemon)
        self.processes.append(process)
        return process


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ctx():
    return FakeContext()


@pytest.fixture
def make_supervisor(store, ctx):
    def _factory(definition=None, networks=None):
        with (
            patch("core.supervisor.get_config") as mock_cfg,
            patch("core.supervisor.setup_module_logger") as mock_logger,
        ):
            mock_cfg.return_value = build_config_loader()
            mock_logger.return_value = MagicMock()

            from core.supervisor import ProcessSupervisor

            return ProcessSupervisor(
                definition or make_workflow(),
                networks or {1: make_network()},
                store,
                CONTAINER_ID,
                mp_context=ctx,
                process_target=MagicMock(),
            )

    return _factory


# ---------------------------------------------------------------------------
# A. Start
# ---------------------------------------------------------------------------


class TestStart:
    @pytest.mark.asyncio
    async def test_start_registers_process_entry(self, make_supervisor, ctx, store):
        supervisor = make_supervisor()
        await supervisor.start()

        process = ctx.processes[0]
        entry = await store.get_process(CONTAINER_ID, "w1")
        assert entry is not None
        assert entry.pid == process.pid
        assert entry.workflow_id == "w1"
        assert supervisor.is_alive is True
        assert supervisor.pid == process.pid
        assert process.name == "listener:w1"
        assert process.daemon is True

        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_start_sends_workflow_payload(self, make_supervisor, ctx):
        supervisor = make_supervisor()
        await supervisor.start()

        parent, child = ctx.pipes[0]
        payload = parent.sent[0]
        assert payload[PAYLOAD_WORKFLOW_DEFINITION]["id"] == "w1"
        assert payload[PAYLOAD_NETWORK_CATALOG][0]["chainId"] == 1
        assert child.closed is True
        assert ctx.processes[0].args == (child,)

        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_spawn_failure_raises(self, make_supervisor, ctx, store):
        from core.supervisor import SupervisorError

        ctx.fail_start = True
        supervisor = make_supervisor()

        with pytest.raises(SupervisorError):
            await supervisor.start()
        assert await store.get_process(CONTAINER_ID, "w1") is None

    def test_network_resolved_from_catalog(self, make_supervisor):
        supervisor = make_supervisor(networks={1: make_network(), 56: make_network(chain_id=56)})
        assert supervisor.network.chain_id == 1


# ---------------------------------------------------------------------------
# B. Crash recovery
# ---------------------------------------------------------------------------


class TestCrashRecovery:
    @pytest.mark.asyncio
    async def test_crash_is_respawned(self, make_supervisor, ctx, store):
        supervisor = make_supervisor()
        await supervisor.start()

        ctx.processes[0].crash(1)
        await wait_until(lambda: len(ctx.processes) == 2 and ctx.processes[1].pid is not None)
        await wait_until(lambda: supervisor.restart_count == 1)

        entry = await store.get_process(CONTAINER_ID, "w1")
        assert entry.pid == ctx.processes[1].pid
        assert supervisor.pid == ctx.processes[1].pid

        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_error_status_terminates_and_respawns(self, make_supervisor, ctx):
        supervisor = make_supervisor()
        await supervisor.start()

        _, child = ctx.pipes[0]
        child.send({"status": "error", "pid": ctx.processes[0].pid, "error": "provider exhausted"})

        await wait_until(lambda: supervisor.restart_count == 1)
        assert ctx.processes[0].terminated is True
        assert len(ctx.processes) == 2

        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_listening_resets_crash_counter(self, make_supervisor, ctx):
        supervisor = make_supervisor()
        await supervisor.start()
        supervisor._consecutive_crashes = 3

        _, child = ctx.pipes[0]
        child.send({"status": "listening", "pid": ctx.processes[0].pid, "chain": 1})

        await wait_until(lambda: supervisor.last_status is WorkerStatus.LISTENING)
        assert supervisor._consecutive_crashes == 0

        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_superseded_pipes_are_closed_after_repeated_crashes(self, make_supervisor, ctx):
        supervisor = make_supervisor()
        await supervisor.start()

        for crashes in range(1, 4):
            ctx.processes[-1].crash(1)
            await wait_until(lambda: supervisor.restart_count == crashes)

        assert [parent.closed for parent, _ in ctx.pipes] == [True, True, True, False]

        await supervisor.stop()
        assert ctx.pipes[-1][0].closed is True

    def test_backoff_is_capped(self, make_supervisor):
        supervisor = make_supervisor()
        delays = []
        for crashes in range(5):
            supervisor._consecutive_crashes = crashes
            delays.append(supervisor._backoff_delay())
        assert delays == pytest.approx([0.01, 0.02, 0.04, 0.05, 0.05])


# ---------------------------------------------------------------------------
# C. Stop
# ---------------------------------------------------------------------------


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_removes_entry_without_respawn(self, make_supervisor, ctx, store):
        supervisor = make_supervisor()
        await supervisor.start()

        await supervisor.stop()
        await asyncio.sleep(0.1)

        assert ctx.processes[0].terminated is True
        assert len(ctx.processes) == 1
        assert supervisor.is_alive is False
        assert await store.get_process(CONTAINER_ID, "w1") is None
        assert await store.list_processes_for_container(CONTAINER_ID) == []
        assert ctx.pipes[0][0].closed is True

    @pytest.mark.asyncio
    async def test_stop_with_restart_respawns_without_counting_a_crash(self, make_supervisor, ctx, store):
        supervisor = make_supervisor()
        await supervisor.start()
        first_monitor = supervisor._monitor_task

        await supervisor.stop(should_restart=True)
        await wait_until(lambda: supervisor._monitor_task is not first_monitor)

        assert len(ctx.processes) == 2
        assert ctx.processes[0].terminated is True
        assert supervisor.is_alive is True
        assert supervisor.pid == ctx.processes[1].pid
        entry = await store.get_process(CONTAINER_ID, "w1")
        assert entry.pid == ctx.processes[1].pid
        assert entry.pid != ctx.processes[0].pid
        assert supervisor.restart_count == 0
        assert supervisor._consecutive_crashes == 0
        assert ctx.pipes[0][0].closed is True

        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_sigterm_escalates_to_kill(self, make_supervisor, ctx):
        ctx.ignore_sigterm = True
        supervisor = make_supervisor()
        await supervisor.start()

        await supervisor.stop()

        process = ctx.processes[0]
        assert process.terminated is True
        assert process.killed is True
        assert process.exitcode == -9

    @pytest.mark.asyncio
    async def test_stop_after_exit_is_harmless(self, make_supervisor, ctx, store):
        supervisor = make_supervisor()
        await supervisor.start()
        supervisor._should_restart = False
        ctx.processes[0].crash(0)
        await asyncio.sleep(0.05)

        await supervisor.stop()

        assert ctx.processes[0].terminated is False
        assert await store.get_process(CONTAINER_ID, "w1") is None


# ---------------------------------------------------------------------------
# D. Restart with a new definition
# ---------------------------------------------------------------------------


class TestRestartWithDefinition:
    @pytest.mark.asyncio
    async def test_replaces_running_worker(self, make_supervisor, ctx, store):
        supervisor = make_supervisor()
        await supervisor.start()

        updated = make_workflow(event_name="Approval")
        await supervisor.restart_with_definition(updated)

        assert len(ctx.processes) == 2
        assert ctx.processes[0].terminated is True
        assert supervisor.definition.trigger.event_name == "Approval"
        new_payload = ctx.pipes[1][0].sent[0]
        assert new_payload[PAYLOAD_WORKFLOW_DEFINITION]["nodes"][0]["data"]["config"]["eventName"] == "Approval"
        assert supervisor.restart_count == 0

        entry = await store.get_process(CONTAINER_ID, "w1")
        assert entry.pid == ctx.processes[1].pid

        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_rejects_other_workflow(self, make_supervisor):
        supervisor = make_supervisor()
        with pytest.raises(ValueError):
            await supervisor.restart_with_definition(make_workflow(workflow_id="w2"))
