"""
Coordination store client for the SC Event Tracker.

Thin async wrapper over Redis holding the fleet's shared state:

    containers                              list  registered container ids
    container-heartbeat:<cid>               str   liveness marker with TTL
    container-processes:<cid>               list  workflow ids owned by a container
    container:<cid>-process:<wid>           hash  ProcessEntry (containerId, pid, event, timestamp)
    <env>:keeper_id:<wid>:processed_tx:<tx> str   dedup marker with 24h TTL

Every operation is a single Redis command or a short sequence of independent
commands; nothing is transactional. A failed command is logged and turned
into a neutral result (False / [] / None) so callers never see Redis errors
mid-pass. The next reconciliation pass repairs whatever a failure left behind.

Usage:
    store = CoordinationStore.from_config()
    await store.ping()
    await store.register_container(container_id)
    owned = await store.is_workflow_owned_elsewhere("w1", container_id)
"""

from __future__ import annotations

import time
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from config.loader import get_config
from shared.constants import DEDUP_TTL_SECONDS, DEFAULT_HEARTBEAT_TTL_MULTIPLIER
from shared.types import ProcessEntry
from tracker_logging.logger_manager import setup_module_logger


class CoordinationStoreError(Exception):
    """Raised when the coordination store cannot be reached at boot."""


class CoordinationStore:
    """Container registry, process ownership records and dedup markers."""

    def __init__(
        self,
        client: redis.Redis,
        namespace: str | None = None,
        dedup_ttl_seconds: int | None = None,
    ) -> None:
        self._redis = client

        cfg = get_config()
        timing_cfg = cfg.get_timing_config()
        reconciliation_cfg = timing_cfg.get("reconciliation", {})

        self._namespace = namespace or cfg.get_environment()
        self._dedup_ttl: int = int(
            dedup_ttl_seconds
            or timing_cfg.get("listener", {}).get("dedup_ttl_seconds", DEDUP_TTL_SECONDS)
        )
        self._heartbeat_ttl: int = max(
            1,
            int(
                float(reconciliation_cfg.get("interval_seconds", 30))
                * reconciliation_cfg.get("heartbeat_ttl_multiplier", DEFAULT_HEARTBEAT_TTL_MULTIPLIER)
            ),
        )

        self._logger = setup_module_logger(
            "coordination_store",
            "coordination_store.log",
            module_folder="Coordination_Store_Logs",
        )

    @classmethod
    def from_config(cls, **kwargs: Any) -> CoordinationStore:
        """Build a store with a Redis client configured from redis.json / env."""
        redis_cfg = get_config().get_redis_config()
        client = redis.Redis.from_url(
            redis_cfg["redis_url"],
            decode_responses=True,
            socket_timeout=redis_cfg.get("socket_timeout_seconds", 5),
        )
        return cls(client, **kwargs)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        """Verify connectivity. Raises CoordinationStoreError if Redis is unreachable."""
        try:
            await self._redis.ping()
        except (RedisError, OSError) as exc:
            raise CoordinationStoreError(f"Redis unreachable: {exc}") from exc

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as exc:
            self._logger.warning("Error closing Redis connection: %s", exc)

    # ------------------------------------------------------------------
    # Key builders
    # ------------------------------------------------------------------

    @staticmethod
    def _containers_key() -> str:
        return get_config().get_redis_key("containers")

    @staticmethod
    def _container_processes_key(container_id: str) -> str:
        return get_config().get_redis_key("container_processes", container_id=container_id)

    @staticmethod
    def _process_key(container_id: str, workflow_id: str) -> str:
        return get_config().get_redis_key(
            "process", container_id=container_id, workflow_id=workflow_id
        )

    @staticmethod
    def _heartbeat_key(container_id: str) -> str:
        return get_config().get_redis_key("container_heartbeat", container_id=container_id)

    def _processed_tx_key(self, workflow_id: str, tx_hash: str) -> str:
        return get_config().get_redis_key(
            "processed_tx",
            namespace=self._namespace,
            workflow_id=workflow_id,
            tx_hash=tx_hash.lower(),
        )

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def register_container(self, container_id: str) -> bool:
        """Add the container to the registry and start its heartbeat."""
        try:
            await self._redis.rpush(self._containers_key(), container_id)
            await self._redis.set(self._heartbeat_key(container_id), str(_now_ms()), ex=self._heartbeat_ttl)
        except RedisError as exc:
            self._logger.error("Error registering container %s: %s", container_id, exc)
            return False
        self._logger.info("Container %s registered with timestamp %d", container_id, _now_ms())
        return True

    async def remove_container(self, container_id: str) -> bool:
        """Remove a container, every copy of its registry entry, and all its ProcessEntries."""
        try:
            for workflow_id in await self.list_processes_for_container(container_id):
                await self._redis.delete(self._process_key(container_id, workflow_id))
            await self._redis.delete(self._container_processes_key(container_id))
            await self._redis.lrem(self._containers_key(), 0, container_id)
            await self._redis.delete(self._heartbeat_key(container_id))
        except RedisError as exc:
            self._logger.error("Error removing container %s: %s", container_id, exc)
            return False
        self._logger.info("Container %s removed - timestamp %d", container_id, _now_ms())
        return True

    async def list_containers(self) -> list[str]:
        try:
            return list(await self._redis.lrange(self._containers_key(), 0, -1))
        except RedisError as exc:
            self._logger.error("Error listing containers: %s", exc)
            return []

    async def touch_container(self, container_id: str) -> bool:
        """Refresh the container's heartbeat TTL."""
        try:
            await self._redis.set(self._heartbeat_key(container_id), str(_now_ms()), ex=self._heartbeat_ttl)
            return True
        except RedisError as exc:
            self._logger.error("Error refreshing heartbeat for %s: %s", container_id, exc)
            return False

    async def ensure_container(self, container_id: str) -> bool:
        """
        Refresh the heartbeat and re-add the container to the registry if it
        is missing (a peer pruned it while its heartbeat had lapsed).

        Returns True if the container had to be re-registered.
        """
        containers_key = self._containers_key()
        try:
            await self._redis.set(self._heartbeat_key(container_id), str(_now_ms()), ex=self._heartbeat_ttl)
            if container_id in await self._redis.lrange(containers_key, 0, -1):
                return False
            await self._redis.lrem(containers_key, 0, container_id)
            await self._redis.rpush(containers_key, container_id)
        except RedisError as exc:
            self._logger.error("Error re-registering container %s: %s", container_id, exc)
            return False
        self._logger.warning("Container %s was missing from the registry - re-registered", container_id)
        return True

    async def is_container_alive(self, container_id: str) -> bool:
        try:
            return bool(await self._redis.exists(self._heartbeat_key(container_id)))
        except RedisError as exc:
            self._logger.error("Error checking heartbeat for %s: %s", container_id, exc)
            # Unknown liveness counts as alive
            return True

    async def prune_dead_containers(self, self_container_id: str) -> list[str]:
        """Remove registered containers whose heartbeat expired. Returns pruned ids."""
        pruned: list[str] = []
        for container_id in dict.fromkeys(await self.list_containers()):
            if container_id == self_container_id:
                continue
            if await self.is_container_alive(container_id):
                continue
            self._logger.warning("Container %s has no heartbeat - pruning its registrations", container_id)
            if await self.remove_container(container_id):
                pruned.append(container_id)
        return pruned

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------

    async def register_process(self, container_id: str, workflow_id: str, pid: int) -> ProcessEntry | None:
        """Record that ``container_id`` runs the listener for ``workflow_id``."""
        entry = ProcessEntry(
            container_id=container_id,
            pid=pid,
            workflow_id=workflow_id,
            timestamp=_now_ms(),
        )
        processes_key = self._container_processes_key(container_id)
        try:
            await self._redis.hset(self._process_key(container_id, workflow_id), mapping=entry.to_hash())
            await self._redis.lrem(processes_key, 0, workflow_id)
            await self._redis.rpush(processes_key, workflow_id)
        except RedisError as exc:
            self._logger.error("Error registering process [%s]: %s", workflow_id, exc)
            return None
        self._logger.info(
            "Process [%s] registered with pid %d - container %s", workflow_id, pid, container_id
        )
        return entry

    async def remove_process(self, container_id: str, workflow_id: str) -> bool:
        try:
            await self._redis.delete(self._process_key(container_id, workflow_id))
            await self._redis.lrem(self._container_processes_key(container_id), 0, workflow_id)
        except RedisError as exc:
            self._logger.error("Error removing process [%s]: %s", workflow_id, exc)
            return False
        self._logger.info("Process [%s] removed from container %s", workflow_id, container_id)
        return True

    async def list_processes_for_container(self, container_id: str) -> list[str]:
        try:
            return list(await self._redis.lrange(self._container_processes_key(container_id), 0, -1))
        except RedisError as exc:
            self._logger.error("Error listing processes for container %s: %s", container_id, exc)
            return []

    async def get_process(self, container_id: str, workflow_id: str) -> ProcessEntry | None:
        try:
            data = await self._redis.hgetall(self._process_key(container_id, workflow_id))
        except RedisError as exc:
            self._logger.error("Error reading process [%s]: %s", workflow_id, exc)
            return None
        return ProcessEntry.from_hash(data)

    async def is_workflow_running_on_container(self, container_id: str, workflow_id: str) -> bool:
        return workflow_id in await self.list_processes_for_container(container_id)

    async def get_workflow_owners(self, workflow_id: str, self_container_id: str) -> list[str]:
        """Ids of *other* registered containers that list ``workflow_id`` among their processes."""
        owners: list[str] = []
        for container_id in dict.fromkeys(await self.list_containers()):
            if container_id == self_container_id:
                continue
            if workflow_id in await self.list_processes_for_container(container_id):
                owners.append(container_id)
        return owners

    async def is_workflow_owned_elsewhere(self, workflow_id: str, self_container_id: str) -> bool:
        return bool(await self.get_workflow_owners(workflow_id, self_container_id))

    # ------------------------------------------------------------------
    # Dedup markers
    # ------------------------------------------------------------------

    async def is_transaction_marked(self, workflow_id: str, tx_hash: str) -> bool:
        key = self._processed_tx_key(workflow_id, tx_hash)
        try:
            exists = bool(await self._redis.exists(key))
        except RedisError as exc:
            self._logger.error("Error checking dedup marker %s: %s", key, exc)
            return False
        self._logger.debug("Checked key %s - exists: %s", key, exists)
        return exists

    async def mark_transaction(self, workflow_id: str, tx_hash: str, ttl: int | None = None) -> bool:
        """
        Set the dedup marker if absent (SET NX EX).

        Returns True only for the caller that created the marker, and also
        when Redis is unreachable (the trigger proceeds unmarked).
        """
        key = self._processed_tx_key(workflow_id, tx_hash)
        try:
            created = await self._redis.set(key, "1", ex=ttl or self._dedup_ttl, nx=True)
        except RedisError as exc:
            self._logger.error("Error writing dedup marker %s: %s", key, exc)
            return True
        if created:
            self._logger.debug("Stored key %s with %ds TTL", key, ttl or self._dedup_ttl)
        return bool(created)


def _now_ms() -> int:
    return int(time.time() * 1000)
