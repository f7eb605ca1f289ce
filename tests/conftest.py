"""
Shared pytest configuration and fixtures for SC Event Tracker tests.

Provides an in-memory async Redis double, a mock ConfigLoader with the
standard configs, and sample workflow / network data.
"""

from __future__ import annotations

import json
import time
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shared.types import Network, WorkflowDefinition

# ---------------------------------------------------------------------------
# Standard mock configs (can be overridden per test)
# ---------------------------------------------------------------------------

STANDARD_TIMING_CONFIG = {
    "reconciliation": {
        "interval_seconds": 30,
        "teardown_on_directory_failure": False,
        "heartbeat_ttl_multiplier": 3,
    },
    "supervisor": {
        "poll_interval_seconds": 0.01,
        "stop_timeout_seconds": 0.2,
        "restart_base_delay_seconds": 0.01,
        "restart_max_delay_seconds": 0.05,
    },
    "listener": {
        "max_jitter_seconds": 0,
        "drain_timeout_seconds": 0.5,
        "dedup_ttl_seconds": 86400,
        "verify_rpc_on_boot": False,
    },
    "http": {
        "directory_timeout_seconds": 5,
        "trigger_timeout_seconds": 5,
    },
    "web3_connection": {
        "max_retries": 1,
        "retry_delay_seconds": 0,
    },
}

STANDARD_WEBSOCKET_CONFIG = {
    "connection": {
        "max_connection_attempts": 2,
        "ping_interval_seconds": 20,
        "ping_timeout_seconds": 1,
        "close_timeout_seconds": 1,
        "max_message_bytes": 1048576,
    },
    "timeouts": {
        "subscription_response_timeout_seconds": 1.0,
        "message_receive_timeout_seconds": 5.0,
    },
    "reconnection": {
        "base_delay_seconds": 0,
        "max_delay_seconds": 0,
        "jitter_max_seconds": 0,
    },
}

KEY_TEMPLATES = {
    "containers": "containers",
    "container_processes": "container-processes:{container_id}",
    "process": "container:{container_id}-process:{workflow_id}",
    "container_heartbeat": "container-heartbeat:{container_id}",
    "processed_tx": "{namespace}:keeper_id:{workflow_id}:processed_tx:{tx_hash}",
}

STANDARD_REDIS_CONFIG = {
    "redis_url": "redis://localhost:6379/0",
    "socket_timeout_seconds": 5,
    "keys": KEY_TEMPLATES,
}

STANDARD_SERVICES_CONFIG = {
    "service_url": "http://tracker.test",
    "directory_path": "/data",
    "execute_path": "/workflow/{workflow_id}/execute",
    "internal_token": "secret-token",
}

# ---------------------------------------------------------------------------
# Sample chain data
# ---------------------------------------------------------------------------

SAMPLE_CONTRACT = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
SAMPLE_FROM = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"
SAMPLE_TO = "0x1234567890abcdef1234567890abcdef12345678"

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
APPROVAL_TOPIC = "0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"

ERC20_EVENTS_ABI = [
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "Approval",
        "anonymous": False,
        "inputs": [
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "spender", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
]


def _topic_address(address: str) -> str:
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def _word(value: int) -> str:
    return hex(value)[2:].rjust(64, "0")


def make_log(
    topic0: str = TRANSFER_TOPIC,
    value: int = 10**18,
    tx_hash: str = "0x" + "ab" * 32,
    block_number: int = 0x10,
    removed: bool = False,
) -> dict[str, Any]:
    """A raw eth_subscribe log notification result in JSON-RPC hex form."""
    return {
        "address": SAMPLE_CONTRACT.lower(),
        "topics": [topic0, _topic_address(SAMPLE_FROM), _topic_address(SAMPLE_TO)],
        "data": "0x" + _word(value),
        "blockNumber": hex(block_number),
        "transactionHash": tx_hash,
        "transactionIndex": "0x1",
        "blockHash": "0x" + "cd" * 32,
        "logIndex": "0x2",
        "removed": removed,
    }


def make_network(chain_id: int = 1, wss: str = "wss://primary.test", fallback_wss: str = "") -> Network:
    return Network(
        chain_id=chain_id,
        name=f"chain-{chain_id}",
        primary_rpc="https://rpc.test",
        fallback_rpc="",
        primary_wss=wss,
        fallback_wss=fallback_wss,
    )


def make_workflow_dict(
    workflow_id: str = "w1",
    event_name: str = "Transfer",
    network: str = "1",
    contract_address: str = SAMPLE_CONTRACT,
    enabled: bool = True,
    abi: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Workflow in the directory service wire format."""
    return {
        "id": workflow_id,
        "name": f"workflow {workflow_id}",
        "enabled": enabled,
        "userId": "u1",
        "nodes": [
            {
                "data": {
                    "type": "trigger",
                    "config": {
                        "triggerType": "event",
                        "network": network,
                        "contractAddress": contract_address,
                        "contractABI": json.dumps(abi if abi is not None else ERC20_EVENTS_ABI),
                        "eventName": event_name,
                    },
                }
            }
        ],
    }


def make_workflow(**kwargs: Any) -> WorkflowDefinition:
    return WorkflowDefinition.from_dict(make_workflow_dict(**kwargs))


# ---------------------------------------------------------------------------
# In-memory async Redis double
# ---------------------------------------------------------------------------


class FakeRedis:
    """
    Minimal async stand-in for redis.asyncio.Redis (decode_responses=True).

    Supports the commands the coordination store issues. Set ``fail = True``
    to make every command raise a Redis ConnectionError.
    """

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.expiry: dict[str, float] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("fake redis down")

    def _purge(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    def expire_now(self, key: str) -> None:
        """Test helper: make a TTL key vanish as if it expired."""
        self.data.pop(key, None)
        self.expiry.pop(key, None)

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def rpush(self, key: str, *values: str) -> int:
        self._check()
        items = self.data.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        items = list(self.data.get(key, []))
        return items[start:] if end == -1 else items[start : end + 1]

    async def lrem(self, key: str, count: int, value: str) -> int:
        self._check()
        items = self.data.get(key, [])
        kept = [item for item in items if item != value]
        removed = len(items) - len(kept)
        if kept:
            self.data[key] = kept
        else:
            self.data.pop(key, None)
        return removed

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        self._check()
        self.data.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return dict(self.data.get(key, {}))

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        self._check()
        for key in keys:
            self._purge(key)
        return sum(1 for key in keys if key in self.data)

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        self._check()
        self._purge(key)
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiry[key] = time.monotonic() + ex
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        self._purge(key)
        return self.data.get(key)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def build_config_loader(**overrides: Any) -> MagicMock:
    loader = MagicMock()
    loader.get_timing_config.return_value = overrides.get("timing", json.loads(json.dumps(STANDARD_TIMING_CONFIG)))
    loader.get_websocket_config.return_value = overrides.get("websocket", STANDARD_WEBSOCKET_CONFIG)
    loader.get_redis_config.return_value = overrides.get("redis", STANDARD_REDIS_CONFIG)
    loader.get_services_config.return_value = overrides.get("services", dict(STANDARD_SERVICES_CONFIG))
    loader.get_app_config.return_value = {"environment": "test", "logging": {"log_dir": "logs"}}
    loader.get_environment.return_value = overrides.get("environment", "test")
    loader.get_redis_key.side_effect = lambda key_name, **params: KEY_TEMPLATES[key_name].format(**params)
    return loader


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_timing_config.return_value = {...}
    """
    return build_config_loader()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis, mock_config_loader):
    """CoordinationStore over FakeRedis; config stays patched for key building."""
    with patch("core.coordination_store.get_config", return_value=mock_config_loader), \
         patch("core.coordination_store.setup_module_logger", return_value=MagicMock()):
        from core.coordination_store import CoordinationStore

        yield CoordinationStore(fake_redis)
