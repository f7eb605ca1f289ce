"""
Shared data types for the SC Event Tracker.

Centralized dataclasses and enums used across all modules. Wire-format
(camelCase) conversion lives on the types themselves so the directory
client, the supervisor/worker process boundary and the trigger payload all
agree on one shape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class WorkerState(Enum):
    STARTING = "starting"
    LISTENING = "listening"
    PROCESSING = "processing-event"
    STOPPED = "stopped"


class WorkerStatus(Enum):
    """Status values a listener worker reports to its supervisor."""

    LISTENING = "listening"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Coordination store records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProcessEntry:
    container_id: str
    pid: int
    workflow_id: str
    timestamp: int  # ms since epoch

    def to_hash(self) -> dict[str, str]:
        return {
            "containerId": self.container_id,
            "pid": str(self.pid),
            "event": self.workflow_id,
            "timestamp": str(self.timestamp),
        }

    @classmethod
    def from_hash(cls, data: dict[Any, Any]) -> ProcessEntry | None:
        """Build from a Redis hash (bytes or str keys). Returns None for an empty hash."""
        if not data:
            return None
        decoded = {_text(k): _text(v) for k, v in data.items()}
        try:
            return cls(
                container_id=decoded["containerId"],
                pid=int(decoded["pid"]),
                workflow_id=decoded["event"],
                timestamp=int(decoded.get("timestamp", "0")),
            )
        except (KeyError, ValueError):
            return None


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


# ---------------------------------------------------------------------------
# Network catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Network:
    chain_id: int
    name: str = ""
    primary_rpc: str = ""
    fallback_rpc: str = ""
    primary_wss: str = ""
    fallback_wss: str = ""
    is_testnet: bool = False
    is_enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Network:
        """Accept both the directory's camelCase shape and snake_case."""
        return cls(
            chain_id=int(data.get("chainId", data.get("chain_id"))),
            name=data.get("name") or "",
            primary_rpc=data.get("defaultPrimaryRpc") or data.get("primary_rpc") or "",
            fallback_rpc=data.get("defaultFallbackRpc") or data.get("fallback_rpc") or "",
            primary_wss=data.get("defaultPrimaryWss") or data.get("primary_wss") or "",
            fallback_wss=data.get("defaultFallbackWss") or data.get("fallback_wss") or "",
            is_testnet=bool(data.get("isTestnet", data.get("is_testnet", False))),
            is_enabled=bool(data.get("isEnabled", data.get("is_enabled", True))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "name": self.name,
            "defaultPrimaryRpc": self.primary_rpc,
            "defaultFallbackRpc": self.fallback_rpc,
            "defaultPrimaryWss": self.primary_wss,
            "defaultFallbackWss": self.fallback_wss,
            "isTestnet": self.is_testnet,
            "isEnabled": self.is_enabled,
        }

    @property
    def subscription_endpoints(self) -> list[str]:
        """WebSocket endpoints in failover order (primary first)."""
        return [url for url in (self.primary_wss, self.fallback_wss) if url]

    @property
    def rpc_endpoints(self) -> list[str]:
        return [url for url in (self.primary_rpc, self.fallback_rpc) if url]

    @property
    def endpoints(self) -> tuple[str, str, str, str]:
        return (self.primary_rpc, self.fallback_rpc, self.primary_wss, self.fallback_wss)


def parse_network_catalog(raw: Any) -> dict[int, Network]:
    """
    Parse the directory's network catalog.

    The catalog arrives either as a list of network objects or as a mapping
    keyed by chain id; entries that cannot be parsed are dropped.
    """
    if isinstance(raw, dict):
        items = list(raw.values())
    elif isinstance(raw, list):
        items = raw
    else:
        return {}

    catalog: dict[int, Network] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            network = Network.from_dict(item)
        except (TypeError, ValueError):
            continue
        catalog[network.chain_id] = network
    return catalog


# ---------------------------------------------------------------------------
# Workflow definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TriggerConfig:
    network: str
    contract_address: str
    contract_abi: str  # JSON-encoded ABI array
    event_name: str
    trigger_type: str | None = None

    # Fields whose change requires a listener restart
    COMPARED_FIELDS = ("network", "contract_address", "contract_abi", "event_name")

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> TriggerConfig:
        abi = config.get("contractABI", config.get("contract_abi", ""))
        if not isinstance(abi, str):
            abi = json.dumps(abi)
        return cls(
            network=str(config.get("network", "")),
            contract_address=config.get("contractAddress", config.get("contract_address", "")) or "",
            contract_abi=abi or "",
            event_name=config.get("eventName", config.get("event_name", "")) or "",
            trigger_type=config.get("triggerType", config.get("trigger_type")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": self.network,
            "contractAddress": self.contract_address,
            "contractABI": self.contract_abi,
            "eventName": self.event_name,
            "triggerType": self.trigger_type,
        }

    def changed_fields(self, other: TriggerConfig) -> list[str]:
        """Names of the compared fields that differ between two configs."""
        return [name for name in self.COMPARED_FIELDS if getattr(self, name) != getattr(other, name)]

    def parsed_abi(self) -> list[dict[str, Any]]:
        """Parse the ABI JSON; an unparsable ABI is treated as empty."""
        try:
            abi = json.loads(self.contract_abi)
        except (TypeError, ValueError):
            return []
        if isinstance(abi, dict):
            abi = abi.get("abi", [])
        return abi if isinstance(abi, list) else []

    @property
    def chain_id(self) -> int | None:
        try:
            return int(self.network)
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class WorkflowDefinition:
    id: str
    name: str
    enabled: bool
    trigger: TriggerConfig
    user_id: str | None = None
    organization_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDefinition:
        """
        Build from the directory wire format.

        The trigger config is read from ``nodes[0].data.config`` (directory
        service shape), ``node.data.config`` or ``node.config``.

        Raises:
            ValueError: if the workflow has no id or no trigger configuration.
        """
        workflow_id = data.get("id")
        if not workflow_id:
            raise ValueError("workflow definition has no id")

        node: Any = None
        nodes = data.get("nodes")
        if isinstance(nodes, list) and nodes:
            node = nodes[0]
        elif isinstance(data.get("node"), dict):
            node = data["node"]
        if not isinstance(node, dict):
            raise ValueError(f"workflow {workflow_id} has no trigger node")

        node_data = node.get("data") if isinstance(node.get("data"), dict) else node
        config = node_data.get("config")
        if not isinstance(config, dict):
            raise ValueError(f"workflow {workflow_id} trigger node has no config")

        return cls(
            id=str(workflow_id),
            name=data.get("name") or "",
            enabled=bool(data.get("enabled", True)),
            trigger=TriggerConfig.from_dict(config),
            user_id=data.get("userId"),
            organization_id=data.get("organizationId"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "userId": self.user_id,
            "organizationId": self.organization_id,
            "nodes": [{"data": {"type": "trigger", "config": self.trigger.to_dict()}}],
        }

    def config_changes(self, other: WorkflowDefinition) -> list[str]:
        return self.trigger.changed_fields(other.trigger)


@dataclass(frozen=True)
class DirectorySnapshot:
    workflows: tuple[WorkflowDefinition, ...] = ()
    networks: dict[int, Network] = field(default_factory=dict)
    ok: bool = True

    @property
    def enabled_workflows(self) -> list[WorkflowDefinition]:
        return [workflow for workflow in self.workflows if workflow.enabled]

    @classmethod
    def failed(cls) -> DirectorySnapshot:
        return cls(workflows=(), networks={}, ok=False)


# ---------------------------------------------------------------------------
# Decoded events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecodedLog:
    event_name: str
    args: dict[str, Any]
    block_number: int | None
    transaction_hash: str
    block_hash: str | None
    address: str
    log_index: int | None
    transaction_index: int | None

    def to_payload(self) -> dict[str, Any]:
        """Downstream execution trigger body."""
        return {
            "eventName": self.event_name,
            "args": self.args,
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "blockHash": self.block_hash,
            "address": self.address,
            "logIndex": self.log_index,
            "transactionIndex": self.transaction_index,
        }


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass
class ReconcileReport:
    started: list[str] = field(default_factory=list)
    restarted: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    aborted: bool = False

    @property
    def has_actions(self) -> bool:
        return bool(self.started or self.restarted or self.stopped)

    def summary(self) -> str:
        if self.aborted:
            return "aborted"
        return (
            f"started={len(self.started)} restarted={len(self.restarted)} "
            f"stopped={len(self.stopped)} skipped={len(self.skipped)} errors={len(self.errors)}"
        )
