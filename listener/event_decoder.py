"""
Event decoding for the SC Event Tracker listener.

Builds an O(1) topic0 -> event lookup from a workflow's contract ABI and
decodes raw ``eth_subscribe("logs")`` notifications into ``DecodedLog``
records ready for the downstream payload.

Decoding rules:
    - Events are identified by keccak(canonical signature) == topics[0];
      anonymous events are never indexed.
    - Indexed static parameters are decoded from their topic; indexed
      dynamic parameters (string, bytes, arrays, tuples) are stored as a
      keccak hash on chain, so the raw topic hex is kept.
    - Unnamed parameters are named ``arg{index}``.
    - Integers become decimal strings, bytes become 0x-hex, addresses are
      checksummed, tuples become objects keyed by component name.

Other decoders can be plugged into the listener by implementing the
``EventDecoder`` protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from eth_abi.abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from shared.serialization_utils import to_json_safe
from shared.types import DecodedLog


class EventDecodeError(Exception):
    """Raised when a log matches a known event but its payload cannot be decoded."""


class EventDecoder(Protocol):
    def decode(self, log: dict[str, Any]) -> DecodedLog | None:
        ...


@dataclass(frozen=True)
class _EventSpec:
    name: str
    signature: str
    inputs: tuple[dict[str, Any], ...]

    @property
    def indexed(self) -> list[tuple[int, dict[str, Any]]]:
        return [(i, param) for i, param in enumerate(self.inputs) if param.get("indexed")]

    @property
    def non_indexed(self) -> list[tuple[int, dict[str, Any]]]:
        return [(i, param) for i, param in enumerate(self.inputs) if not param.get("indexed")]


# ============================================================================
# ABI HELPERS
# ============================================================================

def canonical_type(param: dict[str, Any]) -> str:
    """Canonical ABI type string; tuples expand to ``(t1,t2,...)`` with array suffixes kept."""
    type_str = param.get("type", "")
    if type_str.startswith("tuple"):
        suffix = type_str[len("tuple"):]
        components = ",".join(canonical_type(c) for c in param.get("components", []))
        return f"({components}){suffix}"
    return type_str


def event_signature(event: dict[str, Any]) -> str:
    types = ",".join(canonical_type(param) for param in event.get("inputs", []))
    return f"{event['name']}({types})"


def event_topic(signature: str) -> str:
    return "0x" + Web3.keccak(text=signature).hex().removeprefix("0x").lower()


def _is_dynamic(param: dict[str, Any]) -> bool:
    type_str = param.get("type", "")
    return (
        type_str in ("string", "bytes")
        or type_str.endswith("]")
        or type_str.startswith("tuple")
    )


def _param_name(param: dict[str, Any], index: int) -> str:
    return param.get("name") or f"arg{index}"


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return bytes(HexBytes(value))
    raise EventDecodeError(f"Cannot interpret {type(value).__name__} as bytes")


def _to_hex(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def normalize_value(value: Any, param: dict[str, Any]) -> Any:
    """Convert a decoded ABI value into JSON-safe form, guided by its ABI type."""
    type_str = param.get("type", "")
    if type_str.endswith("]"):
        element = dict(param, type=type_str[: type_str.rindex("[")])
        return [normalize_value(item, element) for item in value]
    if type_str == "tuple":
        components = param.get("components", [])
        return {
            _param_name(component, i): normalize_value(item, component)
            for i, (component, item) in enumerate(zip(components, value))
        }
    if type_str == "address":
        return Web3.to_checksum_address(value)
    return to_json_safe(value)


# ============================================================================
# DEFAULT DECODER
# ============================================================================

class AbiEventDecoder:
    """Decodes logs against the events declared in a contract ABI."""

    def __init__(self, abi: list[dict[str, Any]]) -> None:
        self._events: dict[str, _EventSpec] = {}
        for item in abi:
            if not isinstance(item, dict) or item.get("type") != "event":
                continue
            if item.get("anonymous") or not item.get("name"):
                continue
            signature = event_signature(item)
            self._events[event_topic(signature)] = _EventSpec(
                name=item["name"],
                signature=signature,
                inputs=tuple(item.get("inputs", [])),
            )

    @property
    def event_names(self) -> set[str]:
        return {entry.name for entry in self._events.values()}

    @property
    def topics(self) -> dict[str, str]:
        """topic0 -> event signature."""
        return {topic: entry.signature for topic, entry in self._events.items()}

    def decode(self, log: dict[str, Any]) -> DecodedLog | None:
        """
        Decode a raw log.

        Returns None when topic0 is missing or not in the ABI.

        Raises:
            EventDecodeError: the event is known but its topics/data do not
                match the declared inputs.
        """
        topics = log.get("topics") or []
        if not topics:
            return None

        entry = self._events.get((_to_hex(topics[0]) or "").lower())
        if entry is None:
            return None

        args: dict[str, Any] = {}

        indexed = entry.indexed
        if len(topics) - 1 < len(indexed):
            raise EventDecodeError(
                f"{entry.signature}: expected {len(indexed)} indexed topics, got {len(topics) - 1}"
            )
        for (index, param), raw_topic in zip(indexed, topics[1:]):
            name = _param_name(param, index)
            if _is_dynamic(param):
                args[name] = _to_hex(raw_topic)
                continue
            try:
                (value,) = abi_decode([canonical_type(param)], _to_bytes(raw_topic))
            except (DecodingError, ValueError) as exc:
                raise EventDecodeError(f"{entry.signature}: bad topic for {name}: {exc}") from exc
            args[name] = normalize_value(value, param)

        non_indexed = entry.non_indexed
        if non_indexed:
            data = _to_bytes(log.get("data") or "0x")
            try:
                values = abi_decode([canonical_type(param) for _, param in non_indexed], data)
            except (DecodingError, ValueError) as exc:
                raise EventDecodeError(f"{entry.signature}: bad data: {exc}") from exc
            for (index, param), value in zip(non_indexed, values):
                args[_param_name(param, index)] = normalize_value(value, param)

        # Keep ABI declaration order in the payload
        ordered = {_param_name(param, i): args[_param_name(param, i)] for i, param in enumerate(entry.inputs)}

        address = log.get("address") or ""
        if isinstance(address, (bytes, bytearray)):
            address = "0x" + bytes(address).hex()

        return DecodedLog(
            event_name=entry.name,
            args=ordered,
            block_number=_to_int(log.get("blockNumber")),
            transaction_hash=(_to_hex(log.get("transactionHash")) or "").lower(),
            block_hash=_to_hex(log.get("blockHash")),
            address=Web3.to_checksum_address(address) if address else "",
            log_index=_to_int(log.get("logIndex")),
            transaction_index=_to_int(log.get("transactionIndex")),
        )
