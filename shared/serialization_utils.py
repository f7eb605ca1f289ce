"""
Serialization utilities for the SC Event Tracker.

JSON encoding for decoded on-chain values: HexBytes / bytes, web3
AttributeDicts and EVM integers wider than an IEEE 754 double.

Usage:
    from shared.serialization_utils import Web3JSONEncoder, to_json_safe
    json.dumps(payload, cls=Web3JSONEncoder)
"""

import json
from decimal import Decimal
from json import JSONEncoder
from typing import Any

from hexbytes import HexBytes


def _hex(value: bytes) -> str:
    text = value.hex()
    return text if text.startswith("0x") else "0x" + text


class Web3JSONEncoder(JSONEncoder):
    """
    JSON encoder handling Decimal, HexBytes, large integers, and web3.py types.

    Sources:
    - RFC 7159 section 6 (JSON number limits)
    - IEEE 754-2008 (double precision safe integer limit: 2^53 - 1)
    """

    # IEEE 754 double precision safe integer limit
    _MAX_SAFE_INTEGER = 2**53 - 1

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        # HexBytes from web3.py (tx hashes, block hashes, raw bytes)
        if isinstance(obj, (HexBytes, bytes, bytearray)):
            return _hex(bytes(obj))
        # web3.py AttributeDict (common in transaction/block responses)
        if hasattr(obj, "__iter__") and hasattr(obj, "keys"):
            return dict(obj)
        return super().default(obj)

    def encode(self, obj: Any) -> str:
        """Override encode to convert large integers to strings before JSON serialization."""
        return super().encode(self._convert_large_ints(obj))

    def _convert_large_ints(self, obj: Any) -> Any:
        """Recursively convert integers exceeding IEEE 754 safe limits to strings."""
        if isinstance(obj, dict):
            return {k: self._convert_large_ints(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [self._convert_large_ints(item) for item in obj]
        elif isinstance(obj, bool):
            return obj
        elif isinstance(obj, int) and (obj > self._MAX_SAFE_INTEGER or obj < -self._MAX_SAFE_INTEGER):
            return str(obj)
        return obj


def to_json_safe(value: Any) -> Any:
    """
    Normalize a decoded ABI value into plain JSON types.

    Every integer becomes a decimal string (uint256 values routinely exceed
    what downstream JSON consumers can hold), bytes become 0x-hex, tuples and
    arrays become lists. Booleans and strings pass through.
    """
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (HexBytes, bytes, bytearray)):
        return _hex(bytes(value))
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_safe(item) for item in value]
    return str(value)


def dumps(payload: Any) -> str:
    """Serialize a payload with Web3JSONEncoder."""
    return json.dumps(payload, cls=Web3JSONEncoder)
