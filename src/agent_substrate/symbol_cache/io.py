from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import quote

from agent_substrate.store.io import decode_json, encode_json
from agent_substrate.symbol_cache.models import CacheEntry, SchemaVersion, count_nodes, parse_symbols


def entry_store_key(prefix: str, key: str) -> str:
    return f"{prefix}{quote(key, safe='')}"


def encode_entry(entry: CacheEntry) -> bytes:
    return encode_json(
        {
            "schema_version": SchemaVersion,
            "key": entry.key,
            "fingerprint": entry.fingerprint,
            "indexed_at": entry.indexed_at,
            "node_count": entry.node_count,
            "payload": [node.to_dict() for node in entry.payload],
        }
    )


def _decode_payload(payload: Mapping[str, Any]) -> CacheEntry:
    nodes = parse_symbols(payload["payload"])
    node_count = count_nodes(nodes)
    if int(payload.get("node_count", node_count)) != node_count:
        raise ValueError(f"Stored node count does not match payload. key={payload['key']}")
    return CacheEntry(
        key=str(payload["key"]),
        fingerprint=str(payload["fingerprint"]),
        payload=nodes,
        indexed_at=str(payload.get("indexed_at", "")),
        node_count=node_count,
    )


def decode_entry(data: bytes) -> CacheEntry:
    """Decode a persisted entry. Raises ValueError for anything not fully consistent."""
    payload = decode_json(data)
    version = payload.get("schema_version")
    if version != SchemaVersion:
        raise ValueError(f"Unsupported cache entry schema version: {version}")
    try:
        return _decode_payload(payload)
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Malformed cache entry: {e}") from e
