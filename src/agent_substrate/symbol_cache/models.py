from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

SchemaVersion = 1

# LSP SymbolKind numbers, used when an endpoint reports kinds numerically.
LSP_SYMBOL_KINDS: Mapping[int, str] = {
    1: "File",
    2: "Module",
    3: "Namespace",
    4: "Package",
    5: "Class",
    6: "Method",
    7: "Property",
    8: "Field",
    9: "Constructor",
    10: "Enum",
    11: "Interface",
    12: "Function",
    13: "Variable",
    14: "Constant",
    15: "String",
    16: "Number",
    17: "Boolean",
    18: "Array",
    19: "Object",
    20: "Key",
    21: "Null",
    22: "EnumMember",
    23: "Struct",
    24: "Event",
    25: "Operator",
    26: "TypeParameter",
}

_CHILD_KEYS = ("children", "children_symbols")


def normalize_kind(raw: Any) -> str:
    if isinstance(raw, bool):
        raise ValueError(f"Invalid symbol kind: {raw!r}")
    if isinstance(raw, int):
        return LSP_SYMBOL_KINDS.get(raw, str(raw))
    text = str(raw or "").strip()
    if text.isdigit():
        return LSP_SYMBOL_KINDS.get(int(text), text)
    return text or "Unknown"


@dataclass(frozen=True, slots=True)
class SymbolNode:
    name: str
    kind: str
    children: tuple[SymbolNode, ...] = ()
    # Endpoint-specific attributes (locations, bodies) carried through untouched.
    detail: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SymbolNode:
        if not isinstance(payload, Mapping):
            raise ValueError(f"Symbol payload must be an object, got {type(payload).__name__}")
        name = payload.get("name")
        if not isinstance(name, str) or not name:
            name = str(payload.get("name_path", "")).rsplit("/", 1)[-1]
        if not name:
            raise ValueError(f"Symbol payload has no name: {dict(payload)!r}")

        raw_children: Sequence[Any] = ()
        for child_key in _CHILD_KEYS:
            value = payload.get(child_key)
            if value:
                raw_children = value
                break
        if isinstance(raw_children, (str, bytes, Mapping)):
            raise ValueError(f"Symbol children must be a list. name={name}")

        detail = {
            k: v
            for k, v in payload.items()
            if k not in ("name", "kind", *_CHILD_KEYS)
        }
        return cls(
            name=name,
            kind=normalize_kind(payload.get("kind")),
            children=tuple(cls.from_dict(child) for child in raw_children),
            detail=detail,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.detail)
        payload["name"] = self.name
        payload["kind"] = self.kind
        payload["children"] = [child.to_dict() for child in self.children]
        return payload


def parse_symbols(payload: Iterable[Mapping[str, Any]]) -> tuple[SymbolNode, ...]:
    return tuple(SymbolNode.from_dict(item) for item in payload)


def count_nodes(nodes: Iterable[SymbolNode]) -> int:
    total = 0
    stack = list(nodes)
    while stack:
        node = stack.pop()
        total += 1
        stack.extend(node.children)
    return total


def count_kinds(nodes: Iterable[SymbolNode]) -> Counter[str]:
    counts: Counter[str] = Counter()
    stack = list(nodes)
    while stack:
        node = stack.pop()
        counts[node.kind] += 1
        stack.extend(node.children)
    return counts


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: str
    fingerprint: str
    payload: tuple[SymbolNode, ...]
    indexed_at: str
    node_count: int


@dataclass(frozen=True, slots=True)
class SymbolMatch:
    key: str
    name_path: str
    node: SymbolNode

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def kind(self) -> str:
        return self.node.kind


@dataclass(frozen=True, slots=True)
class CacheStats:
    file_count: int
    total_symbol_count: int
    per_kind: Mapping[str, int]


@dataclass(frozen=True, slots=True)
class SearchOptions:
    kind: Optional[str] = None
    exact_match: bool = False
