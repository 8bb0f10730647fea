from __future__ import annotations

from typing import Dict, Optional, Sequence


class InMemoryStore:
    """Dict-backed store for tests and throwaway sessions."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}

    async def put(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str = "") -> Sequence[str]:
        return sorted(key for key in self._data if key.startswith(prefix))

    def __len__(self) -> int:
        return len(self._data)
