from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence
from urllib.parse import quote, unquote

from agent_substrate.store.io import atomic_write_bytes

logger = logging.getLogger(__name__)

_VALUE_SUFFIX = ".bin"


def key_to_path(root: Path, key: str) -> Path:
    segments = key.split("/")
    if any(not s or s in {".", ".."} for s in segments):
        raise ValueError(f"Invalid store key: {key!r}")
    dirs = [quote(s, safe="") for s in segments[:-1]]
    return root.joinpath(*dirs, quote(segments[-1], safe="") + _VALUE_SUFFIX)


def path_to_key(root: Path, path: Path) -> str:
    rel = path.relative_to(root)
    parts = list(rel.parts)
    parts[-1] = parts[-1][: -len(_VALUE_SUFFIX)]
    return "/".join(unquote(p) for p in parts)


class FileSystemStore:
    """One file per key below `root_dir`; writes go through a temp file and an atomic rename."""

    def __init__(self, root_dir: str) -> None:
        self._root = Path(root_dir)

    @property
    def root(self) -> Path:
        return self._root

    async def put(self, key: str, data: bytes) -> None:
        path = key_to_path(self._root, key)
        await asyncio.to_thread(atomic_write_bytes, path, data)

    async def get(self, key: str) -> Optional[bytes]:
        path = key_to_path(self._root, key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None

    async def delete(self, key: str) -> None:
        path = key_to_path(self._root, key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return

    async def list(self, prefix: str = "") -> Sequence[str]:
        return await asyncio.to_thread(self._list_sync, prefix)

    def _list_sync(self, prefix: str) -> list[str]:
        if not self._root.exists():
            return []
        keys: list[str] = []
        for path in self._root.rglob("*" + _VALUE_SUFFIX):
            if not path.is_file():
                continue
            try:
                key = path_to_key(self._root, path)
            except ValueError:
                logger.warning("Skipping file outside the store root. path=%s", path)
                continue
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)
