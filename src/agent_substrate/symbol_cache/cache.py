from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, Iterator, Optional, Sequence

from agent_substrate.errors import FingerprintUnavailable
from agent_substrate.store.interfaces import DurableStore
from agent_substrate.symbol_cache.io import decode_entry, encode_entry, entry_store_key
from agent_substrate.symbol_cache.models import (
    CacheEntry,
    CacheStats,
    SearchOptions,
    SymbolMatch,
    SymbolNode,
    count_kinds,
    count_nodes,
)
from agent_substrate.symbol_cache.utils import compute_fingerprint, format_rfc3339, utc_now

logger = logging.getLogger(__name__)

NAME_PATH_SEPARATOR = "/"


def _walk(
    key: str,
    nodes: Sequence[SymbolNode],
    needle: str,
    options: SearchOptions,
    parent_path: str = "",
) -> Iterator[SymbolMatch]:
    for node in nodes:
        name_path = f"{parent_path}{NAME_PATH_SEPARATOR}{node.name}" if parent_path else node.name
        name = node.name.lower()
        matched = name == needle if options.exact_match else needle in name
        if matched and (options.kind is None or node.kind == options.kind):
            yield SymbolMatch(key=key, name_path=name_path, node=node)
        if node.children:
            yield from _walk(key, node.children, needle, options, name_path)


class SymbolSearch:
    """
    Lazy search over the cache.

    Every call to `iter()` starts a fresh walk over a snapshot of the entries
    present at that moment, so the same object can be iterated more than once.
    """

    def __init__(self, cache: SymbolCache, query: str, options: SearchOptions) -> None:
        self._cache = cache
        self._needle = query.lower()
        self._options = options

    def __iter__(self) -> Iterator[SymbolMatch]:
        for entry in self._cache.snapshot():
            yield from _walk(entry.key, entry.payload, self._needle, self._options)


class SymbolCache:
    """
    Content-addressed cache of per-file symbol trees.

    The in-memory map is authoritative. Every mutation writes through to the
    durable store before the new entry becomes visible; entries are immutable
    and replaced by a single dict assignment. Persisted entries from earlier
    sessions are paged in by a background reload, and a lookup for a key the
    reload has not reached yet reads that single key from the store.

    `clear()` waits for in-flight mutations and holds new ones back until the
    store is empty; reads started before a clear are discarded when they land.
    """

    def __init__(
        self,
        store: DurableStore,
        *,
        key_prefix: str = "symbols/",
        reload_batch_size: int = 64,
    ) -> None:
        self._store = store
        self._key_prefix = key_prefix
        self._reload_batch_size = max(1, int(reload_batch_size))

        self._entries: Dict[str, CacheEntry] = {}
        self._kind_counts: Counter[str] = Counter()
        self._total_nodes = 0

        self._key_locks: Dict[str, asyncio.Lock] = {}
        # Keys mutated in this session; persisted copies must never shadow them.
        self._touched: set[str] = set()
        self._fully_loaded = False
        self._reload_task: Optional[asyncio.Task] = None

        # Bumped by every clear; store reads from an older generation are dropped.
        self._generation = 0
        self._active_mutations = 0
        self._mutations_idle = asyncio.Event()
        self._mutations_idle.set()
        self._mutations_open = asyncio.Event()
        self._mutations_open.set()
        self._clear_lock = asyncio.Lock()

    @property
    def fully_loaded(self) -> bool:
        return self._fully_loaded

    def _store_key(self, key: str) -> str:
        return entry_store_key(self._key_prefix, key)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    @asynccontextmanager
    async def _mutating(self, key: str) -> AsyncIterator[None]:
        while not self._mutations_open.is_set():
            await self._mutations_open.wait()
        self._active_mutations += 1
        self._mutations_idle.clear()
        try:
            async with self._lock_for(key):
                yield
        finally:
            self._active_mutations -= 1
            if self._active_mutations == 0:
                self._mutations_idle.set()

    def _swap(self, key: str, entry: Optional[CacheEntry]) -> None:
        previous = self._entries.get(key)
        if previous is not None:
            self._kind_counts.subtract(count_kinds(previous.payload))
            self._total_nodes -= previous.node_count
        if entry is None:
            self._entries.pop(key, None)
        else:
            self._entries[key] = entry
            self._kind_counts.update(count_kinds(entry.payload))
            self._total_nodes += entry.node_count
        self._kind_counts = +self._kind_counts

    def snapshot(self) -> list[CacheEntry]:
        return list(self._entries.values())

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def lookup(self, key: str, current_fingerprint: Optional[str]) -> Optional[tuple[SymbolNode, ...]]:
        """
        Return the cached payload only if its fingerprint equals `current_fingerprint`.

        None means "fetch required": the key was never indexed, the entry is stale,
        or the fingerprint could not be computed.
        """
        if current_fingerprint is None:
            return None
        entry = self._entries.get(key)
        if entry is None and not self._fully_loaded and key not in self._touched:
            entry = await self._load_one(key)
        if entry is None or entry.fingerprint != current_fingerprint:
            return None
        return entry.payload

    async def register(
        self,
        key: str,
        fingerprint: Optional[str],
        payload: Iterable[SymbolNode],
    ) -> CacheEntry:
        if fingerprint is None:
            raise FingerprintUnavailable(key)
        nodes = tuple(payload)
        entry = CacheEntry(
            key=key,
            fingerprint=fingerprint,
            payload=nodes,
            indexed_at=format_rfc3339(utc_now()),
            node_count=count_nodes(nodes),
        )
        async with self._mutating(key):
            await self._store.put(self._store_key(key), encode_entry(entry))
            self._touched.add(key)
            self._swap(key, entry)
        logger.debug("Symbol cache entry registered. key=%s nodes=%d", key, entry.node_count)
        return entry

    async def invalidate(self, key: str) -> bool:
        async with self._mutating(key):
            existed = key in self._entries
            await self._store.delete(self._store_key(key))
            self._touched.add(key)
            self._swap(key, None)
        if existed:
            logger.debug("Symbol cache entry invalidated. key=%s", key)
        return existed

    async def clear(self) -> None:
        async with self._clear_lock:
            self._mutations_open.clear()
            try:
                await self._cancel_reload()
                await self._mutations_idle.wait()
                self._generation += 1

                self._entries = {}
                self._kind_counts = Counter()
                self._total_nodes = 0
                self._touched = set()
                self._fully_loaded = True

                persisted = await self._store.list(self._key_prefix)
                for store_key in persisted:
                    await self._store.delete(store_key)
            finally:
                self._mutations_open.set()
        logger.info("Symbol cache cleared. removed_keys=%d", len(persisted))

    def search(
        self,
        query: str,
        *,
        kind: Optional[str] = None,
        exact_match: bool = False,
    ) -> SymbolSearch:
        return SymbolSearch(self, query, SearchOptions(kind=kind, exact_match=exact_match))

    def stats(self) -> CacheStats:
        return CacheStats(
            file_count=len(self._entries),
            total_symbol_count=self._total_nodes,
            per_kind=dict(sorted(self._kind_counts.items())),
        )

    def files_with_suffix(self, suffix: str) -> list[dict]:
        return [
            {"key": entry.key, "node_count": entry.node_count, "indexed_at": entry.indexed_at}
            for entry in sorted(self._entries.values(), key=lambda e: e.key)
            if entry.key.endswith(suffix)
        ]

    def export(self) -> dict:
        stats = self.stats()
        return {
            "fully_loaded": self._fully_loaded,
            "keys": sorted(self._entries),
            "stats": {
                "file_count": stats.file_count,
                "total_symbol_count": stats.total_symbol_count,
                "per_kind": dict(stats.per_kind),
            },
        }

    # File-backed helpers: the fingerprint is recomputed from the live file on every call.

    async def lookup_file(self, key: str, path: Path) -> Optional[tuple[SymbolNode, ...]]:
        fingerprint = await asyncio.to_thread(compute_fingerprint, path)
        return await self.lookup(key, fingerprint)

    async def register_file(self, key: str, path: Path, payload: Iterable[SymbolNode]) -> CacheEntry:
        fingerprint = await asyncio.to_thread(compute_fingerprint, path)
        if fingerprint is None:
            raise FingerprintUnavailable(key, f"cannot read {path}")
        return await self.register(key, fingerprint, payload)

    async def needs_refresh(self, key: str, path: Path) -> bool:
        return await self.lookup_file(key, path) is None

    # Reload of entries persisted by earlier sessions.

    def start_background_reload(self) -> asyncio.Task:
        failed = self._reload_task is not None and self._reload_task.done() and not self._fully_loaded
        if self._reload_task is None or failed:
            self._reload_task = asyncio.create_task(self._reload())
            self._reload_task.add_done_callback(_log_reload_result)
        return self._reload_task

    async def wait_loaded(self) -> None:
        while not self._fully_loaded:
            await self._mutations_open.wait()
            if self._fully_loaded:
                return
            task = self.start_background_reload()
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                # A clear cancels the reload; only a cancellation of the caller propagates.
                if not task.cancelled():
                    raise

    async def close(self) -> None:
        await self._cancel_reload()

    async def _cancel_reload(self) -> None:
        task = self._reload_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("Symbol cache reload cancelled.")
        finally:
            self._reload_task = None

    async def _load_one(self, key: str) -> Optional[CacheEntry]:
        generation = self._generation
        data = await self._store.get(self._store_key(key))
        if generation != self._generation:
            return self._entries.get(key)
        if data is None:
            return None
        entry = self._decode(key, data)
        if entry is None or entry.key != key:
            return None
        if key in self._entries or key in self._touched or self._fully_loaded:
            return self._entries.get(key)
        self._swap(key, entry)
        return entry

    async def _reload(self) -> None:
        generation = self._generation
        store_keys = await self._store.list(self._key_prefix)
        loaded = 0
        for start in range(0, len(store_keys), self._reload_batch_size):
            batch = store_keys[start : start + self._reload_batch_size]
            blobs = await asyncio.gather(*(self._store.get(store_key) for store_key in batch))
            if generation != self._generation:
                logger.info("Symbol cache reload abandoned after a clear.")
                return
            for store_key, data in zip(batch, blobs):
                if data is None:
                    continue
                entry = self._decode(store_key, data)
                if entry is None:
                    continue
                if entry.key in self._entries or entry.key in self._touched:
                    continue
                self._swap(entry.key, entry)
                loaded += 1
        self._fully_loaded = True
        logger.info(
            "Symbol cache reload completed. persisted_keys=%d loaded=%d",
            len(store_keys),
            loaded,
        )

    def _decode(self, label: str, data: bytes) -> Optional[CacheEntry]:
        try:
            return decode_entry(data)
        except ValueError as e:
            logger.warning("Skipping unreadable symbol cache entry. key=%s error=%s", label, e)
            return None


def _log_reload_result(task: asyncio.Task) -> None:
    try:
        task.result()
    except asyncio.CancelledError:
        return
    except Exception:
        logger.exception("Symbol cache reload failed.")
