from __future__ import annotations

from typing import Optional, Protocol, Sequence


class DurableStore(Protocol):
    """
    Narrow key/value persistence interface the core writes through to.

    Keys are `/`-separated strings. Values are opaque bytes. Implementations
    only need to be safe for a single process.
    """

    async def put(self, key: str, data: bytes) -> None:
        """Store `data` under `key`, replacing any previous value. Raise on failure."""
        ...

    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when the key is not present."""
        ...

    async def delete(self, key: str) -> None:
        """Remove `key`. Deleting a missing key is not an error."""
        ...

    async def list(self, prefix: str = "") -> Sequence[str]:
        """Return every stored key starting with `prefix`, sorted."""
        ...
