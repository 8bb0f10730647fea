from __future__ import annotations

import asyncio
import logging
from typing import Callable, Literal, Optional

from agent_substrate.errors import EndpointDisconnected
from agent_substrate.invoker.interfaces import Endpoint

logger = logging.getLogger(__name__)

ConnectionState = Literal["disconnected", "connecting", "connected", "closed"]
EndpointFactory = Callable[[], Endpoint]


class EndpointConnection:
    """
    Connection state for one named endpoint.

    Each connection owns its own lock, so a reconnect in progress for one
    endpoint never blocks calls or reconnects on another. The generation number
    increases on every successful connect; callers hand back the generation they
    observed so that only the first of several concurrent failures reconnects.
    """

    def __init__(self, name: str, factory: EndpointFactory) -> None:
        self.name = name
        self._factory = factory
        self._endpoint: Optional[Endpoint] = None
        self._lock = asyncio.Lock()
        self._generation = 0
        self.state: ConnectionState = "disconnected"
        self.reconnect_count = 0
        self.last_error: Optional[str] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_connected(self) -> bool:
        return self.state == "connected" and self._endpoint is not None

    async def acquire(self) -> tuple[Endpoint, int]:
        """Return the live handle and its generation, connecting first if needed."""
        endpoint = self._endpoint
        if self.state == "connected" and endpoint is not None:
            return endpoint, self._generation
        async with self._lock:
            if self.state == "closed":
                self.state = "disconnected"
            if not self.is_connected:
                await self._open()
            endpoint = self._endpoint
            if endpoint is None:
                raise EndpointDisconnected(f"Endpoint {self.name} has no live connection.")
            return endpoint, self._generation

    async def reconnect(self, observed_generation: int) -> None:
        async with self._lock:
            if self.is_connected and self._generation != observed_generation:
                return
            logger.info("Reconnecting endpoint. endpoint=%s generation=%d", self.name, observed_generation)
            await self._close_current()
            await self._open()
            self.reconnect_count += 1

    def mark_disconnected(self, observed_generation: int) -> None:
        if self._generation == observed_generation and self.state == "connected":
            self.state = "disconnected"

    async def close(self) -> None:
        async with self._lock:
            await self._close_current()
            self.state = "closed"

    async def _open(self) -> None:
        self.state = "connecting"
        endpoint = self._factory()
        try:
            await endpoint.connect()
        except BaseException as e:
            self.state = "disconnected"
            self.last_error = str(e) or type(e).__name__
            try:
                await endpoint.close()
            except Exception:
                logger.debug("Closing a half-open endpoint failed. endpoint=%s", self.name, exc_info=True)
            raise
        self._endpoint = endpoint
        self._generation += 1
        self.state = "connected"
        self.last_error = None
        logger.debug("Endpoint connected. endpoint=%s generation=%d", self.name, self._generation)

    async def _close_current(self) -> None:
        endpoint = self._endpoint
        self._endpoint = None
        self.state = "disconnected"
        if endpoint is None:
            return
        try:
            await endpoint.close()
        except Exception:
            logger.warning("Closing endpoint failed. endpoint=%s", self.name, exc_info=True)
