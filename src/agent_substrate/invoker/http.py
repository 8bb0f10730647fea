from __future__ import annotations

import itertools
import logging
from typing import Any, Mapping, Optional, Sequence

import aiohttp

from agent_substrate.config.models import EndpointSettings
from agent_substrate.errors import EndpointDisconnected
from agent_substrate.invoker.interfaces import OperationInfo, unwrap_response

logger = logging.getLogger(__name__)


class HttpEndpoint:
    """Endpoint reached with JSON-RPC 2.0 POST requests to a single URL."""

    def __init__(self, settings: EndpointSettings) -> None:
        if not settings.url:
            raise ValueError(f"Endpoint {settings.name} uses the http transport but has no url.")
        self.name = settings.name
        self._url = settings.url
        self._headers = dict(settings.headers)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        self._session = aiohttp.ClientSession(headers=self._headers)

    async def list_operations(self, timeout: float) -> Sequence[OperationInfo]:
        result = await self._request("tools/list", {}, timeout)
        tools = result.get("tools", []) if isinstance(result, dict) else result
        return [OperationInfo.from_dict(tool) for tool in tools or ()]

    async def invoke(self, operation: str, args: Mapping[str, Any], timeout: float) -> Any:
        return await self._request("tools/call", {"name": operation, "arguments": dict(args)}, timeout)

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _request(self, method: str, params: Mapping[str, Any], timeout: float) -> Any:
        session = self._session
        if session is None or session.closed:
            raise EndpointDisconnected(f"Endpoint {self.name} has no open session.")
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": dict(params)}
        async with session.post(
            self._url,
            json=body,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            resp.raise_for_status()
            payload = await resp.json(content_type=None)
        logger.debug("Endpoint responded. endpoint=%s method=%s", self.name, method)
        return unwrap_response(payload)
