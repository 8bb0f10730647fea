from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
from typing import Any, Dict, Mapping, Optional, Sequence

from agent_substrate.config.models import EndpointSettings
from agent_substrate.errors import EndpointDisconnected
from agent_substrate.invoker.interfaces import OperationInfo, unwrap_response

logger = logging.getLogger(__name__)

_STREAM_LIMIT_BYTES = 16 * 1024 * 1024
_CLOSE_TIMEOUT_SECONDS = 5.0
_HANDSHAKE_TIMEOUT_SECONDS = 30.0
_CLIENT_NAME = "agent-substrate"
_CLIENT_VERSION = "0.1.0"


class StdioEndpoint:
    """
    Endpoint running as a child process, one JSON object per line in each direction.

    With `handshake` enabled the MCP `initialize` request and the
    `notifications/initialized` notification are exchanged before any tool call.

    Requests carry an `id`; responses are matched by `request_id` (or `id`), so a
    response that arrives after its caller timed out is dropped.
    """

    def __init__(self, settings: EndpointSettings) -> None:
        if not settings.command:
            raise ValueError(f"Endpoint {settings.name} uses the stdio transport but has no command.")
        self.name = settings.name
        self._settings = settings
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._closed = False
        self._output_closed = False
        self.server_info: Dict[str, Any] = {}

    async def connect(self) -> None:
        env = {**os.environ, **dict(self._settings.env)}
        self._process = await asyncio.create_subprocess_exec(
            self._settings.command,
            *self._settings.args,
            cwd=self._settings.cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT_BYTES,
        )
        self._reader_task = asyncio.create_task(self._read_responses())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info("Endpoint process started. endpoint=%s pid=%s", self.name, self._process.pid)
        if self._settings.handshake:
            await self._initialize()

    async def _initialize(self) -> None:
        result = await self._request(
            "initialize",
            {
                "protocolVersion": self._settings.protocol_version,
                "capabilities": {},
                "clientInfo": {"name": _CLIENT_NAME, "version": _CLIENT_VERSION},
            },
            _HANDSHAKE_TIMEOUT_SECONDS,
        )
        if isinstance(result, dict):
            self.server_info = dict(result.get("serverInfo") or {})
        await self._send({"jsonrpc": "2.0", "method": "notifications/initialized"})
        logger.info(
            "Endpoint initialized. endpoint=%s server=%s",
            self.name,
            self.server_info.get("name", "unknown"),
        )

    async def list_operations(self, timeout: float) -> Sequence[OperationInfo]:
        result = await self._request("tools/list", {}, timeout)
        tools = result.get("tools", []) if isinstance(result, dict) else result
        return [OperationInfo.from_dict(tool) for tool in tools or ()]

    async def invoke(self, operation: str, args: Mapping[str, Any], timeout: float) -> Any:
        return await self._request("tools/call", {"name": operation, "arguments": dict(args)}, timeout)

    async def close(self) -> None:
        self._closed = True
        self._fail_pending(EndpointDisconnected(f"Endpoint {self.name} closed."))
        process = self._process
        self._process = None
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), timeout=_CLOSE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Endpoint process did not exit, killing it. endpoint=%s", self.name)
                process.kill()
                await process.wait()
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _send(self, message: Mapping[str, Any]) -> None:
        process = self._process
        if self._closed or self._output_closed or process is None or process.stdin is None:
            raise EndpointDisconnected(f"Endpoint {self.name} is not running.")
        if process.returncode is not None:
            raise EndpointDisconnected(f"Endpoint {self.name} exited with code {process.returncode}.")
        try:
            process.stdin.write(json.dumps(message).encode("utf-8") + b"\n")
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise EndpointDisconnected(f"Endpoint {self.name} stdin closed: {e}") from e

    async def _request(self, method: str, params: Mapping[str, Any], timeout: float) -> Any:
        request_id = f"{self.name}-{next(self._ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": dict(params)})
            payload = await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(request_id, None)
        return unwrap_response(payload)

    async def _read_responses(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        try:
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON endpoint output. endpoint=%s line=%s", self.name, line[:200])
                    continue
                if not isinstance(payload, dict):
                    continue
                request_id = payload.get("request_id", payload.get("id"))
                future = self._pending.get(str(request_id))
                if future is None or future.done():
                    logger.debug("Dropping unmatched endpoint response. endpoint=%s id=%s", self.name, request_id)
                    continue
                future.set_result(payload)
        except (ValueError, asyncio.LimitOverrunError) as e:
            logger.warning("Endpoint output stream failed. endpoint=%s error=%s", self.name, e)
        self._output_closed = True
        self._fail_pending(EndpointDisconnected(f"Endpoint {self.name} disconnected."))
        if not self._closed:
            logger.warning("Endpoint process output closed. endpoint=%s", self.name)

    async def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return
            message = raw.decode("utf-8", errors="replace").strip()
            if message and "INFO" not in message:
                logger.warning("Endpoint stderr. endpoint=%s message=%s", self.name, message)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
