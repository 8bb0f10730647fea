from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence

from agent_substrate.errors import EndpointReportedError


@dataclass(frozen=True, slots=True)
class OperationInfo:
    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> OperationInfo:
        return cls(
            name=str(payload["name"]),
            description=str(payload.get("description") or ""),
            input_schema=dict(payload.get("inputSchema") or payload.get("input_schema") or {}),
        )


class Endpoint(Protocol):
    """
    A connected handle to one remote tool endpoint.

    Transports raise `EndpointDisconnected` when the underlying channel is gone and
    `EndpointReportedError` when the endpoint answers with an error.
    """

    name: str

    async def connect(self) -> None:
        ...

    async def list_operations(self, timeout: float) -> Sequence[OperationInfo]:
        ...

    async def invoke(self, operation: str, args: Mapping[str, Any], timeout: float) -> Any:
        ...

    async def close(self) -> None:
        ...


def unwrap_response(payload: Any) -> Any:
    """
    Extract the result from a response envelope.

    Accepts both `{"ok": bool, "result": ..., "error": {...}}` line envelopes and
    JSON-RPC 2.0 `{"result": ...}` / `{"error": {...}}` objects.
    """
    if not isinstance(payload, dict):
        raise EndpointReportedError("INVALID_RESPONSE", f"Response must be an object, got {type(payload).__name__}")
    error = payload.get("error")
    if payload.get("ok") is False or error:
        if isinstance(error, dict):
            raise EndpointReportedError(str(error.get("code", "")), str(error.get("message", "")))
        raise EndpointReportedError("", str(error or "Endpoint reported an error."))
    result = payload.get("result")
    if isinstance(result, dict) and result.get("isError"):
        raise EndpointReportedError("TOOL_ERROR", _content_text(result) or "Tool reported an error.")
    return result


def _content_text(result: Mapping[str, Any]) -> str:
    parts = []
    for item in result.get("content") or ():
        if isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text", "")))
    return "\n".join(parts)


def result_text(result: Any) -> Optional[str]:
    """Text of a tool result: the joined `content[].text` blocks, a bare string, or None."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        if "content" in result:
            return _content_text(result)
        text = result.get("result")
        if isinstance(text, str):
            return text
    return None
