"""Deterministic classification of invocation failures for the retry policy."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal, Optional

import aiohttp

from agent_substrate.errors import EndpointDisconnected, EndpointReportedError

FailureClass = Literal["retryable", "fatal"]

_RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})

_DISCONNECT_PATTERNS: tuple[str, ...] = (
    "disconnected",
    "connection closed",
    "connection reset",
    "econnreset",
    "broken pipe",
    "eof",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "fetch failed",
    "etimedout",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "try again",
)


@dataclass(frozen=True, slots=True)
class FailureClassification:
    failure_class: FailureClass
    reason_code: str
    disconnected: bool = False
    matched_pattern: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.failure_class == "retryable"


def _match(message: str, patterns: tuple[str, ...]) -> Optional[str]:
    for pattern in patterns:
        if pattern in message:
            return pattern
    return None


def classify_failure(error: BaseException) -> FailureClassification:
    if isinstance(error, EndpointReportedError):
        return FailureClassification("fatal", "endpoint_error")
    if isinstance(error, EndpointDisconnected):
        return FailureClassification("retryable", "disconnected", disconnected=True)
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return FailureClassification("retryable", "timeout")
    if isinstance(error, aiohttp.ClientResponseError):
        if error.status in _RETRYABLE_STATUS:
            return FailureClassification("retryable", f"http_{error.status}")
        return FailureClassification("fatal", f"http_{error.status}")
    if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return FailureClassification("retryable", "network", disconnected=True)
    if isinstance(error, ConnectionError):
        return FailureClassification("retryable", "connection", disconnected=True)
    if isinstance(error, (ValueError, TypeError, KeyError, LookupError, FileNotFoundError, PermissionError)):
        return FailureClassification("fatal", "invalid_request")

    message = str(error).lower()
    pattern = _match(message, _DISCONNECT_PATTERNS)
    if pattern is not None:
        return FailureClassification("retryable", "disconnected", disconnected=True, matched_pattern=pattern)
    pattern = _match(message, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification("retryable", "transient", matched_pattern=pattern)
    return FailureClassification("fatal", "unclassified")
