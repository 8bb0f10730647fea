from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Sequence, TypeVar

from agent_substrate.config.models import EndpointSettings, InvokerSettings
from agent_substrate.errors import (
    EndpointNotConfigured,
    FatalInvocationError,
    RetriesExhausted,
    RetryableInvocationError,
)
from agent_substrate.invoker.classifier import FailureClassification, classify_failure
from agent_substrate.invoker.connection import EndpointConnection, EndpointFactory
from agent_substrate.invoker.http import HttpEndpoint
from agent_substrate.invoker.interfaces import Endpoint, OperationInfo
from agent_substrate.invoker.stdio import StdioEndpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")

LIST_OPERATIONS = "tools/list"


@dataclass(frozen=True, slots=True)
class InvocationAttempt:
    attempt_number: int
    classified_error: FailureClassification
    delay_applied: float
    message: str = ""


@dataclass(frozen=True, slots=True)
class CallRequest:
    endpoint: str
    operation: str
    args: Mapping[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass(frozen=True, slots=True)
class CallOutcome:
    request: CallRequest
    result: Any = None
    error: Optional[BaseException] = None
    attempts: tuple[InvocationAttempt, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None


def endpoint_factory(settings: EndpointSettings) -> EndpointFactory:
    def _build() -> Endpoint:
        if settings.transport == "http":
            return HttpEndpoint(settings)
        return StdioEndpoint(settings)

    return _build


def build_connections(endpoints: Iterable[EndpointSettings]) -> Dict[str, EndpointConnection]:
    connections: Dict[str, EndpointConnection] = {}
    for settings in endpoints:
        if settings.name in connections:
            raise ValueError(f"Duplicate endpoint name in configuration: {settings.name}")
        connections[settings.name] = EndpointConnection(settings.name, endpoint_factory(settings))
    return connections


class ResilientInvoker:
    """
    Calls operations on named endpoints with retry, exponential backoff and reconnection.

    Attempts start at 1. A non-retryable failure is raised at once as
    FatalInvocationError. A retryable one reconnects the endpoint when the
    connection dropped, then sleeps base_delay * 2 ** (attempt - 1) before the
    next attempt. After max_retries attempts RetriesExhausted is raised.
    """

    def __init__(
        self,
        connections: Mapping[str, EndpointConnection],
        settings: InvokerSettings = InvokerSettings(),
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._connections = dict(connections)
        self._settings = settings
        self._long_running = frozenset(settings.long_running_operations)
        self._sleep = sleep
        self._last_attempts: Dict[str, list[InvocationAttempt]] = {}

    @property
    def endpoint_names(self) -> list[str]:
        return sorted(self._connections)

    def connection(self, endpoint: str) -> EndpointConnection:
        connection = self._connections.get(endpoint)
        if connection is None:
            raise EndpointNotConfigured(endpoint)
        return connection

    def is_connected(self, endpoint: str) -> bool:
        connection = self._connections.get(endpoint)
        return connection is not None and connection.is_connected

    def timeout_for(self, operation: str) -> float:
        if operation in self._long_running:
            return self._settings.long_timeout_seconds
        return self._settings.default_timeout_seconds

    def last_attempts(self, endpoint: str) -> list[InvocationAttempt]:
        """
        Failed attempts of the call to `endpoint` that started last.

        Concurrent calls to one endpoint each keep their own record; `call_many`
        returns it on every outcome.
        """
        return list(self._last_attempts.get(endpoint, ()))

    async def call(
        self,
        endpoint: str,
        operation: str,
        args: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        attempts: Optional[list[InvocationAttempt]] = None,
    ) -> Any:
        effective_timeout = timeout if timeout is not None else self.timeout_for(operation)
        call_args = dict(args or {})

        async def _invoke(handle: Endpoint) -> Any:
            return await handle.invoke(operation, call_args, effective_timeout)

        return await self._run(
            endpoint,
            operation,
            _invoke,
            timeout=effective_timeout,
            max_retries=max_retries,
            base_delay=base_delay,
            attempts=attempts,
        )

    async def call_many(self, requests: Sequence[CallRequest]) -> list[CallOutcome]:
        """
        Dispatch every request concurrently and wait for all of them to settle.

        Outcomes are returned in request order. A failed call does not cancel the
        others; its exception is carried on the outcome.
        """
        records: list[list[InvocationAttempt]] = [[] for _ in requests]
        results = await asyncio.gather(
            *(
                self.call(r.endpoint, r.operation, r.args, timeout=r.timeout, attempts=record)
                for r, record in zip(requests, records)
            ),
            return_exceptions=True,
        )
        outcomes: list[CallOutcome] = []
        for request, result, record in zip(requests, results, records):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                outcomes.append(CallOutcome(request=request, error=result, attempts=tuple(record)))
            else:
                outcomes.append(CallOutcome(request=request, result=result, attempts=tuple(record)))
        return outcomes

    async def list_operations(self, endpoint: str) -> list[OperationInfo]:
        timeout = self._settings.default_timeout_seconds

        async def _list(handle: Endpoint) -> list[OperationInfo]:
            return list(await handle.list_operations(timeout))

        return await self._run(endpoint, LIST_OPERATIONS, _list, timeout=timeout)

    async def list_all_operations(self) -> Dict[str, list[OperationInfo] | str]:
        """Operations per endpoint; an endpoint that cannot be listed maps to its error message."""
        listed: Dict[str, list[OperationInfo] | str] = {}
        for name in self.endpoint_names:
            try:
                listed[name] = await self.list_operations(name)
            except (FatalInvocationError, RetriesExhausted) as e:
                logger.warning("Listing endpoint operations failed. endpoint=%s error=%s", name, e)
                listed[name] = str(e)
        return listed

    async def connect_all(self) -> Dict[str, Optional[str]]:
        """Connect every configured endpoint; returns the error message per endpoint, None on success."""

        async def _connect(connection: EndpointConnection) -> Optional[str]:
            try:
                await connection.acquire()
            except Exception as e:
                logger.warning("Endpoint connection failed. endpoint=%s error=%s", connection.name, e)
                return str(e) or type(e).__name__
            return None

        names = self.endpoint_names
        errors = await asyncio.gather(*(_connect(self._connections[name]) for name in names))
        return dict(zip(names, errors))

    async def close_all(self) -> None:
        await asyncio.gather(*(connection.close() for connection in self._connections.values()))

    async def _run(
        self,
        endpoint: str,
        operation: str,
        action: Callable[[Endpoint], Awaitable[T]],
        *,
        timeout: float,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        attempts: Optional[list[InvocationAttempt]] = None,
    ) -> T:
        connection = self.connection(endpoint)
        attempts_allowed = max(1, max_retries if max_retries is not None else self._settings.max_retries)
        delay_base = base_delay if base_delay is not None else self._settings.base_delay_seconds

        if attempts is None:
            attempts = []
        self._last_attempts[endpoint] = attempts
        last_error: Optional[RetryableInvocationError] = None

        for attempt in range(1, attempts_allowed + 1):
            generation = connection.generation

            async def _attempt() -> T:
                nonlocal generation
                handle, generation = await connection.acquire()
                return await action(handle)

            try:
                # Connecting counts against the per-call timeout too.
                result = await asyncio.wait_for(_attempt(), timeout=timeout)
                if attempt > 1:
                    logger.info(
                        "Tool call succeeded after retry. endpoint=%s operation=%s attempt=%d",
                        endpoint,
                        operation,
                        attempt,
                    )
                return result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classification = classify_failure(e)
                message = str(e) or type(e).__name__
                if not classification.retryable:
                    attempts.append(InvocationAttempt(attempt, classification, 0.0, message))
                    logger.error(
                        "Tool call failed with a non-retryable error. endpoint=%s operation=%s reason=%s error=%s",
                        endpoint,
                        operation,
                        classification.reason_code,
                        message,
                    )
                    raise FatalInvocationError(endpoint, operation, message) from e

                last_error = RetryableInvocationError(
                    endpoint,
                    operation,
                    message,
                    disconnected=classification.disconnected,
                )
                last_error.__cause__ = e
                if attempt >= attempts_allowed:
                    attempts.append(InvocationAttempt(attempt, classification, 0.0, message))
                    break

                if classification.disconnected:
                    connection.mark_disconnected(generation)
                    await self._reconnect(connection, generation, timeout)

                delay = delay_base * (2 ** (attempt - 1))
                attempts.append(InvocationAttempt(attempt, classification, delay, message))
                logger.warning(
                    "Tool call attempt failed, retrying. endpoint=%s operation=%s attempt=%d/%d delay=%.2fs error=%s",
                    endpoint,
                    operation,
                    attempt,
                    attempts_allowed,
                    delay,
                    message,
                )
                await self._sleep(delay)

        if last_error is None:
            raise RuntimeError(f"No attempt was made. endpoint={endpoint} operation={operation}")
        logger.error(
            "Tool call retries exhausted. endpoint=%s operation=%s attempts=%d",
            endpoint,
            operation,
            attempts_allowed,
        )
        raise RetriesExhausted(endpoint, operation, attempts_allowed, last_error) from last_error

    async def _reconnect(self, connection: EndpointConnection, generation: int, timeout: float) -> None:
        try:
            await asyncio.wait_for(connection.reconnect(generation), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The next attempt reconnects again and classifies that failure.
            logger.warning("Endpoint reconnect failed. endpoint=%s error=%s", connection.name, e)
