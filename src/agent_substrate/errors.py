"""Error taxonomy shared by the cache, the task graph and the invoker."""

from __future__ import annotations

from typing import Mapping, Sequence


class SubstrateError(Exception):
    """Base class for every error raised by agent_substrate."""


class FingerprintUnavailable(SubstrateError):
    def __init__(self, key: str, reason: str = "") -> None:
        self.key = key
        self.reason = reason
        message = f"Fingerprint unavailable for {key}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class UnknownTask(SubstrateError, KeyError):
    def __init__(self, task_id: int) -> None:
        self.task_id = task_id
        super().__init__(f"Unknown task id: {task_id}")

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidTransition(SubstrateError):
    def __init__(self, task_id: int, current: str, requested: str) -> None:
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid transition for task {task_id}: {current} -> {requested}")


class InvalidDependency(SubstrateError, ValueError):
    """A task references a dependency id that does not exist."""


class DependencyCycle(SubstrateError, ValueError):
    def __init__(self, cycle: Sequence[int]) -> None:
        self.cycle = tuple(cycle)
        path = " -> ".join(str(task_id) for task_id in self.cycle)
        super().__init__(f"Task dependencies form a cycle: {path}")


class DependencyUnresolved(SubstrateError):
    """
    No task is runnable while the plan is incomplete.

    `blocked` maps each pending task id to the dependency ids that are not completed.
    The task graph returns this as a report; drivers decide whether to raise it.
    """

    def __init__(self, blocked: Mapping[int, Sequence[int]]) -> None:
        self.blocked = {task_id: tuple(deps) for task_id, deps in blocked.items()}
        details = ", ".join(
            f"{task_id} waits on {list(deps)}" for task_id, deps in sorted(self.blocked.items())
        )
        super().__init__(f"No runnable task while plan is incomplete: {details}")


class InvocationError(SubstrateError):
    def __init__(self, endpoint: str, operation: str, message: str) -> None:
        self.endpoint = endpoint
        self.operation = operation
        super().__init__(message)


class RetryableInvocationError(InvocationError):
    """Network-class failure that is eligible for backoff and retry."""

    def __init__(
        self,
        endpoint: str,
        operation: str,
        message: str,
        *,
        disconnected: bool = False,
    ) -> None:
        self.disconnected = disconnected
        super().__init__(endpoint, operation, message)


class FatalInvocationError(InvocationError):
    """Failure reported by the endpoint itself; never retried."""


class RetriesExhausted(InvocationError):
    def __init__(self, endpoint: str, operation: str, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            endpoint,
            operation,
            f"Tool '{operation}' on endpoint '{endpoint}' failed after {attempts} attempts: {last_error}",
        )


class EndpointDisconnected(SubstrateError, ConnectionError):
    """The transport to an endpoint is gone (process exited, stream closed, session dropped)."""


class EndpointReportedError(SubstrateError):
    """The endpoint answered with an error: bad arguments, unknown tool, or a failure inside the tool."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(f"{code}: {message}" if code else message)


class EndpointNotConfigured(SubstrateError, KeyError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Endpoint is not configured: {name}")

    def __str__(self) -> str:
        return str(self.args[0])


__all__ = [
    "DependencyCycle",
    "DependencyUnresolved",
    "EndpointDisconnected",
    "EndpointNotConfigured",
    "EndpointReportedError",
    "FatalInvocationError",
    "FingerprintUnavailable",
    "InvalidDependency",
    "InvalidTransition",
    "InvocationError",
    "RetriesExhausted",
    "RetryableInvocationError",
    "SubstrateError",
    "UnknownTask",
]
