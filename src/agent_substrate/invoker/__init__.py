"""Resilient invocation of operations on remote tool endpoints."""

from agent_substrate.invoker.classifier import FailureClassification, classify_failure
from agent_substrate.invoker.connection import EndpointConnection
from agent_substrate.invoker.interfaces import Endpoint, OperationInfo, result_text
from agent_substrate.invoker.invoker import (
    CallOutcome,
    CallRequest,
    InvocationAttempt,
    ResilientInvoker,
    build_connections,
)

__all__ = [
    "CallOutcome",
    "CallRequest",
    "Endpoint",
    "EndpointConnection",
    "FailureClassification",
    "InvocationAttempt",
    "OperationInfo",
    "ResilientInvoker",
    "build_connections",
    "classify_failure",
    "result_text",
]
