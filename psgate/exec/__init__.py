"""Guarded PowerShell execution."""

from psgate.exec.types import (
    CommandRequest,
    ExecutionOutcome,
    ExecutionPolicy,
    ExecutionResult,
    SecurityVerdict,
    ThreatEntry,
)
from psgate.exec.errors import (
    ConfirmationRequiredError,
    GatewayError,
    RateLimitExceeded,
    SecurityBlockedError,
    SpawnFailure,
    ValidationError,
    WorkingDirectoryViolation,
)
from psgate.exec.aliases import AliasResolver
from psgate.exec.safety import SafetyClassifier
from psgate.exec.threats import ThreatTracker
from psgate.exec.ratelimit import RateLimiter
from psgate.exec.supervisor import ExecutionSupervisor
from psgate.exec.executor import CommandGateway, execute_command

__all__ = [
    "CommandRequest",
    "ExecutionOutcome",
    "ExecutionPolicy",
    "ExecutionResult",
    "SecurityVerdict",
    "ThreatEntry",
    "GatewayError",
    "ValidationError",
    "SecurityBlockedError",
    "ConfirmationRequiredError",
    "RateLimitExceeded",
    "SpawnFailure",
    "WorkingDirectoryViolation",
    "AliasResolver",
    "SafetyClassifier",
    "ThreatTracker",
    "RateLimiter",
    "ExecutionSupervisor",
    "CommandGateway",
    "execute_command",
]
