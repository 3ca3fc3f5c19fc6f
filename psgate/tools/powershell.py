"""PowerShell execution and threat analysis tools."""

import json
from typing import Any

from psgate.exec.errors import (
    ConfirmationRequiredError,
    GatewayError,
    RateLimitExceeded,
    SecurityBlockedError,
)
from psgate.exec.executor import CommandGateway
from psgate.exec.types import CommandRequest
from psgate.tools.base import Tool
from psgate.utils.helpers import camel_to_snake

REQUEST_FIELDS = {
    "command",
    "script",
    "working_directory",
    "timeout_seconds",
    "timeout",
    "confirmed",
    "override",
    "adaptive_timeout",
    "adaptive_extend_window_ms",
    "adaptive_extend_step_ms",
    "adaptive_max_total_sec",
    "session_key",
}

# Older argument names still seen from clients
ARG_ALIASES = {
    "cwd": "working_directory",
    "working_dir": "working_directory",
    "timeout_sec": "timeout_seconds",
}


def build_request(kwargs: dict[str, Any]) -> CommandRequest:
    """CommandRequest from camelCase or snake_case tool arguments."""
    fields: dict[str, Any] = {}
    for key, value in kwargs.items():
        name = camel_to_snake(key)
        name = ARG_ALIASES.get(name, name)
        if name in REQUEST_FIELDS and value is not None:
            fields[name] = value
    return CommandRequest(**fields)


def refusal_payload(error: GatewayError) -> dict[str, Any]:
    """Structured refusal; no process was started."""
    payload: dict[str, Any] = {"success": False}
    if isinstance(error, SecurityBlockedError):
        payload["blocked"] = True
    elif isinstance(error, ConfirmationRequiredError):
        payload["confirmationRequired"] = True
    elif isinstance(error, RateLimitExceeded):
        payload["rateLimited"] = True
        payload["resetMs"] = error.decision.reset_ms
    payload["error"] = {
        "code": error.code,
        "message": error.message,
        "remediation": list(error.remediation),
    }
    if error.verdict is not None:
        payload["securityAssessment"] = error.verdict.to_dict()
    return payload


class RunPowerShellTool(Tool):
    """Runs a PowerShell command through the gateway."""

    def __init__(self, gateway: CommandGateway, client_key: str | None = None):
        self.gateway = gateway
        self.client_key = client_key

    @property
    def name(self) -> str:
        return "run-powershell"

    @property
    def description(self) -> str:
        limits = self.gateway.config.limits
        return (
            "Execute a PowerShell command after security classification.\n\n"
            "SAFE commands run directly; RISKY and UNKNOWN commands need confirmed: true; "
            "BLOCKED and CRITICAL commands never run.\n"
            f"Default timeout {limits.default_timeout_seconds:g}s, max {limits.max_timeout_seconds:g}s."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "PowerShell command to execute"},
                "script": {"type": "string", "description": "Multi-line script (alternative to command)"},
                "workingDirectory": {"type": "string", "description": "Working directory"},
                "timeoutSeconds": {"type": "number", "description": "Timeout in seconds"},
                "confirmed": {"type": "boolean", "description": "Acknowledge a RISKY/UNKNOWN command"},
                "adaptiveTimeout": {"type": "boolean", "description": "Extend the deadline while output flows"},
                "adaptiveExtendWindowMs": {"type": "integer"},
                "adaptiveExtendStepMs": {"type": "integer"},
                "adaptiveMaxTotalSec": {"type": "number"},
            },
        }

    async def execute(self, **kwargs: Any) -> str:
        request = build_request(kwargs)
        try:
            outcome = await self.gateway.execute(request, self.client_key)
        except GatewayError as e:
            return json.dumps(refusal_payload(e), ensure_ascii=False)
        return json.dumps(outcome.to_dict(), ensure_ascii=False)


class ThreatAnalysisTool(Tool):
    """Reports aggregated unknown-command statistics."""

    def __init__(self, gateway: CommandGateway):
        self.gateway = gateway

    @property
    def name(self) -> str:
        return "threat-analysis"

    @property
    def description(self) -> str:
        return "Summarize unknown commands seen this session and the aliases they used."

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> str:
        stats = self.gateway.tracker.stats()
        stats["metrics"] = self.gateway.metrics.snapshot()
        return json.dumps(stats, ensure_ascii=False)
