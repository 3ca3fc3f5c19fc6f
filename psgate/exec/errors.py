"""Errors raised at the boundary of a single invocation."""

from typing import Any

from psgate.exec.types import RateDecision, SecurityVerdict


class GatewayError(Exception):
    """Base class for refusals and hard failures; never a timeout or overflow."""

    code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        remediation: list[str] | None = None,
        verdict: SecurityVerdict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.remediation = remediation or []
        self.verdict = verdict

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "remediation": list(self.remediation),
        }
        if self.verdict is not None:
            data["securityAssessment"] = self.verdict.to_dict()
        return data


class ValidationError(GatewayError):
    """Malformed request: missing command, bad timeout, oversized text."""

    code = "VALIDATION_ERROR"


class SecurityBlockedError(GatewayError):
    """The classifier permanently forbids this command."""

    code = "SECURITY_BLOCKED"

    def __init__(self, verdict: SecurityVerdict):
        super().__init__(
            f"Blocked: {verdict.reason}",
            remediation=[
                f"Category {verdict.category} is permanently blocked; confirmation cannot override it",
                *verdict.recommendations,
            ],
            verdict=verdict,
        )


class ConfirmationRequiredError(GatewayError):
    """The command may run only after the caller acknowledges the risk."""

    code = "CONFIRMATION_REQUIRED"

    def __init__(self, verdict: SecurityVerdict):
        super().__init__(
            f"Confirmation required: {verdict.reason} (requires confirmed:true)",
            remediation=[
                "Re-send the request with confirmed: true to proceed",
                *[r for r in verdict.recommendations if "confirmed" not in r],
            ],
            verdict=verdict,
        )


class RateLimitExceeded(GatewayError):
    """Too many invocations from one client within the interval."""

    code = "RATE_LIMITED"

    def __init__(self, client_key: str, decision: RateDecision):
        super().__init__(
            f"Rate limit exceeded for {client_key}; retry in {decision.reset_ms}ms",
            remediation=[f"Wait {decision.reset_ms}ms before retrying"],
        )
        self.client_key = client_key
        self.decision = decision


class SpawnFailure(GatewayError):
    """The interpreter could not be started."""

    code = "SPAWN_FAILURE"


class WorkingDirectoryViolation(SpawnFailure):
    """Requested working directory lies outside the allowed roots."""

    code = "WORKING_DIRECTORY_VIOLATION"
