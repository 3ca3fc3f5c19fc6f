"""Type definitions for guarded command execution."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

from psgate.utils.helpers import convert_to_camel

# Classification outcome
SecurityLevel = Literal["SAFE", "RISKY", "DANGEROUS", "CRITICAL", "BLOCKED", "UNKNOWN"]

RiskTier = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]

# What happens when captured output crosses a ceiling
OverflowStrategy = Literal["return", "truncate", "terminate"]

OVERFLOW_STRATEGIES: tuple[str, ...] = ("return", "truncate", "terminate")

TerminationReason = Literal["completed", "timeout"]

StreamName = Literal["stdout", "stderr"]


@dataclass
class CommandRequest:
    """A request to run a PowerShell command or script."""
    command: str | None = None
    script: str | None = None
    working_directory: str | None = None
    timeout_seconds: float | None = None
    timeout: float | None = None  # Deprecated alias of timeout_seconds
    confirmed: bool = False
    override: bool = False
    adaptive_timeout: bool = False
    adaptive_extend_window_ms: int | None = None
    adaptive_extend_step_ms: int | None = None
    adaptive_max_total_sec: float | None = None
    session_key: str | None = None

    @property
    def text(self) -> str:
        """The command or script body, whichever was supplied."""
        return self.command or self.script or ""

    @property
    def acknowledged(self) -> bool:
        return self.confirmed or self.override


@dataclass
class SecurityVerdict:
    """Classifier output for one command."""
    level: SecurityLevel
    risk: RiskTier
    category: str
    reason: str
    blocked: bool = False
    requires_prompt: bool = False
    matched_patterns: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return convert_to_camel(asdict(self))


@dataclass
class ThreatEntry:
    """Aggregated UNKNOWN-verdict occurrences for one normalized command."""
    key: str
    sample: str  # Redacted form, never the raw command
    first_seen: datetime
    last_seen: datetime
    count: int
    session_id: str
    risk: RiskTier
    category: str
    possible_aliases: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["first_seen"] = self.first_seen.isoformat()
        data["last_seen"] = self.last_seen.isoformat()
        return convert_to_camel(data)


@dataclass(frozen=True)
class AdaptiveSettings:
    """Resolved adaptive timeout knobs (milliseconds)."""
    extend_window_ms: int
    extend_step_ms: int
    max_total_ms: int

    @property
    def check_interval_ms(self) -> int:
        return max(50, min(self.extend_window_ms // 2, 1000))


@dataclass(frozen=True)
class ExecutionPolicy:
    """Everything the supervisor needs to run one command."""
    timeout_ms: int
    overflow_strategy: OverflowStrategy = "return"
    max_output_bytes: int = 512 * 1024
    max_output_lines: int = 4000
    max_command_chars: int = 10000
    adaptive: AdaptiveSettings | None = None
    self_terminate: bool = True
    self_terminate_lead_ms: int = 300
    watchdog_grace_ms: int = 1500
    kill_verify_window_ms: int = 1500


@dataclass(frozen=True)
class OutputChunk:
    """An ordered fragment of captured output."""
    stream: StreamName
    seq: int
    text: str
    bytes: int


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one supervised process."""
    stdout: str
    stderr: str
    exit_code: int | None
    success: bool
    duration_ms: int
    timed_out: bool
    termination_reason: TerminationReason
    truncated: bool
    overflow: bool
    overflow_strategy: OverflowStrategy
    configured_timeout_ms: int
    effective_timeout_ms: int
    shell_exe: str
    chunks: tuple[OutputChunk, ...] = ()
    adaptive_extensions: int = 0
    kill_escalated: bool = False
    watchdog_triggered: bool = False
    internal_self_destruct: bool = False
    reason: str | None = None
    working_directory: str | None = None
    total_bytes: int = 0
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = convert_to_camel(asdict(self))
        # Wire name kept for existing clients
        data["duration_ms"] = data.pop("durationMs")
        return data


@dataclass(frozen=True)
class RateDecision:
    """Result of a rate limiter check."""
    allowed: bool
    remaining: int
    reset_ms: int


@dataclass
class RateBucket:
    """Token bucket state for one client."""
    tokens: float
    last_refill_at: float  # Monotonic milliseconds


@dataclass(frozen=True)
class ExecutionOutcome:
    """Verdict plus result for an executed request."""
    verdict: SecurityVerdict
    result: ExecutionResult
    timeout_seconds: float

    def to_dict(self) -> dict[str, Any]:
        data = self.result.to_dict()
        data["securityAssessment"] = self.verdict.to_dict()
        data["originalTimeoutSeconds"] = self.timeout_seconds
        return data
