"""Command gateway: rate limit, validate, classify, then supervise."""

import os

from loguru import logger

from psgate.config.schema import Config
from psgate.exec.errors import (
    ConfirmationRequiredError,
    RateLimitExceeded,
    SecurityBlockedError,
    SpawnFailure,
    ValidationError,
)
from psgate.exec.ratelimit import RateLimiter, default_client_key
from psgate.exec.safety import LearnedPatternProvider, SafetyClassifier
from psgate.exec.shell import ShellDetector
from psgate.exec.supervisor import ExecutionSupervisor
from psgate.exec.threats import JournalSink, ThreatTracker
from psgate.exec.types import (
    OVERFLOW_STRATEGIES,
    AdaptiveSettings,
    CommandRequest,
    ExecutionOutcome,
    ExecutionPolicy,
    OverflowStrategy,
    SecurityVerdict,
)
from psgate.exec.workdir import WorkingDirectoryPolicy
from psgate.learning.journal import ThreatJournal
from psgate.learning.store import LearnedPatternStore
from psgate.metrics.registry import ExecutionRecord, MetricsRegistry

OVERFLOW_ENV = "PSGATE_OVERFLOW_STRATEGY"
DEPRECATED_TIMEOUT_WARNING = "Parameter 'timeout' is deprecated; use 'timeout_seconds' (seconds)."
PREVIEW_CHARS = 120


def _preview(command: str) -> str:
    flat = " ".join(command.split())
    return flat if len(flat) <= PREVIEW_CHARS else flat[:PREVIEW_CHARS - 3] + "..."


class CommandGateway:
    """
    Owns one of each component and runs requests through them.

    Security flow:
    1. Rate limit the client
    2. Validate the request
    3. Classify the command (UNKNOWN feeds the threat tracker)
    4. Refuse blocked commands; require confirmation for risky ones
    5. Run under the supervisor and record metrics
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        classifier: SafetyClassifier | None = None,
        limiter: RateLimiter | None = None,
        tracker: ThreatTracker | None = None,
        supervisor: ExecutionSupervisor | None = None,
        metrics: MetricsRegistry | None = None,
        journal: JournalSink | None = None,
        learned_provider: LearnedPatternProvider | None = None,
    ):
        self.config = config or Config()
        cfg = self.config

        if learned_provider is None and cfg.learning.enabled:
            learned_provider = LearnedPatternStore(cfg.learned_path)
        if journal is None and cfg.learning.enabled:
            journal = ThreatJournal(cfg.journal_path, cfg.learning.max_journal_kb * 1024)

        self.classifier = classifier or SafetyClassifier(
            learned_provider=learned_provider,
            additional_safe=cfg.security.additional_safe,
            additional_blocked=cfg.security.additional_blocked,
        )
        self.limiter = limiter or RateLimiter(
            burst=cfg.rate_limit.burst,
            max_requests=cfg.rate_limit.max_requests,
            interval_ms=cfg.rate_limit.interval_ms,
            enabled=cfg.rate_limit.enabled,
        )
        self.tracker = tracker or ThreatTracker(
            journal=journal,
            resolver=self.classifier.resolver,
            max_entries=cfg.security.max_tracked_threats,
        )
        self.supervisor = supervisor or ExecutionSupervisor(
            detector=ShellDetector(cfg.shell.executable, cfg.shell.allow_posix_fallback),
            workdir_policy=WorkingDirectoryPolicy(
                enforce=cfg.security.working_directory.enforce,
                allowed_roots=cfg.security.working_directory.allowed_roots,
            ),
        )
        self.metrics = metrics or MetricsRegistry(cfg.metrics.history_size)

    # ── Validation ──

    def validate(self, request: CommandRequest) -> tuple[float, list[str]]:
        """Check the request; returns (timeout_seconds, warnings)."""
        limits = self.config.limits
        warnings: list[str] = []

        has_command = bool(request.command and request.command.strip())
        has_script = bool(request.script and request.script.strip())
        if has_command == has_script:
            raise ValidationError(
                "Exactly one of 'command' or 'script' must be provided",
                remediation=["Pass the PowerShell text as 'command'"],
            )

        timeout = request.timeout_seconds
        if request.timeout is not None:
            warnings.append(DEPRECATED_TIMEOUT_WARNING)
            if timeout is None:
                timeout = request.timeout

        if timeout is None or timeout == 0:
            timeout = limits.default_timeout_seconds
        elif timeout < 0 or timeout > limits.max_timeout_seconds:
            raise ValidationError(
                f"timeout_seconds must be between 0 and {limits.max_timeout_seconds:g}, got {timeout:g}",
                remediation=[f"Use a timeout of at most {limits.max_timeout_seconds:g} seconds"],
            )
        elif timeout >= limits.long_timeout_warning_seconds:
            # Explicit values only
            warnings.append(
                f"Timeout of {timeout:g}s is unusually long; prefer adaptive_timeout for chatty commands"
            )

        if len(request.text) > limits.max_command_chars:
            raise ValidationError(
                f"Command length {len(request.text)} exceeds limit {limits.max_command_chars}",
                remediation=["Split the command or move it into a script file"],
            )
        return float(timeout), warnings

    def overflow_strategy(self) -> OverflowStrategy:
        env = os.environ.get(OVERFLOW_ENV, "").strip().lower()
        if env in OVERFLOW_STRATEGIES:
            return env  # type: ignore[return-value]
        if env:
            logger.warning(f"Ignoring invalid {OVERFLOW_ENV}={env!r}")
        return self.config.limits.overflow_strategy

    def build_policy(self, request: CommandRequest, timeout_seconds: float) -> ExecutionPolicy:
        limits = self.config.limits
        timeout_ms = int(timeout_seconds * 1000)

        adaptive = None
        if request.adaptive_timeout:
            defaults = self.config.adaptive
            max_total_sec = request.adaptive_max_total_sec or min(
                timeout_seconds * defaults.max_total_multiplier,
                defaults.max_total_ceiling_seconds,
            )
            adaptive = AdaptiveSettings(
                extend_window_ms=request.adaptive_extend_window_ms or defaults.extend_window_ms,
                extend_step_ms=request.adaptive_extend_step_ms or defaults.extend_step_ms,
                max_total_ms=max(int(max_total_sec * 1000), timeout_ms),
            )

        return ExecutionPolicy(
            timeout_ms=timeout_ms,
            overflow_strategy=self.overflow_strategy(),
            max_output_bytes=self.config.max_output_bytes,
            max_output_lines=limits.max_lines,
            max_command_chars=limits.max_command_chars,
            adaptive=adaptive,
            self_terminate=limits.self_terminate,
            self_terminate_lead_ms=limits.self_terminate_lead_ms,
            watchdog_grace_ms=limits.watchdog_grace_ms,
            kill_verify_window_ms=limits.kill_verify_window_ms,
        )

    # ── Pipeline ──

    def classify(self, command: str) -> SecurityVerdict:
        """Classify, recording UNKNOWN verdicts with the threat tracker."""
        verdict = self.classifier.classify(command)
        if verdict.level == "UNKNOWN":
            self.tracker.record(command, verdict)
        return verdict

    def _refuse(self, verdict: SecurityVerdict, command: str) -> None:
        if verdict.blocked:
            self.metrics.record(ExecutionRecord(
                level=verdict.level, blocked=True, duration_ms=0, attempt=True,
            ))
            logger.warning(f"Blocked [{verdict.level}/{verdict.category}]: {_preview(command)}")
            raise SecurityBlockedError(verdict)

        self.metrics.record(ExecutionRecord(
            level=verdict.level, blocked=False, duration_ms=0, attempt=True,
            confirmation_required=True,
        ))
        logger.warning(f"Confirmation required [{verdict.level}/{verdict.category}]: {_preview(command)}")
        raise ConfirmationRequiredError(verdict)

    async def execute(self, request: CommandRequest, client_key: str | None = None) -> ExecutionOutcome:
        """Run a request end to end. Refusals raise GatewayError subclasses."""
        key = request.session_key or client_key or default_client_key()
        decision = self.limiter.allow(key)
        if not decision.allowed:
            logger.warning(f"Rate limited: {key} (reset in {decision.reset_ms}ms)")
            raise RateLimitExceeded(key, decision)

        timeout_seconds, warnings = self.validate(request)
        command = request.text

        verdict = self.classify(command)
        if verdict.blocked or (verdict.requires_prompt and not request.acknowledged):
            self._refuse(verdict, command)

        policy = self.build_policy(request, timeout_seconds)
        try:
            result = await self.supervisor.run(
                command,
                policy,
                working_directory=request.working_directory,
                warnings=warnings,
            )
        except SpawnFailure as e:
            self.metrics.record(ExecutionRecord(
                level=verdict.level, blocked=False, duration_ms=0, attempt=True,
            ))
            logger.error(f"Spawn failed [{e.code}]: {e.message}")
            raise

        self.metrics.record(ExecutionRecord(
            level=verdict.level,
            blocked=False,
            duration_ms=result.duration_ms,
            truncated=result.truncated,
            timed_out=result.timed_out,
        ))
        logger.info(
            f"Executed [{verdict.level}] exit={result.exit_code} {result.duration_ms}ms"
            f"{' timeout' if result.timed_out else ''}{' overflow' if result.overflow else ''}: "
            f"{_preview(command)}"
        )
        return ExecutionOutcome(verdict=verdict, result=result, timeout_seconds=timeout_seconds)

    async def aclose(self) -> None:
        await self.supervisor.aclose()


async def execute_command(
    request: CommandRequest,
    gateway: CommandGateway,
    client_key: str | None = None,
) -> ExecutionOutcome:
    """Execute a command through a gateway with full security checks."""
    return await gateway.execute(request, client_key)
