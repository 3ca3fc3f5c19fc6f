"""Tests for the command gateway pipeline."""

import shutil
import sys

import pytest

from psgate.config.schema import Config, LearningConfig, LimitsConfig
from psgate.exec.errors import (
    ConfirmationRequiredError,
    RateLimitExceeded,
    SecurityBlockedError,
    SpawnFailure,
    ValidationError,
    WorkingDirectoryViolation,
)
from psgate.exec.executor import (
    DEPRECATED_TIMEOUT_WARNING,
    OVERFLOW_ENV,
    CommandGateway,
    execute_command,
)
from psgate.exec.ratelimit import RateLimiter
from psgate.exec.shell import ShellProfile
from psgate.exec.supervisor import ExecutionSupervisor
from psgate.exec.types import CommandRequest, ExecutionResult


# ── Helpers ─────────────────────────────────────────────────────────


class RecordingSupervisor:
    """Captures run() calls and returns a canned success."""

    def __init__(self):
        self.calls: list[dict] = []

    async def run(self, command, policy, working_directory=None, warnings=None):
        self.calls.append({"command": command, "policy": policy, "warnings": list(warnings or [])})
        return ExecutionResult(
            stdout="", stderr="", exit_code=0, success=True, duration_ms=7,
            timed_out=False, termination_reason="completed", truncated=False,
            overflow=False, overflow_strategy=policy.overflow_strategy,
            configured_timeout_ms=policy.timeout_ms, effective_timeout_ms=policy.timeout_ms,
            shell_exe="pwsh", warnings=tuple(warnings or ()),
        )

    async def aclose(self):
        pass


class FailingSupervisor(RecordingSupervisor):
    """Fails every spawn the way a missing working directory does."""

    async def run(self, command, policy, working_directory=None, warnings=None):
        self.calls.append({"command": command, "policy": policy, "warnings": list(warnings or [])})
        raise WorkingDirectoryViolation("Working directory is outside the allowed roots")


class ShDetector:
    def detect(self) -> ShellProfile:
        return ShellProfile(exe=shutil.which("sh") or "sh", kind="posix", source="test")


def _config(**kwargs) -> Config:
    return Config(learning=LearningConfig(enabled=False), **kwargs)


def _gateway(**kwargs) -> CommandGateway:
    kwargs.setdefault("supervisor", RecordingSupervisor())
    return CommandGateway(_config(), **kwargs)


# ── Security flow ───────────────────────────────────────────────────


class TestSecurityFlow:
    @pytest.mark.asyncio
    async def test_safe_runs(self):
        gw = _gateway()
        outcome = await gw.execute(CommandRequest(command="Get-Date"))
        assert outcome.verdict.level == "SAFE"
        assert outcome.result.success
        assert len(gw.supervisor.calls) == 1
        assert gw.metrics.snapshot()["executions"] == 1

    @pytest.mark.asyncio
    async def test_risky_requires_confirmation(self):
        gw = _gateway()
        with pytest.raises(ConfirmationRequiredError) as exc:
            await gw.execute(CommandRequest(command="Remove-Item build"))
        assert exc.value.code == "CONFIRMATION_REQUIRED"
        assert exc.value.verdict.level == "RISKY"
        assert gw.supervisor.calls == []
        assert gw.metrics.snapshot()["confirmationRequired"] == 1
        assert gw.metrics.snapshot()["executions"] == 0

    @pytest.mark.asyncio
    async def test_confirmed_risky_runs(self):
        gw = _gateway()
        outcome = await gw.execute(CommandRequest(command="Remove-Item build", confirmed=True))
        assert outcome.verdict.level == "RISKY"
        assert len(gw.supervisor.calls) == 1

    @pytest.mark.asyncio
    async def test_override_acknowledges(self):
        gw = _gateway()
        await gw.execute(CommandRequest(command="Remove-Item build", override=True))
        assert len(gw.supervisor.calls) == 1

    @pytest.mark.asyncio
    async def test_blocked_ignores_confirmation(self):
        gw = _gateway()
        with pytest.raises(SecurityBlockedError) as exc:
            await gw.execute(CommandRequest(command="git push --force", confirmed=True, override=True))
        assert exc.value.code == "SECURITY_BLOCKED"
        assert "permanently blocked" in " ".join(exc.value.remediation)
        assert gw.supervisor.calls == []
        assert gw.metrics.snapshot()["blocked"] == 1

    @pytest.mark.asyncio
    async def test_critical_alias_blocked(self):
        gw = _gateway()
        with pytest.raises(SecurityBlockedError) as exc:
            await gw.execute(CommandRequest(command="iex $payload", confirmed=True))
        assert exc.value.verdict.category == "ALIAS_THREAT"

    @pytest.mark.asyncio
    async def test_disk_destruction_never_spawns(self):
        gw = _gateway()
        with pytest.raises(SecurityBlockedError) as exc:
            await gw.execute(CommandRequest(command="Format-Volume -DriveLetter D", confirmed=True))
        assert exc.value.verdict.level == "CRITICAL"
        assert gw.supervisor.calls == []

    @pytest.mark.asyncio
    async def test_commit_needs_confirmation(self):
        gw = _gateway()
        with pytest.raises(ConfirmationRequiredError):
            await gw.execute(CommandRequest(command="git commit -m wip"))
        outcome = await gw.execute(CommandRequest(command="git commit -m wip", confirmed=True))
        assert outcome.verdict.category == "VCS_MUTATION"

    @pytest.mark.asyncio
    async def test_dangerous_blocked(self):
        gw = _gateway()
        with pytest.raises(SecurityBlockedError) as exc:
            await gw.execute(CommandRequest(command="Stop-Computer", confirmed=True))
        assert exc.value.verdict.level == "DANGEROUS"

    @pytest.mark.asyncio
    async def test_unknown_tracked_and_needs_confirmation(self):
        gw = _gateway()
        with pytest.raises(ConfirmationRequiredError):
            await gw.execute(CommandRequest(command="frobnicate --all"))
        assert gw.tracker.get("frobnicate --all").count == 1

        await gw.execute(CommandRequest(command="frobnicate --all", confirmed=True))
        assert gw.tracker.get("frobnicate --all").count == 2
        assert len(gw.supervisor.calls) == 1

    @pytest.mark.asyncio
    async def test_spawn_failure_is_recorded(self):
        gw = _gateway(supervisor=FailingSupervisor())
        with pytest.raises(SpawnFailure):
            await gw.execute(CommandRequest(command="Get-Date", working_directory="/elsewhere"))
        snapshot = gw.metrics.snapshot()
        assert snapshot["totalCommands"] == 1
        assert snapshot["attempts"] == 1
        assert snapshot["executions"] == 0
        assert snapshot["byLevel"] == {"SAFE": 1}

    @pytest.mark.asyncio
    async def test_script_field(self):
        gw = _gateway()
        await gw.execute(CommandRequest(script="Get-Date\nGet-Location"))
        assert gw.supervisor.calls[0]["command"] == "Get-Date\nGet-Location"

    @pytest.mark.asyncio
    async def test_execute_command_function(self):
        gw = _gateway()
        outcome = await execute_command(CommandRequest(command="Get-Date"), gw)
        assert outcome.to_dict()["securityAssessment"]["level"] == "SAFE"


# ── Rate limiting ───────────────────────────────────────────────────


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_limited_before_classification(self):
        gw = _gateway(limiter=RateLimiter(burst=1, max_requests=1, interval_ms=60_000))
        await gw.execute(CommandRequest(command="Get-Date"), client_key="c1")
        with pytest.raises(RateLimitExceeded) as exc:
            await gw.execute(CommandRequest(command="git push --force"), client_key="c1")
        assert exc.value.code == "RATE_LIMITED"
        assert gw.metrics.snapshot()["blocked"] == 0

    @pytest.mark.asyncio
    async def test_session_key_selects_bucket(self):
        gw = _gateway(limiter=RateLimiter(burst=1, max_requests=1, interval_ms=60_000))
        await gw.execute(CommandRequest(command="Get-Date", session_key="a"), client_key="c1")
        await gw.execute(CommandRequest(command="Get-Date", session_key="b"), client_key="c1")
        assert len(gw.supervisor.calls) == 2


# ── Validation ──────────────────────────────────────────────────────


class TestValidation:
    def test_requires_command_or_script(self):
        with pytest.raises(ValidationError):
            _gateway().validate(CommandRequest())

    def test_rejects_both(self):
        with pytest.raises(ValidationError):
            _gateway().validate(CommandRequest(command="a", script="b"))

    def test_blank_command(self):
        with pytest.raises(ValidationError):
            _gateway().validate(CommandRequest(command="   "))

    def test_default_timeout(self):
        timeout, warnings = _gateway().validate(CommandRequest(command="x"))
        assert timeout == 90
        assert warnings == []

    def test_zero_means_default(self):
        timeout, _ = _gateway().validate(CommandRequest(command="x", timeout_seconds=0))
        assert timeout == 90

    @pytest.mark.parametrize("value", [-1, 601])
    def test_out_of_range(self, value):
        with pytest.raises(ValidationError):
            _gateway().validate(CommandRequest(command="x", timeout_seconds=value))

    def test_deprecated_timeout(self):
        timeout, warnings = _gateway().validate(CommandRequest(command="x", timeout=5))
        assert timeout == 5
        assert warnings == [DEPRECATED_TIMEOUT_WARNING]

    def test_canonical_timeout_wins(self):
        timeout, warnings = _gateway().validate(CommandRequest(command="x", timeout_seconds=3, timeout=5))
        assert timeout == 3
        assert warnings == [DEPRECATED_TIMEOUT_WARNING]

    def test_long_timeout_warning(self):
        _, warnings = _gateway().validate(CommandRequest(command="x", timeout_seconds=120))
        assert any("unusually long" in w for w in warnings)

    def test_command_too_long(self):
        gw = CommandGateway(_config(limits=LimitsConfig(max_command_chars=10)), supervisor=RecordingSupervisor())
        with pytest.raises(ValidationError, match="exceeds limit"):
            gw.validate(CommandRequest(command="x" * 11))

    @pytest.mark.asyncio
    async def test_warnings_reach_result(self):
        gw = _gateway()
        outcome = await gw.execute(CommandRequest(command="Get-Date", timeout=5))
        assert outcome.result.warnings == (DEPRECATED_TIMEOUT_WARNING,)
        assert outcome.timeout_seconds == 5


# ── Policy ──────────────────────────────────────────────────────────


class TestBuildPolicy:
    def test_plain(self):
        policy = _gateway().build_policy(CommandRequest(command="x"), 10)
        assert policy.timeout_ms == 10_000
        assert policy.adaptive is None
        assert policy.overflow_strategy == "return"
        assert policy.max_output_bytes == 512 * 1024

    def test_adaptive_defaults(self):
        policy = _gateway().build_policy(CommandRequest(command="x", adaptive_timeout=True), 10)
        assert policy.adaptive.extend_window_ms == 2000
        assert policy.adaptive.extend_step_ms == 5000
        assert policy.adaptive.max_total_ms == 30_000

    def test_adaptive_total_ceiling(self):
        policy = _gateway().build_policy(CommandRequest(command="x", adaptive_timeout=True), 100)
        assert policy.adaptive.max_total_ms == 180_000

    def test_adaptive_overrides(self):
        request = CommandRequest(
            command="x",
            adaptive_timeout=True,
            adaptive_extend_window_ms=100,
            adaptive_extend_step_ms=200,
            adaptive_max_total_sec=12,
        )
        policy = _gateway().build_policy(request, 10)
        assert policy.adaptive.extend_window_ms == 100
        assert policy.adaptive.extend_step_ms == 200
        assert policy.adaptive.max_total_ms == 12_000

    def test_adaptive_total_never_below_timeout(self):
        request = CommandRequest(command="x", adaptive_timeout=True, adaptive_max_total_sec=1)
        policy = _gateway().build_policy(request, 10)
        assert policy.adaptive.max_total_ms == 10_000

    def test_overflow_env_override(self, monkeypatch):
        monkeypatch.setenv(OVERFLOW_ENV, "Terminate")
        assert _gateway().overflow_strategy() == "terminate"

    def test_invalid_overflow_env_ignored(self, monkeypatch):
        monkeypatch.setenv(OVERFLOW_ENV, "explode")
        assert _gateway().overflow_strategy() == "return"


# ── End to end ──────────────────────────────────────────────────────


@pytest.mark.skipif(sys.platform == "win32" or shutil.which("sh") is None, reason="requires a POSIX sh")
class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_echo(self):
        gw = _gateway(supervisor=ExecutionSupervisor(detector=ShDetector()))
        try:
            outcome = await gw.execute(CommandRequest(command="echo hello", timeout_seconds=5))
        finally:
            await gw.aclose()
        assert outcome.verdict.level == "SAFE"
        assert outcome.result.stdout.strip() == "hello"
        assert outcome.result.exit_code == 0
