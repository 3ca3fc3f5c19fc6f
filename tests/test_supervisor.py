"""Tests for the execution supervisor, run against a POSIX sh profile."""

import shutil
import sys
from pathlib import Path

import pytest

from psgate.exec.errors import SpawnFailure, ValidationError, WorkingDirectoryViolation
from psgate.exec.shell import ShellProfile
from psgate.exec.supervisor import (
    OVERFLOW_EXIT_CODE,
    TRUNCATE_INDICATOR,
    ExecutionSupervisor,
    OutputCapture,
)
from psgate.exec.types import AdaptiveSettings, ExecutionPolicy
from psgate.exec.workdir import WorkingDirectoryPolicy

SH = shutil.which("sh")

posix_only = pytest.mark.skipif(
    sys.platform == "win32" or SH is None,
    reason="requires a POSIX sh",
)
needs_timeout = pytest.mark.skipif(
    shutil.which("timeout") is None,
    reason="requires coreutils timeout",
)
needs_seq = pytest.mark.skipif(shutil.which("seq") is None, reason="requires seq")


# ── Helpers ─────────────────────────────────────────────────────────


class FixedDetector:
    """Detector that always answers with a POSIX sh profile."""

    def detect(self) -> ShellProfile:
        return ShellProfile(exe=SH or "sh", kind="posix", source="test")


def _supervisor(**kwargs) -> ExecutionSupervisor:
    return ExecutionSupervisor(detector=FixedDetector(), **kwargs)


def _policy(**overrides) -> ExecutionPolicy:
    values = dict(
        timeout_ms=5000,
        self_terminate=False,
        watchdog_grace_ms=500,
        kill_verify_window_ms=1000,
    )
    values.update(overrides)
    return ExecutionPolicy(**values)


# ── OutputCapture ───────────────────────────────────────────────────


class TestOutputCapture:
    def test_line_ceiling(self):
        cap = OutputCapture(max_bytes=1000, max_lines=2)
        cap.feed("stdout", b"a\nb\nc\n")
        assert cap.text("stdout") == "a\nb\n"
        assert cap.truncated
        assert cap.overflow_event.is_set()

    def test_byte_ceiling(self):
        cap = OutputCapture(max_bytes=4, max_lines=100)
        cap.feed("stdout", b"abcdef")
        assert cap.text("stdout") == "abcd"
        assert cap.truncated

    def test_data_after_truncation_only_counted(self):
        cap = OutputCapture(max_bytes=4, max_lines=100)
        cap.feed("stdout", b"abcdef")
        cap.feed("stderr", b"xyz")
        assert cap.text("stderr") == ""
        assert cap.total_bytes == 9

    def test_split_multibyte_sequence(self):
        cap = OutputCapture(max_bytes=100, max_lines=100)
        data = "héllo".encode("utf-8")
        cap.feed("stdout", data[:2])
        cap.feed("stdout", data[2:])
        cap.flush()
        assert cap.text("stdout") == "héllo"

    def test_chunks_are_ordered(self):
        cap = OutputCapture(max_bytes=100, max_lines=100)
        cap.feed("stdout", b"one\n")
        cap.feed("stderr", b"two\n")
        assert [(c.stream, c.seq) for c in cap.chunks] == [("stdout", 0), ("stderr", 1)]

    def test_activity_unset_until_output(self):
        cap = OutputCapture(max_bytes=100, max_lines=100)
        assert cap.last_activity_ms is None
        cap.feed("stdout", b"x")
        assert cap.last_activity_ms is not None


class TestSelfTerminateBudget:
    def test_lead_is_ten_percent_for_short_budgets(self):
        assert ExecutionSupervisor.self_terminate_ms(_policy(timeout_ms=1000, self_terminate=True)) == 900

    def test_lead_capped(self):
        assert ExecutionSupervisor.self_terminate_ms(_policy(timeout_ms=60_000, self_terminate=True)) == 59_700

    def test_uses_adaptive_total(self):
        policy = _policy(
            timeout_ms=1000,
            self_terminate=True,
            adaptive=AdaptiveSettings(extend_window_ms=500, extend_step_ms=500, max_total_ms=10_000),
        )
        assert ExecutionSupervisor.self_terminate_ms(policy) == 9_700

    def test_disabled(self):
        assert ExecutionSupervisor.self_terminate_ms(_policy()) is None


class TestShellProfile:
    def test_powershell_argv(self):
        argv = ShellProfile(exe="pwsh", kind="pwsh").build_argv("Get-Date", 900)
        assert argv[:4] == ["pwsh", "-NoLogo", "-NoProfile", "-NonInteractive"]
        assert argv[-2] == "-Command"
        assert "[Environment]::Exit(124)" in argv[-1]
        assert ", 900, 0" in argv[-1]
        assert argv[-1].endswith("Get-Date")

    def test_powershell_argv_without_timer(self):
        argv = ShellProfile(exe="pwsh", kind="pwsh").build_argv("Get-Date")
        assert "Timer" not in argv[-1]

    def test_posix_argv(self):
        argv = ShellProfile(exe="/bin/sh", kind="posix").build_argv("echo hi")
        assert argv == ["/bin/sh", "-c", "echo hi"]


# ── Supervised runs ─────────────────────────────────────────────────


@posix_only
class TestRun:
    @pytest.mark.asyncio
    async def test_completes(self):
        sup = _supervisor()
        result = await sup.run("echo hello; echo oops 1>&2", _policy())
        assert result.stdout == "hello\n"
        assert result.stderr == "oops\n"
        assert result.exit_code == 0
        assert result.success
        assert result.termination_reason == "completed"
        assert result.duration_ms >= 1
        assert result.chunks == ()
        assert result.shell_exe == SH

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        result = await _supervisor().run("exit 3", _policy())
        assert result.exit_code == 3
        assert not result.success
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_short_sleep_within_budget(self):
        result = await _supervisor().run("sleep 1", _policy(timeout_ms=2000))
        assert result.exit_code == 0
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_warnings_carried(self):
        result = await _supervisor().run("true", _policy(), warnings=["note"])
        assert result.warnings == ("note",)

    @pytest.mark.asyncio
    async def test_command_length_ceiling(self):
        with pytest.raises(ValidationError, match="exceeds limit"):
            await _supervisor().run("echo " + "x" * 50, _policy(max_command_chars=10))


@posix_only
class TestWorkingDirectory:
    @pytest.mark.asyncio
    async def test_runs_in_directory(self, tmp_path: Path):
        result = await _supervisor().run("pwd", _policy(), working_directory=str(tmp_path))
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()
        assert result.working_directory == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(SpawnFailure, match="not found"):
            await _supervisor().run("pwd", _policy(), working_directory=str(tmp_path / "nope"))

    @pytest.mark.asyncio
    async def test_outside_allowed_roots(self, tmp_path: Path):
        allowed = tmp_path / "allowed"
        other = tmp_path / "other"
        allowed.mkdir()
        other.mkdir()
        sup = _supervisor(workdir_policy=WorkingDirectoryPolicy(enforce=True, allowed_roots=[str(allowed)]))

        with pytest.raises(WorkingDirectoryViolation) as exc:
            await sup.run("pwd", _policy(), working_directory=str(other))
        assert exc.value.code == "WORKING_DIRECTORY_VIOLATION"

        result = await sup.run("pwd", _policy(), working_directory=str(allowed))
        assert result.success


@posix_only
class TestTimeout:
    @pytest.mark.asyncio
    async def test_watchdog_kills_hung_process(self):
        result = await _supervisor().run("sleep 10", _policy(timeout_ms=300))
        assert result.timed_out
        assert result.termination_reason == "timeout"
        assert result.exit_code is None
        assert result.watchdog_triggered
        assert not result.kill_escalated
        assert not result.success
        assert result.duration_ms < 5000

    @pytest.mark.asyncio
    async def test_escalates_when_term_ignored(self):
        result = await _supervisor().run(
            "trap '' TERM; sleep 10",
            _policy(timeout_ms=300, watchdog_grace_ms=300),
        )
        assert result.timed_out
        assert result.kill_escalated
        assert result.duration_ms < 5000

    @needs_timeout
    @pytest.mark.asyncio
    async def test_self_terminates_before_deadline(self):
        result = await _supervisor().run("sleep 10", _policy(timeout_ms=1000, self_terminate=True))
        assert result.timed_out
        assert result.termination_reason == "timeout"
        assert result.internal_self_destruct
        assert result.exit_code == 124
        assert result.duration_ms >= 800


@posix_only
class TestAdaptive:
    @pytest.mark.asyncio
    async def test_extends_while_output_flows(self):
        policy = _policy(
            timeout_ms=1000,
            adaptive=AdaptiveSettings(extend_window_ms=500, extend_step_ms=500, max_total_ms=5000),
        )
        result = await _supervisor().run(
            "for i in 1 2 3 4 5 6; do echo tick; sleep 0.3; done", policy,
        )
        assert not result.timed_out
        assert result.exit_code == 0
        assert result.adaptive_extensions >= 1
        assert result.effective_timeout_ms > result.configured_timeout_ms
        assert result.stdout.count("tick") == 6

    @pytest.mark.asyncio
    async def test_silent_process_not_extended(self):
        policy = _policy(
            timeout_ms=500,
            adaptive=AdaptiveSettings(extend_window_ms=300, extend_step_ms=500, max_total_ms=5000),
        )
        result = await _supervisor().run("sleep 10", policy)
        assert result.timed_out
        assert result.adaptive_extensions == 0
        assert result.effective_timeout_ms == 500

    @pytest.mark.asyncio
    async def test_extension_capped_at_max_total(self):
        policy = _policy(
            timeout_ms=500,
            adaptive=AdaptiveSettings(extend_window_ms=400, extend_step_ms=400, max_total_ms=1000),
        )
        result = await _supervisor().run("while true; do echo x; sleep 0.1; done", policy)
        assert result.timed_out
        assert result.effective_timeout_ms == 1000


@posix_only
@needs_seq
class TestOverflow:
    @pytest.mark.asyncio
    async def test_return_strategy(self):
        sup = _supervisor()
        try:
            result = await sup.run("seq 1 200000", _policy(max_output_bytes=1000))
            assert result.overflow
            assert result.truncated
            assert result.exit_code == OVERFLOW_EXIT_CODE
            assert result.reason == "output_overflow"
            assert result.stdout.endswith(TRUNCATE_INDICATOR)
            assert len(result.chunks) > 0
            assert not result.success
        finally:
            await sup.aclose()
        assert sup.active_reapers == 0

    @pytest.mark.asyncio
    async def test_line_ceiling(self):
        sup = _supervisor()
        try:
            result = await sup.run("seq 1 100", _policy(max_output_lines=10))
        finally:
            await sup.aclose()
        lines = result.stdout.splitlines()
        assert lines[:10] == [str(i) for i in range(1, 11)]
        assert lines[-1] == TRUNCATE_INDICATOR
        assert result.overflow

    @pytest.mark.asyncio
    async def test_truncate_strategy_keeps_real_exit_code(self):
        result = await _supervisor().run(
            "seq 1 200000; exit 5",
            _policy(max_output_bytes=1000, overflow_strategy="truncate"),
        )
        assert result.exit_code == 5
        assert result.overflow
        assert result.truncated
        assert result.overflow_strategy == "truncate"
        assert result.total_bytes > 1000

    @pytest.mark.asyncio
    async def test_terminate_strategy(self):
        sup = _supervisor()
        result = await sup.run(
            "seq 1 200000; sleep 10",
            _policy(max_output_bytes=1000, overflow_strategy="terminate"),
        )
        assert result.overflow
        assert result.exit_code == OVERFLOW_EXIT_CODE
        assert result.duration_ms < 5000
        assert sup.active_reapers == 0


@posix_only
class TestHungCommand:
    @pytest.mark.asyncio
    async def test_never_reports_early_success(self):
        result = await _supervisor().run("sleep 30", _policy(timeout_ms=1500, self_terminate=True))
        assert result.timed_out or result.exit_code == 124
        assert not result.success
        assert result.duration_ms >= 1200
