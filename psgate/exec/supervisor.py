"""Supervised execution of one interpreter process."""

import asyncio
import codecs
import os
import signal
import subprocess
import sys
import time
from enum import Enum

from loguru import logger

from psgate.exec.errors import SpawnFailure, ValidationError
from psgate.exec.shell import SELF_TERMINATE_EXIT, ShellDetector, ShellProfile
from psgate.exec.types import (
    ExecutionPolicy,
    ExecutionResult,
    OutputChunk,
    StreamName,
)
from psgate.exec.workdir import WorkingDirectoryPolicy

OVERFLOW_EXIT_CODE = 137
SELF_TERMINATE_EXIT_CODE = SELF_TERMINATE_EXIT
TRUNCATE_INDICATOR = "...TRUNCATED..."

READ_SIZE = 4096
DRAIN_TIMEOUT_SECONDS = 1.0


class RunState(Enum):
    RUNNING = "running"
    SELF_TERMINATED = "self_terminated"
    TIMED_OUT = "timed_out"
    OVERFLOWED = "overflowed"
    COMPLETED = "completed"


def _now_ms() -> float:
    return time.monotonic() * 1000


class OutputCapture:
    """Incremental stdout/stderr buffers bounded by byte and line ceilings."""

    def __init__(self, max_bytes: int, max_lines: int):
        self.max_bytes = max_bytes
        self.max_lines = max_lines
        self.parts: dict[StreamName, list[str]] = {"stdout": [], "stderr": []}
        self.chunks: list[OutputChunk] = []
        self.captured_bytes = 0
        self.total_bytes = 0
        self.lines = 0
        self.truncated = False
        self.last_activity_ms: float | None = None
        self.overflow_event = asyncio.Event()
        self._decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

    def _clip(self, text: str) -> tuple[str, bool]:
        cut = False
        room_lines = self.max_lines - self.lines
        if text.count("\n") > room_lines:
            idx = -1
            for _ in range(room_lines):
                idx = text.index("\n", idx + 1)
            text = text[:idx + 1]
            cut = True

        data = text.encode("utf-8")
        room_bytes = self.max_bytes - self.captured_bytes
        if len(data) > room_bytes:
            text = data[:max(room_bytes, 0)].decode("utf-8", errors="ignore")
            cut = True
        return text, cut

    def _append(self, stream: StreamName, text: str) -> None:
        if not text:
            return
        size = len(text.encode("utf-8"))
        self.parts[stream].append(text)
        self.chunks.append(OutputChunk(stream=stream, seq=len(self.chunks), text=text, bytes=size))
        self.captured_bytes += size
        self.lines += text.count("\n")

    def feed(self, stream: StreamName, data: bytes) -> None:
        self.last_activity_ms = _now_ms()
        self.total_bytes += len(data)
        if self.truncated:
            return

        text, cut = self._clip(self._decoders[stream].decode(data))
        self._append(stream, text)
        if cut:
            self.truncated = True
            self.overflow_event.set()

    def flush(self) -> None:
        for stream, decoder in self._decoders.items():
            tail = decoder.decode(b"", final=True)
            if not self.truncated:
                self._append(stream, tail)

    def text(self, stream: StreamName) -> str:
        return "".join(self.parts[stream])


class _Invocation:
    """State for a single run; one child process, two readers, one deadline."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        policy: ExecutionPolicy,
        profile: ShellProfile,
        self_terminate_ms: int | None,
        working_directory: str | None,
    ):
        self.proc = proc
        self.policy = policy
        self.profile = profile
        self.self_terminate_ms = self_terminate_ms
        self.working_directory = working_directory
        self.capture = OutputCapture(policy.max_output_bytes, policy.max_output_lines)
        self.state = RunState.RUNNING
        self.cause = RunState.RUNNING
        self.started_ms = _now_ms()
        self.deadline_ms = self.started_ms + policy.timeout_ms
        self.adaptive_extensions = 0
        self.watchdog_triggered = False
        self.kill_escalated = False
        self.exit_task = asyncio.ensure_future(proc.wait())
        self.pumps = [
            asyncio.ensure_future(self._pump(proc.stdout, "stdout")),
            asyncio.ensure_future(self._pump(proc.stderr, "stderr")),
        ]

    def transition(self, state: RunState) -> bool:
        """First transition out of RUNNING wins."""
        if self.state is not RunState.RUNNING:
            return False
        self.state = state
        self.cause = state
        return True

    async def _pump(self, reader: asyncio.StreamReader | None, stream: StreamName) -> None:
        if reader is None:
            return
        while True:
            data = await reader.read(READ_SIZE)
            if not data:
                break
            self.capture.feed(stream, data)

    @property
    def alive(self) -> bool:
        return not self.exit_task.done()

    # ── Timing ──

    def _maybe_extend(self, now: float) -> bool:
        adaptive = self.policy.adaptive
        if adaptive is None:
            return False
        if self.deadline_ms - now > adaptive.extend_window_ms:
            return False
        last = self.capture.last_activity_ms
        if last is None or now - last > adaptive.extend_window_ms:
            return False

        ceiling = self.started_ms + adaptive.max_total_ms
        new_deadline = min(self.deadline_ms + adaptive.extend_step_ms, ceiling)
        if new_deadline <= self.deadline_ms:
            return False
        self.deadline_ms = new_deadline
        self.adaptive_extensions += 1
        logger.debug(
            f"Adaptive extension #{self.adaptive_extensions}: "
            f"deadline now {int(self.deadline_ms - self.started_ms)}ms"
        )
        return True

    async def supervise(self) -> None:
        """Wait for exit, overflow or deadline; first detected wins."""
        watch_overflow = self.policy.overflow_strategy != "truncate"
        overflow_wait = asyncio.ensure_future(self.capture.overflow_event.wait())
        try:
            while True:
                now = _now_ms()
                tick_ms = self.deadline_ms - now
                if self.policy.adaptive is not None:
                    tick_ms = min(tick_ms, self.policy.adaptive.check_interval_ms)

                waiters = {self.exit_task}
                if watch_overflow:
                    waiters.add(overflow_wait)
                await asyncio.wait(waiters, timeout=max(tick_ms, 0) / 1000,
                                   return_when=asyncio.FIRST_COMPLETED)

                # Overflow is evaluated before the deadline on every tick
                if watch_overflow and self.capture.truncated:
                    self.transition(RunState.OVERFLOWED)
                    return
                if not self.alive:
                    return

                now = _now_ms()
                if now >= self.deadline_ms or (
                    self.policy.adaptive is not None
                    and self.deadline_ms - now <= self.policy.adaptive.extend_window_ms
                ):
                    if self._maybe_extend(now):
                        continue
                    if now >= self.deadline_ms:
                        self.transition(RunState.TIMED_OUT)
                        return
        finally:
            overflow_wait.cancel()

    # ── Termination ──

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(self.proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.error(f"Failed to signal process group {self.proc.pid}: {e}")

    def soft_terminate(self) -> None:
        if sys.platform == "win32":
            try:
                self.proc.send_signal(signal.CTRL_BREAK_EVENT)
            except (ProcessLookupError, OSError):
                pass
        else:
            self._signal_group(signal.SIGTERM)

    async def hard_kill(self) -> None:
        if sys.platform == "win32":
            try:
                killer = await asyncio.create_subprocess_exec(
                    "taskkill", "/PID", str(self.proc.pid), "/T", "/F",
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
                await killer.wait()
            except OSError as e:
                logger.error(f"taskkill failed for {self.proc.pid}: {e}")
                try:
                    self.proc.kill()
                except ProcessLookupError:
                    pass
        else:
            self._signal_group(signal.SIGKILL)

    async def wait_exit(self, timeout_ms: int) -> bool:
        try:
            await asyncio.wait_for(asyncio.shield(self.exit_task), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            pass
        return not self.alive

    async def escalate(self) -> None:
        """Watchdog: soft terminate, then hard kill after the grace period."""
        self.watchdog_triggered = True
        self.soft_terminate()
        if await self.wait_exit(self.policy.watchdog_grace_ms):
            return

        self.kill_escalated = True
        logger.warning(f"Process {self.proc.pid} ignored soft termination; killing")
        await self.hard_kill()
        if not await self.wait_exit(self.policy.kill_verify_window_ms):
            logger.error(f"Process {self.proc.pid} still alive after hard kill")

    async def drain(self) -> None:
        """Let readers hit EOF, then stop them."""
        done, pending = await asyncio.wait(self.pumps, timeout=DRAIN_TIMEOUT_SECONDS)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.capture.flush()

    async def reap(self) -> None:
        """Keep tracking a child we stopped waiting for until it is gone."""
        try:
            remaining = self.deadline_ms - _now_ms()
            if not await self.wait_exit(max(int(remaining), 0)):
                await self.escalate()
        except asyncio.CancelledError:
            if self.alive:
                await self.hard_kill()
            raise
        finally:
            for task in self.pumps:
                task.cancel()
            await asyncio.gather(*self.pumps, return_exceptions=True)
            self.exit_task.cancel()

    # ── Result ──

    def result(self, exit_code: int | None, timed_out: bool, overflow: bool, warnings: tuple[str, ...]) -> ExecutionResult:
        elapsed = _now_ms() - self.started_ms
        truncated = self.capture.truncated
        stdout = self.capture.text("stdout")
        if truncated:
            stdout += ("" if not stdout or stdout.endswith("\n") else "\n") + TRUNCATE_INDICATOR

        return ExecutionResult(
            stdout=stdout,
            stderr=self.capture.text("stderr"),
            exit_code=exit_code,
            success=exit_code == 0 and not timed_out and not overflow,
            duration_ms=max(1, int(elapsed)),
            timed_out=timed_out,
            termination_reason="timeout" if timed_out else "completed",
            truncated=truncated,
            overflow=overflow,
            overflow_strategy=self.policy.overflow_strategy,
            configured_timeout_ms=self.policy.timeout_ms,
            effective_timeout_ms=int(self.deadline_ms - self.started_ms),
            shell_exe=self.profile.exe,
            chunks=tuple(self.capture.chunks) if truncated else (),
            adaptive_extensions=self.adaptive_extensions,
            kill_escalated=self.kill_escalated,
            watchdog_triggered=self.watchdog_triggered,
            internal_self_destruct=self.cause is RunState.SELF_TERMINATED,
            reason="output_overflow" if overflow else None,
            working_directory=self.working_directory,
            total_bytes=self.capture.total_bytes,
            warnings=warnings,
        )


class ExecutionSupervisor:
    """
    Runs commands in a child interpreter under a timeout and output budget.

    The interpreter is detected once per supervisor. Children abandoned by
    the "return" overflow strategy stay tracked by reaper tasks until they
    exit or the watchdog kills them; aclose() kills any still running.
    """

    def __init__(
        self,
        detector: ShellDetector | None = None,
        workdir_policy: WorkingDirectoryPolicy | None = None,
    ):
        self.detector = detector or ShellDetector()
        self.workdir_policy = workdir_policy or WorkingDirectoryPolicy()
        self._profile: ShellProfile | None = None
        self._reapers: set[asyncio.Task] = set()

    async def profile(self) -> ShellProfile:
        if self._profile is None:
            self._profile = await asyncio.to_thread(self.detector.detect)
        return self._profile

    @staticmethod
    def self_terminate_ms(policy: ExecutionPolicy) -> int | None:
        """In-shell exit timer, slightly ahead of the total budget."""
        if not policy.self_terminate:
            return None
        budget = policy.adaptive.max_total_ms if policy.adaptive else policy.timeout_ms
        return max(100, budget - min(policy.self_terminate_lead_ms, budget // 10))

    async def _spawn(self, profile: ShellProfile, argv: list[str], cwd: str | None) -> asyncio.subprocess.Process:
        kwargs: dict = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                **kwargs,
            )
        except OSError as e:
            logger.error(f"Failed to start {profile.exe}: {e}")
            raise SpawnFailure(
                f"Failed to start interpreter {profile.exe}: {e}",
                remediation=[
                    "Install PowerShell 7 (pwsh) or set PWSH_EXE to its path",
                    f"Tried: {', '.join(profile.tried) or profile.exe}",
                ],
            )

    async def run(
        self,
        command: str,
        policy: ExecutionPolicy,
        working_directory: str | None = None,
        warnings: list[str] | None = None,
    ) -> ExecutionResult:
        """Run command to completion, overflow or deadline."""
        if len(command) > policy.max_command_chars:
            raise ValidationError(
                f"Command length {len(command)} exceeds limit {policy.max_command_chars}",
                remediation=["Split the command or move it into a script file"],
            )

        cwd = self.workdir_policy.resolve(working_directory)
        profile = await self.profile()
        self_terminate_ms = self.self_terminate_ms(policy)
        argv = profile.build_argv(command, self_terminate_ms)

        proc = await self._spawn(profile, argv, cwd)
        inv = _Invocation(proc, policy, profile, self_terminate_ms, cwd)
        notes = tuple(warnings or ())

        await inv.supervise()

        if inv.state is RunState.OVERFLOWED:
            if policy.overflow_strategy == "terminate":
                await inv.hard_kill()
                await inv.wait_exit(policy.kill_verify_window_ms)
                await inv.drain()
            else:
                task = asyncio.ensure_future(inv.reap())
                self._reapers.add(task)
                task.add_done_callback(self._reapers.discard)
            logger.warning(f"Output ceiling reached ({policy.overflow_strategy}); pid {proc.pid}")
            inv.state = RunState.COMPLETED
            return inv.result(OVERFLOW_EXIT_CODE, False, True, notes)

        if inv.state is RunState.TIMED_OUT:
            logger.warning(f"Deadline reached after {policy.timeout_ms}ms; escalating pid {proc.pid}")
            await inv.escalate()
            await inv.drain()
            inv.state = RunState.COMPLETED
            return inv.result(None, True, inv.capture.truncated, notes)

        # Natural exit, possibly the injected timer firing
        await inv.drain()
        if inv.capture.truncated and policy.overflow_strategy != "truncate":
            # Ceiling crossed by output still buffered at exit
            inv.transition(RunState.OVERFLOWED)
            inv.state = RunState.COMPLETED
            return inv.result(OVERFLOW_EXIT_CODE, False, True, notes)

        rc = proc.returncode
        elapsed = _now_ms() - inv.started_ms
        if (
            self_terminate_ms is not None
            and rc == SELF_TERMINATE_EXIT_CODE
            and elapsed >= 0.9 * self_terminate_ms
        ):
            inv.transition(RunState.SELF_TERMINATED)
        inv.state = RunState.COMPLETED
        timed_out = inv.cause is RunState.SELF_TERMINATED
        return inv.result(rc, timed_out, inv.capture.truncated, notes)

    @property
    def active_reapers(self) -> int:
        return len(self._reapers)

    async def aclose(self) -> None:
        """Kill children still tracked by reapers and wait for them."""
        reapers = list(self._reapers)
        for task in reapers:
            task.cancel()
        await asyncio.gather(*reapers, return_exceptions=True)
