"""Interpreter detection and argv construction."""

import os
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from loguru import logger

ShellKind = Literal["pwsh", "powershell", "posix"]

PROBE_TIMEOUT_SECONDS = 5
SELF_TERMINATE_EXIT = 124


@dataclass(frozen=True)
class ShellProfile:
    """A resolved interpreter and how to invoke it."""
    exe: str
    kind: ShellKind
    edition: str | None = None
    source: str = "path"
    tried: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_powershell(self) -> bool:
        return self.kind != "posix"

    def build_argv(self, command: str, self_terminate_ms: int | None = None) -> list[str]:
        """argv for running command, optionally with an in-shell exit timer."""
        if self.is_powershell:
            prefix = "$ProgressPreference='SilentlyContinue'; "
            if self_terminate_ms:
                prefix += (
                    "[System.Threading.Timer]::new("
                    f"{{[Environment]::Exit({SELF_TERMINATE_EXIT})}}, $null, {int(self_terminate_ms)}, 0"
                    ") | Out-Null; "
                )
            return [
                self.exe, "-NoLogo", "-NoProfile", "-NonInteractive",
                "-ExecutionPolicy", "Bypass", "-Command", prefix + command,
            ]

        timeout_bin = shutil.which("timeout")
        if self_terminate_ms and timeout_bin:
            return [
                timeout_bin, "-s", "TERM", f"{self_terminate_ms / 1000:.3f}s",
                self.exe, "-c", command,
            ]
        return [self.exe, "-c", command]


def _windows_candidates() -> list[str]:
    found: list[str] = []
    for env in ("ProgramFiles", "ProgramW6432"):
        base = os.environ.get(env)
        if not base:
            continue
        root = Path(base) / "PowerShell"
        if root.is_dir():
            # Highest version directory first
            for ver in sorted(root.iterdir(), reverse=True):
                exe = ver / "pwsh.exe"
                if exe.is_file():
                    found.append(str(exe))
    return found


class ShellDetector:
    """
    Finds a PowerShell binary once and caches the result.

    Order: configured executable, PWSH_EXE, well-known Windows install
    directories, pwsh on PATH, powershell on PATH, then POSIX sh when
    fallback is allowed.
    """

    def __init__(self, executable: str | None = None, allow_posix_fallback: bool = True):
        self.executable = executable
        self.allow_posix_fallback = allow_posix_fallback
        self._profile: ShellProfile | None = None
        self._lock = threading.Lock()

    def _candidates(self) -> list[tuple[str, str]]:
        out: list[tuple[str, str]] = []
        if self.executable:
            out.append((self.executable, "config"))
        if os.environ.get("PWSH_EXE"):
            out.append((os.environ["PWSH_EXE"], "env"))
        if sys.platform == "win32":
            out.extend((p, "install-dir") for p in _windows_candidates())
        for name in ("pwsh", "powershell"):
            path = shutil.which(name)
            if path:
                out.append((path, "path"))
        return out

    def _probe(self, exe: str) -> str | None:
        """PSEdition reported by exe, or None when it cannot run."""
        try:
            proc = subprocess.run(
                [exe, "-NoLogo", "-NoProfile", "-NonInteractive", "-Command", "$PSVersionTable.PSEdition"],
                capture_output=True,
                text=True,
                timeout=PROBE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Shell probe failed for {exe}: {e}")
            return None
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or "Unknown"

    def _detect(self) -> ShellProfile:
        tried: list[str] = []
        for exe, source in self._candidates():
            tried.append(exe)
            edition = self._probe(exe)
            if edition is not None:
                kind: ShellKind = "pwsh" if Path(exe).stem.lower() == "pwsh" or edition == "Core" else "powershell"
                logger.info(f"Using {kind} ({edition}) at {exe}")
                return ShellProfile(exe=exe, kind=kind, edition=edition, source=source, tried=tuple(tried))

        if self.allow_posix_fallback:
            sh = shutil.which("sh")
            if sh:
                logger.warning(f"No PowerShell found (tried {len(tried)}); falling back to {sh}")
                return ShellProfile(exe=sh, kind="posix", source="fallback", tried=tuple(tried))

        # Unprobed last resort; spawning it surfaces a SpawnFailure
        exe = "powershell.exe" if sys.platform == "win32" else "pwsh"
        logger.warning(f"No working shell detected; defaulting to {exe}")
        return ShellProfile(exe=exe, kind="pwsh" if exe == "pwsh" else "powershell",
                            source="default", tried=tuple(tried))

    def detect(self) -> ShellProfile:
        """Cached profile, probing on first call."""
        with self._lock:
            if self._profile is None:
                self._profile = self._detect()
            return self._profile
