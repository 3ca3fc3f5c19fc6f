"""Working directory allow-list policy."""

import os
import tempfile
from pathlib import Path

from psgate.exec.errors import SpawnFailure, WorkingDirectoryViolation


def expand_root(root: str) -> str:
    """Expand ${TEMP}, environment variables and ~ in a configured root."""
    if "${TEMP}" in root or "$TEMP" in root:
        temp = os.environ.get("TEMP") or tempfile.gettempdir()
        root = root.replace("${TEMP}", temp).replace("$TEMP", temp)
    return os.path.expanduser(os.path.expandvars(root))


class WorkingDirectoryPolicy:
    """Resolves a requested cwd and, when enforced, checks it against allowed roots."""

    def __init__(self, enforce: bool = False, allowed_roots: list[str] | None = None):
        self.enforce = enforce
        self.allowed_roots = allowed_roots or []

    def roots(self) -> list[Path]:
        resolved: list[Path] = []
        for root in self.allowed_roots:
            try:
                resolved.append(Path(expand_root(root)).resolve())
            except OSError:
                continue
        return resolved

    def resolve(self, working_directory: str | None) -> str | None:
        """Absolute path for working_directory, or None for the gateway's cwd."""
        if not working_directory:
            return None

        try:
            path = Path(expand_root(working_directory)).resolve(strict=True)
        except (OSError, RuntimeError):
            raise SpawnFailure(
                f"Working directory not found: {working_directory}",
                remediation=["Pass an existing directory as working_directory"],
            )
        if not path.is_dir():
            raise SpawnFailure(
                f"Working directory is not a directory: {working_directory}",
                remediation=["Pass an existing directory as working_directory"],
            )

        if self.enforce:
            roots = self.roots()
            if not any(path == root or path.is_relative_to(root) for root in roots):
                raise WorkingDirectoryViolation(
                    f"Working directory {path} is outside the allowed roots",
                    remediation=[f"Use a directory under one of: {', '.join(str(r) for r in roots)}"],
                )
        return str(path)
