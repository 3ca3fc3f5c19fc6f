"""Learned safe-pattern store (learned-safe.json)."""

import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from filelock import FileLock
from loguru import logger

from psgate.learning.redaction import normalize_command
from psgate.utils.helpers import ensure_dir

STORE_VERSION = 1


def pattern_for(normalized: str) -> str:
    """Anchored pattern matching the normalized command with flexible spacing."""
    tokens = normalized.split()
    return "^" + r"\s+".join(re.escape(t) for t in tokens) + "$"


class LearnedPatternStore:
    """
    Human-approved safe patterns persisted as JSON.

    Layout: {"version": 1, "approved": [{normalized, added, source, pattern}]}
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock_path = path.with_suffix(path.suffix + ".lock")

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"version": STORE_VERSION, "approved": []}
        with FileLock(self._lock_path, timeout=10):
            data = json.loads(self.path.read_text(encoding="utf-8"))
        data.setdefault("approved", [])
        return data

    def _save(self, data: dict[str, Any]) -> None:
        ensure_dir(self.path.parent)
        with FileLock(self._lock_path, timeout=10):
            self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    def load_patterns(self) -> list[str]:
        """Pattern strings for the classifier's learned SAFE set."""
        return [e["pattern"] for e in self._load()["approved"] if e.get("pattern")]

    def entries(self) -> list[dict[str, Any]]:
        return list(self._load()["approved"])

    def promote(self, command: str, source: str = "manual") -> str:
        """Approve a command as safe; returns its pattern. Idempotent."""
        normalized = normalize_command(command)
        if not normalized:
            raise ValueError("Cannot promote an empty command")

        data = self._load()
        for entry in data["approved"]:
            if entry.get("normalized") == normalized:
                return entry["pattern"]

        pattern = pattern_for(normalized)
        data["approved"].append({
            "normalized": normalized,
            "added": datetime.now().isoformat(),
            "source": source,
            "pattern": pattern,
        })
        self._save(data)
        logger.info(f"Promoted learned safe pattern: {pattern}")
        return pattern
