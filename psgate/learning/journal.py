"""Append-only JSONL journal of unknown commands."""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from filelock import FileLock
from loguru import logger

from psgate.utils.helpers import convert_to_camel, ensure_dir


@dataclass
class JournalRecord:
    """One redacted journal line."""
    ts: str
    hash: str
    redacted: str
    normalized: str
    session_id: str


@dataclass
class Candidate:
    """Journal lines grouped by normalized text."""
    normalized: str
    redacted: str
    count: int
    first_seen: str
    last_seen: str
    sessions: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["sessions"] = sorted(self.sessions)
        return convert_to_camel(data)


class ThreatJournal:
    """
    Appends redacted unknown-command records to a JSONL file.

    Writes are serialized with a FileLock so several gateway processes
    can share one journal. When the file grows past max_bytes it is
    rotated to <name>.1 (one generation kept).
    """

    def __init__(self, path: Path, max_bytes: int = 512 * 1024):
        self.path = path
        self.max_bytes = max_bytes
        self._lock_path = path.with_suffix(path.suffix + ".lock")

    def _rotate_if_needed(self) -> None:
        if self.path.exists() and self.path.stat().st_size >= self.max_bytes:
            rotated = self.path.with_suffix(self.path.suffix + ".1")
            self.path.replace(rotated)
            logger.info(f"Rotated threat journal to {rotated}")

    def append(self, record: JournalRecord) -> None:
        """Append one record."""
        ensure_dir(self.path.parent)
        line = json.dumps(convert_to_camel(asdict(record)), ensure_ascii=False)
        with FileLock(self._lock_path, timeout=10):
            self._rotate_if_needed()
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read(self) -> list[dict[str, Any]]:
        """All parseable records, oldest first; bad lines are skipped."""
        if not self.path.exists():
            return []

        records: list[dict[str, Any]] = []
        with FileLock(self._lock_path, timeout=10):
            lines = self.path.read_text(encoding="utf-8").splitlines()
        for i, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed journal line {i} in {self.path}")
        return records

    def aggregate_candidates(self, limit: int = 20) -> list[Candidate]:
        """Group records by normalized text, most frequent first."""
        groups: dict[str, Candidate] = {}
        for rec in self.read():
            normalized = rec.get("normalized")
            if not normalized:
                continue
            ts = rec.get("ts", "")
            cand = groups.get(normalized)
            if cand is None:
                cand = Candidate(
                    normalized=normalized,
                    redacted=rec.get("redacted", ""),
                    count=0,
                    first_seen=ts,
                    last_seen=ts,
                )
                groups[normalized] = cand
            cand.count += 1
            cand.first_seen = min(cand.first_seen, ts)
            cand.last_seen = max(cand.last_seen, ts)
            if rec.get("sessionId"):
                cand.sessions.add(rec["sessionId"])

        ranked = sorted(groups.values(), key=lambda c: (-c.count, c.normalized))
        return ranked[:limit]
