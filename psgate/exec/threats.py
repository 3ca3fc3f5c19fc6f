"""In-memory tracking of unknown commands."""

import secrets
import threading
import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Protocol

from loguru import logger

from psgate.exec.aliases import AliasResolver
from psgate.exec.types import SecurityVerdict, ThreatEntry
from psgate.learning.journal import JournalRecord
from psgate.learning.redaction import command_hash, normalize_command, redact

HIGH_RISK = ("HIGH", "CRITICAL")


class JournalSink(Protocol):
    def append(self, record: JournalRecord) -> None: ...


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class ThreatTracker:
    """
    Aggregates UNKNOWN verdicts by normalized command text.

    Entries live for the process lifetime, capped at max_entries; the
    least recently seen entry is evicted first. Each record is also
    forwarded, redacted, to an optional journal sink.
    """

    def __init__(
        self,
        journal: JournalSink | None = None,
        resolver: AliasResolver | None = None,
        max_entries: int = 1000,
        session_id: str | None = None,
    ):
        self.journal = journal
        self.resolver = resolver or AliasResolver()
        self.max_entries = max_entries
        self.session_id = session_id or new_session_id()
        self._entries: OrderedDict[str, ThreatEntry] = OrderedDict()
        self._total = 0
        self._lock = threading.Lock()

    def record(self, command: str, verdict: SecurityVerdict) -> ThreatEntry:
        """Fold one occurrence into the aggregate."""
        key = normalize_command(command)
        now = datetime.now()

        with self._lock:
            self._total += 1
            entry = self._entries.get(key)
            if entry is not None:
                entry.count += 1
                entry.last_seen = now
                self._entries.move_to_end(key)
            else:
                entry = ThreatEntry(
                    key=key,
                    sample=redact(command.strip()),
                    first_seen=now,
                    last_seen=now,
                    count=1,
                    session_id=self.session_id,
                    risk=verdict.risk,
                    category=verdict.category,
                    possible_aliases=self.resolver.aliases_in(command),
                )
                self._entries[key] = entry
                while len(self._entries) > self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug(f"Evicted threat entry: {evicted[:60]}")

        logger.warning(f"Unknown command recorded ({entry.count}x): {entry.sample[:120]}")
        self._journal(command, key, now)
        return entry

    def _journal(self, command: str, normalized: str, now: datetime) -> None:
        if self.journal is None:
            return
        record = JournalRecord(
            ts=now.isoformat(),
            hash=command_hash(command),
            redacted=redact(command.strip()),
            normalized=redact(normalized),
            session_id=self.session_id,
        )
        try:
            self.journal.append(record)
        except Exception as e:
            logger.error(f"Failed to write threat journal: {e}")

    def get(self, command: str) -> ThreatEntry | None:
        with self._lock:
            return self._entries.get(normalize_command(command))

    def stats(self) -> dict[str, Any]:
        """Aggregate view for threat-analysis."""
        with self._lock:
            entries = list(self._entries.values())
            total = self._total

        recent = sorted(entries, key=lambda e: e.last_seen, reverse=True)[:10]
        return {
            "totalUnknownCommands": total,
            "uniqueThreats": len(entries),
            "highRiskThreats": sum(1 for e in entries if e.risk in HIGH_RISK),
            "aliasesDetected": sum(1 for e in entries if e.possible_aliases),
            "sessionId": self.session_id,
            "recentThreats": [e.to_dict() for e in recent],
        }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total = 0

    def __len__(self) -> int:
        return len(self._entries)
