"""Unknown-command journal and learned safe patterns."""

from psgate.learning.journal import Candidate, JournalRecord, ThreatJournal
from psgate.learning.redaction import command_hash, normalize_command, redact
from psgate.learning.store import LearnedPatternStore

__all__ = [
    "Candidate",
    "JournalRecord",
    "ThreatJournal",
    "LearnedPatternStore",
    "command_hash",
    "normalize_command",
    "redact",
]
