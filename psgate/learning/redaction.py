"""Redaction and normalization of command text before it leaves the process."""

import hashlib
import hmac
import os
import re

DEFAULT_SECRET = "dev-secret"

# Order matters: GUIDs before hashes, paths before e-mail
REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r'\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b', re.IGNORECASE), "<GUID>"),
    (re.compile(r'\b(?:\d{1,3}\.){3}\d{1,3}\b'), "<IP>"),
    (re.compile(r'\b[a-z]:\\[^\s\'"|;]*', re.IGNORECASE), "<PATH>"),
    (re.compile(r'\b[0-9a-f]{32,}\b', re.IGNORECASE), "<HASH>"),
    (re.compile(r'\b[\w.+-]+@[\w-]+\.[\w.-]+\b'), "<EMAIL>"),
]

WHITESPACE = re.compile(r'\s+')


def redact(command: str) -> str:
    """Replace identifiers, addresses and paths with placeholders."""
    text = command
    for pattern, placeholder in REDACTIONS:
        text = pattern.sub(placeholder, text)
    return text


def normalize_command(command: str) -> str:
    """Trimmed, lower-cased, whitespace-collapsed form used as a grouping key."""
    return WHITESPACE.sub(" ", command.strip()).lower()


def command_hash(command: str, secret: str | None = None) -> str:
    """Keyed HMAC-SHA256 of the raw command; the raw text is never stored."""
    key = secret or os.environ.get("PSGATE_LEARN_SECRET") or DEFAULT_SECRET
    return hmac.new(key.encode("utf-8"), command.encode("utf-8"), hashlib.sha256).hexdigest()
