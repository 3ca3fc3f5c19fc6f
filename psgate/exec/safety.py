"""Rule-based command safety classification."""

import re
import threading
from dataclasses import dataclass
from typing import Iterable, Protocol

from loguru import logger

from psgate.exec.aliases import AliasResolver
from psgate.exec.types import RiskTier, SecurityLevel, SecurityVerdict

# Statement and pipeline separators; captured so segments can be re-joined
SEGMENT_SPLIT = re.compile(r'(;|&&|\|\||\||\n)')

# Anything that chains, substitutes or redirects
CHAIN_CHARS = re.compile(r'[;|&`\n]|[$@]\(|>')

# Constructs that run code from inside an otherwise read-only segment
EMBEDDED_EXEC = re.compile(r"\$\(|@\(|`|(?<![&>])&(?!&)")

CONFIRM_HINT = "Add confirmed: true to proceed"


@dataclass(frozen=True)
class Rule:
    """A compiled pattern tagged with its rule family and verdict category."""
    regex: re.Pattern[str]
    family: str
    category: str

    @property
    def pattern(self) -> str:
        return self.regex.pattern

    def search(self, text: str) -> bool:
        return self.regex.search(text) is not None


class LearnedPatternProvider(Protocol):
    """Source of human-approved safe patterns."""

    def load_patterns(self) -> list[str]: ...


def _rules(family: str, category: str, patterns: Iterable[str]) -> tuple[Rule, ...]:
    return tuple(Rule(re.compile(p, re.IGNORECASE), family, category) for p in patterns)


# ── OS shell groups (matched on the raw command) ──

OS_DESTRUCTIVE = _rules("OS_DESTRUCTIVE", "OS_DESTRUCTIVE", [
    r'(?<![\w-])(?:del|erase|rd|rmdir)\b(?=[^;|&\n]*\s/s\b)(?=[^;|&\n]*\s/q\b)',
    r'(?<![\w$-])format(?:\.com|\.exe)?\s+[a-z]:',
    r'^\s*format(?:\.com|\.exe)?\b(?!-)',
    r'(?<![\w-])shutdown(?:\.exe)?\b(?!-)',
    r'(?<![\w-])reg(?:\.exe)?\s+(?:add|delete)\b',
    r'(?<![\w-])wmic(?:\.exe)?\b',
    r'(?<![\w-])diskpart(?:\.exe)?\b',
]) + _rules("OS_DESTRUCTIVE", "DISK_DESTRUCTIVE", [
    r'\b(?:Format-Volume|Clear-Disk|Initialize-Disk|Remove-Partition)\b',
])

OS_LISTING = re.compile(r'^\s*(?:dir|ls)(?:\s+[^;|&`<>\n$(){}]*)?$', re.IGNORECASE)

OS_RISKY = _rules("OS_RISKY", "OS_MUTATION", [
    r'^\s*(?:copy|xcopy|robocopy|move|ren|rename)(?:\.exe)?\b(?!-)',
    r'^\s*(?:del|erase|rd|rmdir)\b(?!-)(?![^\n]*\s/s\b)',
    r'^\s*sc(?:\.exe)?\s+stop\b',
    r'^\s*net\s+stop\b',
    r'^\s*taskkill(?:\.exe)?\b',
    r'^\s*(?:icacls|attrib)(?:\.exe)?\b',
])

OS_SAFE = _rules("OS_SAFE", "OS_READONLY", [
    r'^\s*(?:whoami|ver|hostname|systeminfo|tasklist|getmac|netstat)(?:\.exe)?(?:\s|$)',
    r'^\s*ipconfig(?:\.exe)?(?![^\n]*\s/(?:release|renew|flushdns|registerdns))(?:\s|$)',
])

# ── Merged BLOCKED set (matched on the alias-expanded command) ──

REGISTRY_DELETION = _rules("REGISTRY_DELETION", "REGISTRY_MODIFICATION", [
    r'\b(?:Remove|Clear)-ItemProperty\b',
    r'\bRemove-Item\b.*\bHK(?:LM|CU|CR|U|CC):',
    r'(?<![\w-])reg(?:\.exe)?\s+(?:add|delete|import)\b',
    r'\b(?:Remove|Clear)-\w+\b.*\bHKEY_',
])

SYSTEM_PATHS = _rules("PROTECTED_SYSTEM_PATH", "SYSTEM_FILE_MODIFICATION", [
    r'\b(?:Remove|Set|New|Move|Copy|Rename|Clear|Add|Out)-\w+\b.*[a-z]:\\Windows\\(?:System32|SysWOW64|Boot)\b',
    r'\b(?:Remove|Set|New|Move|Copy|Rename|Clear|Add|Out)-\w+\b.*\\WindowsApps\b',
    r'>{1,2}\s*[\'"]?[a-z]:\\Windows\\(?:System32|SysWOW64|Boot)\b',
])

ROOT_DRIVE_DELETION = _rules("ROOT_DRIVE_DELETION", "ROOT_DRIVE_DELETION", [
    r'\bRemove-Item\b.*\s[\'"]?(?:[a-z]:\\?|[a-z]:\\\*|/|/\*)[\'"]?(?=\s|$)',
    r'(?<![\w-])(?:rd|rmdir)\s+[\'"]?[a-z]:\\?[\'"]?\s+/s\b',
])

REMOTE_MODIFICATION = _rules("REMOTE_MODIFICATION", "REMOTE_MODIFICATION", [
    r'\bInvoke-Command\b.*-ComputerName\s+[\'"]?(?!(?:localhost|127\.0\.0\.1|\.)[\'"]?(?:\s|$))\S',
    r'\b(?:Enter|New)-PSSession\b',
    r'\bSet-Service\b.*-ComputerName\b',
    r'\b(?:Invoke-WmiMethod|Invoke-CimMethod|Set-WmiInstance|Set-CimInstance|Remove-WmiObject|Remove-CimInstance)\b.*-ComputerName\b',
])

CRITICAL_THREATS = _rules("CRITICAL_THREAT", "SECURITY_THREAT", [
    r'(?:^|\s)-(?:enc|encodedcommand|ec)\b',
    r'(?:^|\s)-w(?:indowstyle)?\s+hidden\b',
    r'(?:^|\s)-(?:ep|executionpolicy)\s+bypass\b',
    r'\bcmd(?:\.exe)?\s+/c\b',
    r'\b(?:wscript|cscript|mshta|rundll32|regsvr32)(?:\.exe)?\b',
    r'\bDownload(?:String|File)\b',
    r'\bNet\.WebClient\b',
    r'\bInvoke-WebRequest\b.*\s-OutFile\b',
    r'\b(?:iwr|irm|curl|wget|Invoke-WebRequest|Invoke-RestMethod)\b.*\|\s*(?:iex|Invoke-Expression)\b',
    r'\bInvoke-Expression\b',
    r'(?:^|[|;&]\s*)iex\b',
    r'\bFromBase64String\b',
    r'\bbitsadmin(?:\.exe)?\b.*\s/transfer\b',
    r'\bStart-BitsTransfer\b',
    r'\b(?:wget|curl|Invoke-WebRequest)\b.*\s>',
    r'\[System\.Text\.Encoding\]::\w+\.GetString\b',
    r'\bAdd-MpPreference\b.*-ExclusionPath\b',
    r'\bSet-MpPreference\b.*-Disable\w*',
])

DESTRUCTIVE_COMMANDS = _rules("DESTRUCTIVE_COMMAND", "DESTRUCTIVE_OPERATION", [
    r'\b(?:Stop|Restart)-Computer\b',
    r'\b(?:New|Remove)-LocalUser\b',
    r'\bAdd-LocalGroupMember\b',
    r'(?<![\w-])net\s+(?:user|localgroup)\b.*\s/(?:add|delete)\b',
    r'\bSet-ExecutionPolicy\b',
    r'\bClear-EventLog\b',
    r'\bwevtutil(?:\.exe)?\s+cl\b',
    r'\bSet-Service\b.*-StartupType\s+Disabled\b',
    r'\b(?:Enable|Disable)-WindowsOptionalFeature\b',
    r'\bsudo\b',
])

VCS_DESTRUCTIVE = _rules("VCS_DESTRUCTIVE", "VCS_DESTRUCTIVE", [
    r'\bgit\s+push\b.*\s(?:--force\S*|-f)(?=\s|$)',
    r'\bgit\s+push\b.*\s\+\S',
    r'\bgit\s+push\b.*\s(?:--delete|-d)(?=\s|$)',
    r'\bgit\s+push\b.*\s:\S',
    r'\bgit\s+reset\b.*\s--hard\b',
    r'\bgit\s+clean\b.*\s-\w*f',
    r'\bgit\s+rebase\b.*\s(?:-i|--interactive)(?=\s|$)',
    r'\bgit\s+filter-(?:branch|repo)\b',
    r'\bgit\s+branch\b.*\s(?-i:-D)(?=\s|$)',
    r'\bgit\s+reflog\s+expire\b',
    r'\bgit\s+update-ref\s+-d\b',
    r'\bgh\s+repo\s+delete\b',
    r'\bgh\s+secret\s+(?:set|remove|delete)\b',
])

# ── Merged RISKY set ──

RISKY_RULES = (
    _rules("REGISTRY_WRITE", "REGISTRY_OPERATION", [
        r'\b(?:Set|New|Rename)-ItemProperty\b',
        r'\b(?:New|Set)-Item\b.*\bHK(?:LM|CU|CR|U|CC):',
        r'(?<![\w-])reg(?:\.exe)?\s+(?:copy|save|restore|load|unload)\b',
    ])
    + _rules("VCS_MUTATION", "VCS_MUTATION", [
        r'\bgit\s+(?:add|commit|push|pull|fetch|merge|rebase|checkout|switch|stash|cherry-pick|revert|restore|rm|mv|init|clone)\b',
        r'\bgit\s+tag\s+(?!-l\b|--list\b)[^-\s]',
        r'\bgit\s+branch\s+(?!-)\S',
        r'\bgit\s+branch\b.*\s(?:-d|--delete|-m|--move|-c|--copy)(?=\s|$)',
        r'\bgh\s+pr\s+(?:create|checkout|merge)\b',
        r'\bgh\s+issue\s+(?:create|close)\b',
    ])
    + _rules("DISK_OPERATION", "DISK_OPERATION", [
        r'\b(?:New|Resize|Set)-Partition\b',
        r'\bSet-Disk\b',
        r'\b(?:Optimize|Repair|Set)-Volume\b',
        r'\b(?:Mount|Dismount)-DiskImage\b',
        r'\bchkdsk(?:\.exe)?\b',
    ])
    + _rules("SERVICE_OPERATION", "SERVICE_OPERATION", [
        r'\b(?:Start|Stop|Restart|Suspend|Resume|Set|New|Remove)-Service\b',
        r'(?<![\w-])sc(?:\.exe)?\s+(?:start|stop|config|delete|create)\b',
        r'(?<![\w-])net\s+(?:start|stop)\b',
    ])
    + _rules("NETWORK_OPERATION", "NETWORK_OPERATION", [
        r'\bInvoke-(?:WebRequest|RestMethod)\b',
        r'\bSend-MailMessage\b',
        r'\b(?:New|Set|Remove|Enable|Disable)-NetFirewallRule\b',
        r'\b(?:New|Set|Remove)-NetIPAddress\b',
        r'\bSet-DnsClientServerAddress\b',
        r'\bnetsh(?:\.exe)?\b',
    ])
    + _rules("PROCESS_OPERATION", "PROCESS_OPERATION", [
        r'\b(?:Stop|Start)-Process\b',
        r'\btaskkill(?:\.exe)?\b',
        r'\bStart-Job\b',
    ])
    + _rules("FILE_OPERATION", "FILE_OPERATION", [
        r'\bRemove-Item\b',
        r'\b(?:Move|Copy|Rename|New|Set)-Item\b',
        r'\b(?:Set|Add|Clear)-Content\b',
        r'\bOut-File\b',
        r'\b(?:Expand|Compress)-Archive\b',
        r'>{1,2}\s*(?!&|\$null\b)\S',
    ])
    + _rules("STATE_MUTATION", "STATE_MUTATION", [
        r'(?:^|[;|&\n]\s*)(?:Set|New|Remove|Clear|Rename|Add|Install|Uninstall|Update|Register|Unregister|Enable|Disable|Reset|Import)-(?!Host\b|Location\b)\w+',
    ])
)

# ── Merged SAFE set (every segment must match) ──

SAFE_RULES = _rules("VCS_READONLY", "VCS_READONLY", [
    r'^git\s+(?:status|log|show|diff|rev-parse|describe|blame|ls-files|shortlog)\b',
    r'^git\s+branch(?:\s+(?:-a|-r|-v|-vv|--all|--list|--show-current))*\s*$',
    r'^git\s+remote(?:\s+-v)?\s*$',
    r'^git\s+tag(?:\s+(?:-l|--list)\b.*)?\s*$',
    r'^gh\s+(?:repo\s+view|issue\s+list|pr\s+list|pr\s+view|issue\s+view)\b',
]) + _rules("READ_ONLY", "INFORMATION_GATHERING", [
    r'^Get-',
    r'^Show-',
    r'^Test-(?!Computer)(?!.*-ComputerName)',
    r'^Out-(?:Host|String|Null)\b',
    r'^Write-(?:Host|Output|Information|Verbose)\b',
    r'^Format-(?:Table|List|Wide|Custom)\b',
    r'^Select-(?:Object|String|Xml)\b',
    r'^(?:Where|Sort|Group|Measure|Compare|ForEach)-Object\b',
    r'^ConvertTo-',
    r'^ConvertFrom-',
    r'^Start-Sleep\b',
    r'^Resolve-DnsName\b',
    r'^Clear-Host\b',
    r'^(?:Set|Push|Pop)-Location\b',
    r'^\$PSVersionTable\b',
])


def _verdict(
    level: SecurityLevel,
    risk: RiskTier,
    rule: Rule | None,
    reason: str,
    recommendations: list[str],
    category: str | None = None,
) -> SecurityVerdict:
    blocked = level in ("BLOCKED", "CRITICAL", "DANGEROUS")
    return SecurityVerdict(
        level=level,
        risk=risk,
        category=category or (rule.category if rule else "UNKNOWN_COMMAND"),
        reason=reason,
        blocked=blocked,
        requires_prompt=not blocked and level != "SAFE",
        matched_patterns=[rule.pattern] if rule else [],
        recommendations=recommendations,
    )


class SafetyClassifier:
    """
    Classifies PowerShell commands into security verdicts.

    Rule groups are evaluated in a fixed order and the first match wins.
    Learned safe patterns are an immutable snapshot loaded on first use
    and rebuilt only by reload_learned_patterns().
    """

    def __init__(
        self,
        resolver: AliasResolver | None = None,
        learned_provider: LearnedPatternProvider | None = None,
        additional_safe: list[str] | None = None,
        additional_blocked: list[str] | None = None,
    ):
        self.resolver = resolver or AliasResolver()
        self._learned_provider = learned_provider
        self._learned: tuple[Rule, ...] | None = None
        self._lock = threading.Lock()

        self._blocked: tuple[Rule, ...] = (
            REGISTRY_DELETION
            + SYSTEM_PATHS
            + ROOT_DRIVE_DELETION
            + REMOTE_MODIFICATION
            + CRITICAL_THREATS
            + DESTRUCTIVE_COMMANDS
            + VCS_DESTRUCTIVE
            + _rules("CUSTOM_BLOCKED", "POLICY_BLOCKED", additional_blocked or [])
        )
        self._safe: tuple[Rule, ...] = SAFE_RULES + _rules(
            "CUSTOM_SAFE", "INFORMATION_GATHERING", additional_safe or []
        )

    # ── Learned patterns ──

    def _compile_learned(self) -> tuple[Rule, ...]:
        if self._learned_provider is None:
            return ()
        try:
            patterns = self._learned_provider.load_patterns()
        except Exception as e:
            logger.warning(f"Failed to load learned safe patterns: {e}")
            return ()

        rules: list[Rule] = []
        for pattern in patterns:
            try:
                rules.append(Rule(re.compile(pattern, re.IGNORECASE), "LEARNED_SAFE", "LEARNED_SAFE"))
            except re.error as e:
                logger.warning(f"Skipping invalid learned pattern {pattern!r}: {e}")
        if rules:
            logger.info(f"Loaded {len(rules)} learned safe pattern(s)")
        return tuple(rules)

    def learned_rules(self) -> tuple[Rule, ...]:
        """Current learned-pattern snapshot, loading it on first use."""
        snapshot = self._learned
        if snapshot is None:
            with self._lock:
                if self._learned is None:
                    self._learned = self._compile_learned()
                snapshot = self._learned
        return snapshot

    def reload_learned_patterns(self) -> int:
        """Rebuild the learned-pattern snapshot; returns its size."""
        snapshot = self._compile_learned()
        with self._lock:
            self._learned = snapshot
        return len(snapshot)

    # ── Classification ──

    def expand(self, command: str) -> tuple[str, list[str]]:
        """Expand the head of every segment; returns (text, segments)."""
        parts = SEGMENT_SPLIT.split(command)
        segments: list[str] = []
        for i in range(0, len(parts), 2):
            parts[i] = self.resolver.resolve(parts[i])
            if parts[i].strip():
                segments.append(parts[i].strip())
        return "".join(parts), segments

    def classify(self, command: str) -> SecurityVerdict:
        """Classify a command. Deterministic for a fixed learned snapshot."""
        text = command.strip() if command else ""
        if not text:
            return _verdict(
                "UNKNOWN", "MEDIUM", None, "Empty command",
                [CONFIRM_HINT, "Review command for safety"],
            )

        chained = CHAIN_CHARS.search(text) is not None

        # 1. OS destructive, before anything can soften it
        for rule in OS_DESTRUCTIVE:
            if rule.search(text):
                return _verdict(
                    "CRITICAL", "CRITICAL", rule,
                    f"{rule.family}: matched {rule.pattern}",
                    ["This operation is permanently blocked"],
                )

        # 2. Bare directory listing
        if OS_LISTING.match(text):
            return _verdict(
                "SAFE", "LOW", None, "OS_LISTING: bare directory listing",
                ["Command is safe to execute"], category="INFORMATION_GATHERING",
            )

        # 2b. High-risk alias masking intent
        for segment in SEGMENT_SPLIT.split(text)[::2]:
            token = self.resolver.first_token(segment)
            info = self.resolver.lookup(token) if token else None
            if info is not None and info.risk == "CRITICAL":
                return _verdict(
                    "CRITICAL", "CRITICAL", None,
                    f"ALIAS_THREAT: alias '{token}' masks {info.cmdlet}",
                    ["Use full cmdlet names instead of aliases", "Review command for malicious intent"],
                    category="ALIAS_THREAT",
                )

        # 3. Alias expansion
        expanded, segments = self.expand(text)

        # 4-5. OS shell groups, single statements only
        if not chained:
            for rule in OS_RISKY:
                if rule.search(text):
                    return _verdict(
                        "RISKY", "MEDIUM", rule,
                        f"{rule.family}: matched {rule.pattern}",
                        [CONFIRM_HINT],
                    )
            for rule in OS_SAFE:
                if rule.search(text):
                    return _verdict(
                        "SAFE", "LOW", rule,
                        f"{rule.family}: matched {rule.pattern}",
                        ["Command is safe to execute"],
                    )

        # 6. Blocked
        for rule in self._blocked:
            if rule.search(expanded):
                critical = any(c.search(expanded) for c in CRITICAL_THREATS)
                if critical:
                    level, risk = "CRITICAL", "CRITICAL"
                elif rule.family == "DESTRUCTIVE_COMMAND":
                    level, risk = "DANGEROUS", "HIGH"
                else:
                    level, risk = "BLOCKED", "HIGH"
                return _verdict(
                    level, risk, rule,
                    f"{rule.family}: matched {rule.pattern}",
                    ["This operation is permanently blocked", "Perform it manually outside the gateway if intended"],
                )

        # 7. Risky
        for rule in RISKY_RULES:
            if rule.search(expanded):
                return _verdict(
                    "RISKY", "MEDIUM", rule,
                    f"{rule.family}: matched {rule.pattern}",
                    [CONFIRM_HINT, "Use -WhatIf to preview the change"],
                )

        # 8. Safe: learned patterns on the whole text, built-ins per segment
        if EMBEDDED_EXEC.search(text):
            return _verdict(
                "UNKNOWN", "MEDIUM", None,
                "UNKNOWN_COMMAND: embedded execution cannot be read-only",
                [CONFIRM_HINT, "Review command for safety"],
            )

        for rule in self.learned_rules():
            if rule.search(text):
                return _verdict(
                    "SAFE", "LOW", rule,
                    f"{rule.family}: matched {rule.pattern}",
                    ["Command is safe to execute"],
                )

        first_match: Rule | None = None
        for segment in segments:
            match = next((rule for rule in self._safe if rule.search(segment)), None)
            if match is None:
                first_match = None
                break
            first_match = first_match or match
        if first_match is not None:
            return _verdict(
                "SAFE", "LOW", first_match,
                f"{first_match.family}: matched {first_match.pattern}",
                ["Command is safe to execute"],
            )

        # 9. Unknown
        return _verdict(
            "UNKNOWN", "MEDIUM", None,
            "UNKNOWN_COMMAND: no rule matched",
            [CONFIRM_HINT, "Review command for safety"],
        )
