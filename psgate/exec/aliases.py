"""PowerShell alias table and leading-token expansion."""

import re
from dataclasses import dataclass

from psgate.exec.types import RiskTier

LEADING_TOKEN = re.compile(r'^(\s*)(\S+)')


@dataclass(frozen=True)
class AliasInfo:
    """Canonical cmdlet behind an alias plus its inherent risk."""
    cmdlet: str
    risk: RiskTier
    category: str


def _a(cmdlet: str, risk: RiskTier = "LOW", category: str = "INFORMATION_GATHERING") -> AliasInfo:
    return AliasInfo(cmdlet, risk, category)


_FILE = "FILE_OPERATION"
_PROC = "PROCESS_OPERATION"
_SVC = "SERVICE_OPERATION"
_NET = "NETWORK_OPERATION"
_REG = "REGISTRY_OPERATION"
_EXEC = "CODE_EXECUTION"
_STATE = "STATE_MUTATION"

DEFAULT_ALIASES: dict[str, AliasInfo] = {
    # Listing and content
    "ls": _a("Get-ChildItem"),
    "dir": _a("Get-ChildItem"),
    "gci": _a("Get-ChildItem"),
    "cat": _a("Get-Content"),
    "type": _a("Get-Content"),
    "gc": _a("Get-Content"),
    # Removal
    "rm": _a("Remove-Item", "HIGH", _FILE),
    "del": _a("Remove-Item", "HIGH", _FILE),
    "erase": _a("Remove-Item", "HIGH", _FILE),
    "rd": _a("Remove-Item", "HIGH", _FILE),
    "rmdir": _a("Remove-Item", "HIGH", _FILE),
    "ri": _a("Remove-Item", "HIGH", _FILE),
    # Copy / move / create
    "cp": _a("Copy-Item", "MEDIUM", _FILE),
    "copy": _a("Copy-Item", "MEDIUM", _FILE),
    "cpi": _a("Copy-Item", "MEDIUM", _FILE),
    "mv": _a("Move-Item", "MEDIUM", _FILE),
    "move": _a("Move-Item", "MEDIUM", _FILE),
    "mi": _a("Move-Item", "MEDIUM", _FILE),
    "ren": _a("Rename-Item", "MEDIUM", _FILE),
    "rni": _a("Rename-Item", "MEDIUM", _FILE),
    "md": _a("New-Item -ItemType Directory", "MEDIUM", _FILE),
    "mkdir": _a("New-Item -ItemType Directory", "MEDIUM", _FILE),
    "ni": _a("New-Item", "MEDIUM", _FILE),
    # Processes
    "ps": _a("Get-Process"),
    "gps": _a("Get-Process"),
    "kill": _a("Stop-Process", "HIGH", _PROC),
    "spps": _a("Stop-Process", "HIGH", _PROC),
    "start": _a("Start-Process", "MEDIUM", _PROC),
    "saps": _a("Start-Process", "MEDIUM", _PROC),
    # Services
    "gsv": _a("Get-Service"),
    "sasv": _a("Start-Service", "MEDIUM", _SVC),
    "spsv": _a("Stop-Service", "HIGH", _SVC),
    "rsv": _a("Restart-Service", "MEDIUM", _SVC),
    # Item properties
    "gp": _a("Get-ItemProperty", "MEDIUM", _REG),
    "sp": _a("Set-ItemProperty", "CRITICAL", _REG),
    "rp": _a("Remove-ItemProperty", "CRITICAL", _REG),
    # Network
    "nslookup": _a("Resolve-DnsName"),
    "ping": _a("Test-NetConnection"),
    "wget": _a("Invoke-WebRequest", "MEDIUM", _NET),
    "curl": _a("Invoke-WebRequest", "MEDIUM", _NET),
    "iwr": _a("Invoke-WebRequest", "MEDIUM", _NET),
    "irm": _a("Invoke-RestMethod", "MEDIUM", _NET),
    # Code execution
    "iex": _a("Invoke-Expression", "CRITICAL", _EXEC),
    "icm": _a("Invoke-Command", "CRITICAL", _EXEC),
    # Aliases
    "sal": _a("Set-Alias", "MEDIUM", _STATE),
    "nal": _a("New-Alias", "MEDIUM", _STATE),
    # Pipeline helpers
    "select": _a("Select-Object"),
    "sort": _a("Sort-Object"),
    "where": _a("Where-Object"),
    "group": _a("Group-Object"),
    "measure": _a("Measure-Object"),
    "ft": _a("Format-Table"),
    "fl": _a("Format-List"),
    "fw": _a("Format-Wide"),
    # Variables
    "gv": _a("Get-Variable"),
    "sv": _a("Set-Variable", "MEDIUM", _STATE),
    "set": _a("Set-Variable", "MEDIUM", _STATE),
    "rv": _a("Remove-Variable", "MEDIUM", _STATE),
    # Misc
    "format": _a("Format-Volume", "CRITICAL", "DISK_DESTRUCTIVE"),
    "cls": _a("Clear-Host"),
    "clear": _a("Clear-Host"),
    "echo": _a("Write-Output"),
    "man": _a("Get-Help"),
    "help": _a("Get-Help"),
    # Navigation and items
    "pwd": _a("Get-Location"),
    "gl": _a("Get-Location"),
    "cd": _a("Set-Location"),
    "sl": _a("Set-Location"),
    "sleep": _a("Start-Sleep"),
    "gi": _a("Get-Item"),
    "gcm": _a("Get-Command"),
    "h": _a("Get-History"),
    "history": _a("Get-History"),
}


class AliasResolver:
    """
    Expands a leading alias token to its canonical cmdlet.

    Only the first whitespace-delimited token is rewritten; the rest of
    the command is preserved byte for byte.
    """

    def __init__(self, aliases: dict[str, AliasInfo] | None = None):
        table = aliases if aliases is not None else DEFAULT_ALIASES
        self._aliases = {name.lower(): info for name, info in table.items()}

    def lookup(self, token: str) -> AliasInfo | None:
        """Case-insensitive lookup of a single token."""
        return self._aliases.get(token.lower())

    def first_token(self, command: str) -> str | None:
        match = LEADING_TOKEN.match(command)
        return match.group(2) if match else None

    def resolve(self, command: str) -> str:
        """Return the command with its leading alias expanded."""
        match = LEADING_TOKEN.match(command)
        if not match:
            return command
        info = self.lookup(match.group(2))
        if info is None:
            return command
        return command[:match.start(2)] + info.cmdlet + command[match.end(2):]

    def aliases_in(self, command: str) -> list[str]:
        """Every known alias appearing as a pipeline-segment head."""
        found: list[str] = []
        for segment in re.split(r'[|;]', command):
            token = self.first_token(segment)
            if token and self.lookup(token) and token.lower() not in found:
                found.append(token.lower())
        return found
