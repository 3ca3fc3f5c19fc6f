"""psgate - guarded PowerShell execution gateway for AI agents."""

__version__ = "0.3.0"
__logo__ = "🛡️"
