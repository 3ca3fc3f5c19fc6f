"""Tools exposed at the invocation boundary."""

from psgate.tools.base import Tool
from psgate.tools.powershell import RunPowerShellTool, ThreatAnalysisTool
from psgate.tools.registry import ToolRegistry


def build_registry(gateway) -> ToolRegistry:
    """Registry with the gateway's standard tools."""
    registry = ToolRegistry()
    registry.register(RunPowerShellTool(gateway))
    registry.register(ThreatAnalysisTool(gateway))
    return registry


__all__ = ["Tool", "ToolRegistry", "RunPowerShellTool", "ThreatAnalysisTool", "build_registry"]
