"""Tool registry for dispatch by name."""

from typing import Any

from loguru import logger

from psgate.tools.base import Tool


def _normalize_parameters_schema(parameters: Any) -> dict[str, Any]:
    """Ensure a top-level object schema."""
    if not isinstance(parameters, dict):
        return {"type": "object", "properties": {}, "additionalProperties": True}
    if "type" not in parameters and (
        isinstance(parameters.get("properties"), dict)
        or isinstance(parameters.get("required"), list)
    ):
        patched = dict(parameters)
        patched["type"] = "object"
        return patched
    return parameters


class ToolRegistry:
    """
    Registry of boundary tools.

    Unexpected exceptions from a tool are caught here and returned as an
    error string; they never reach the transport.
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_definitions(self) -> list[dict[str, Any]]:
        """All tool definitions with normalized parameter schemas."""
        definitions: list[dict[str, Any]] = []
        for tool in self._tools.values():
            definition = tool.to_schema()
            fn = dict(definition["function"])
            fn["parameters"] = _normalize_parameters_schema(fn.get("parameters"))
            definitions.append({**definition, "function": fn})
        return definitions

    def validate_tool_call(self, name: str, params: dict[str, Any]) -> str | None:
        """Check required params before execution; returns an error or None."""
        tool = self._tools.get(name)
        if not tool:
            return f"Error: Tool '{name}' not found"
        if not isinstance(params, dict):
            return f"Error: Invalid parameters for tool '{name}'"

        required = _normalize_parameters_schema(tool.parameters).get("required")
        if not isinstance(required, list):
            return None

        missing: list[str] = []
        for key in required:
            value = params.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(key)
        if missing:
            return f"Error: Missing required parameter(s) for '{name}': {', '.join(sorted(set(missing)))}"
        return None

    async def execute(self, name: str, params: dict[str, Any]) -> str:
        """Execute a tool by name with given parameters."""
        validation_error = self.validate_tool_call(name, params)
        if validation_error:
            return validation_error

        try:
            return await self._tools[name].execute(**params)
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            return f"Error executing {name}: {str(e)}"

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
