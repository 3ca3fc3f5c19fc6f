"""Base class for tools exposed at the invocation boundary."""

from abc import ABC, abstractmethod
from typing import Any


class Tool(ABC):
    """A named operation with a JSON-schema parameter description."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used for dispatch."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human readable description."""

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON schema of accepted parameters."""

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        """Run the tool and return its payload as a string."""

    def to_schema(self) -> dict[str, Any]:
        """Function-style tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
