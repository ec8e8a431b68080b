"""Tool schemas, registrations and the name -> registration registry."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from agent_engine.obs.logging import get_logger

logger = get_logger(__name__)

ParameterType = Literal["string", "number", "boolean", "object", "array"]


class ToolParameter(BaseModel):
    type: ParameterType
    description: str
    required: bool = False
    default: Any = None
    enum: list[Any] | None = None


class ToolSchema(BaseModel):
    """Declarative tool contract exposed to models and callers."""

    name: str = Field(min_length=1)
    description: str
    parameters: dict[str, ToolParameter] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def to_json_schema(self) -> dict[str, Any]:
        """Render parameters as a JSON-schema object for function calling."""
        properties: dict[str, Any] = {}
        for key, param in self.parameters.items():
            prop: dict[str, Any] = {"type": param.type, "description": param.description}
            if param.enum is not None:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default
            properties[key] = prop
        return {
            "type": "object",
            "properties": properties,
            "required": [key for key, param in self.parameters.items() if param.required],
        }


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ToolExecutionContext(BaseModel):
    """Authenticated caller identity passed to every tool."""

    user_id: str
    organization_id: str
    session_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RateLimit(BaseModel):
    max_calls: int = Field(ge=1)
    window_ms: int = Field(ge=1)


ToolHandler = Callable[[dict[str, Any], ToolExecutionContext], Awaitable[ToolResult]]


@dataclass(slots=True)
class Tool:
    schema: ToolSchema
    handler: ToolHandler


@dataclass(slots=True)
class ToolRegistration:
    tool: Tool
    enabled: bool = True
    rate_limit: RateLimit | None = None


@dataclass(slots=True)
class RegistryStats:
    total: int
    enabled: int
    disabled: int


@dataclass
class ToolRegistry:
    """Runtime map of tool name to registration.

    Registered once at startup and passed to whoever needs it. Disabling a
    tool flips its flag instead of removing it so it can be re-enabled.
    """

    _tools: dict[str, ToolRegistration] = field(default_factory=dict)

    def register(self, name: str, registration: ToolRegistration) -> None:
        if name in self._tools:
            logger.warning("tool_overwritten", tool=name)
        self._tools[name] = registration
        logger.info("tool_registered", tool=name, enabled=registration.enabled)

    def unregister(self, name: str) -> bool:
        removed = self._tools.pop(name, None) is not None
        if removed:
            logger.info("tool_unregistered", tool=name)
        return removed

    def get(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def is_available(self, name: str) -> bool:
        registration = self._tools.get(name)
        return registration is not None and registration.enabled

    def set_enabled(self, name: str, enabled: bool) -> bool:
        registration = self._tools.get(name)
        if registration is None:
            return False
        registration.enabled = enabled
        logger.info("tool_toggled", tool=name, enabled=enabled)
        return True

    def list_schemas(self) -> list[ToolSchema]:
        """Schemas of enabled tools, in registration order."""
        return [reg.tool.schema for reg in self._tools.values() if reg.enabled]

    def names(self) -> list[str]:
        return list(self._tools)

    def stats(self) -> RegistryStats:
        enabled = sum(1 for reg in self._tools.values() if reg.enabled)
        return RegistryStats(
            total=len(self._tools), enabled=enabled, disabled=len(self._tools) - enabled
        )
