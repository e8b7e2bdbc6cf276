"""Data models for tool definitions, tool calls, results, and MCP messages."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field

from chatagent.core.errors import ToolExecutionError

ToolFunction = Callable[[Dict[str, Any]], Dict[str, Any]]

# Parameter types recognised in the "type: description" shorthand.
_TYPE_HINTS = (
    ("string", "string"),
    ("number", "number"),
    ("int", "number"),
    ("bool", "boolean"),
)


class ToolType(str, Enum):
    """Transport a tool is reached through."""

    LOCAL = "local"
    HTTP = "http"
    SSE = "sse"


def _infer_property(hint: Any) -> Dict[str, Any]:
    """Turn ``"number: first operand"`` into ``{"type": "number", "description": ...}``."""
    text = hint if isinstance(hint, str) else ""
    if ":" not in text:
        return {"type": "string", "description": text}

    type_part, _, desc = text.partition(":")
    type_part = type_part.strip().lower()
    json_type = "string"
    for needle, mapped in _TYPE_HINTS:
        if needle in type_part:
            json_type = mapped
            break
    return {"type": json_type, "description": desc.strip()}


def normalize_parameters(parameters: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a JSON-schema object for a tool's parameters.

    Parameters that already carry a ``type`` key are treated as a schema and
    returned unchanged; otherwise each key's ``"type: description"`` hint is
    converted into a property.
    """
    if "type" in parameters:
        return parameters
    return {
        "type": "object",
        "properties": {key: _infer_property(hint) for key, hint in parameters.items()},
        "required": [],
    }


class ToolDefinition(BaseModel):
    """
    A registered tool. Concrete subclasses pick the transport.

    Validity is checked with :meth:`is_valid` rather than at construction so
    that a registry can reject a bad definition without raising.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    tool_type: ClassVar[ToolType]

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def is_valid(self) -> bool:
        return bool(self.name) and bool(self.description) and self._transport_ready()

    def _transport_ready(self) -> bool:
        raise NotImplementedError

    @property
    def is_networked(self) -> bool:
        return self.tool_type is not ToolType.LOCAL

    def catalogue_entry(self) -> Dict[str, Any]:
        """MCP-style entry used to build prompt-based tool instructions."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def native_entry(self) -> Dict[str, Any]:
        """OpenAI/Ollama function-calling entry."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": normalize_parameters(self.parameters),
            },
        }


class LocalTool(ToolDefinition):
    """Tool implemented by an in-process callback."""

    tool_type: ClassVar[ToolType] = ToolType.LOCAL

    function: Optional[ToolFunction] = None

    def _transport_ready(self) -> bool:
        return self.function is not None

    def invoke(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        if self.function is None:
            raise ToolExecutionError(f"Local tool '{self.name}' has no function")
        return self.function(parameters)


class HttpTool(ToolDefinition):
    """Tool served by an MCP server over JSON-RPC ``tools/call``."""

    tool_type: ClassVar[ToolType] = ToolType.HTTP

    url: str = ""

    def _transport_ready(self) -> bool:
        return bool(self.url)


class SseTool(ToolDefinition):
    """Tool whose results arrive as a Server-Sent Events stream."""

    tool_type: ClassVar[ToolType] = ToolType.SSE

    url: str = ""

    def _transport_ready(self) -> bool:
        return bool(self.url)

    def stream_url(self, arguments: Dict[str, Any]) -> str:
        """Stream URL with the arguments appended as a query string."""
        if not arguments:
            return self.url
        query = urlencode({key: _query_value(value) for key, value in arguments.items()})
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{query}"


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolCall(BaseModel):
    """Record of a single tool dispatch, alive only until it settles."""

    call_id: str = ""
    tool_name: str = ""
    arguments: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def model_post_init(self, __context: Any) -> None:
        if not self.call_id:
            self.call_id = uuid.uuid4().hex[:8]
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def is_pending(self) -> bool:
        return self.status is ToolCallStatus.PENDING

    def to_result(self) -> "ToolResult":
        return ToolResult(
            call_id=self.call_id,
            tool_name=self.tool_name,
            success=self.status is ToolCallStatus.COMPLETED,
            result=self.result or {},
            error=self.error,
        )


class ToolResult(BaseModel):
    """Outcome of a tool call as handed back to the protocol client."""

    call_id: str = ""
    tool_name: str = ""
    success: bool = True
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class MCPMessage(BaseModel):
    """Role/content message carrying optional tool context."""

    role: str
    content: str = ""
    context: Dict[str, Any] = Field(default_factory=dict)
    tool_call_id: str = ""
    tool_name: str = ""

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.context:
            data["context"] = self.context
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_name:
            data["tool_name"] = self.tool_name
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "MCPMessage":
        return cls(
            role=str(data.get("role", "")),
            content=str(data.get("content", "")),
            context=data.get("context") or {},
            tool_call_id=str(data.get("tool_call_id", "")),
            tool_name=str(data.get("tool_name", "")),
        )

    @property
    def tool_names(self) -> List[str]:
        tools = self.context.get("tools", [])
        return [name for name in tools if isinstance(name, str) and name]
