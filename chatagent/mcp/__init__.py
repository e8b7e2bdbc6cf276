"""
MCP tools - local functions and remote tool servers behind one registry.

Tools are reached in-process, over JSON-RPC ``tools/call`` requests, or
through Server-Sent Events streams.
"""

from chatagent.mcp.builtin import builtin_tools, calculator_tool, datetime_tool
from chatagent.mcp.registry import ToolRegistry
from chatagent.mcp.schema import (
    HttpTool,
    LocalTool,
    MCPMessage,
    SseTool,
    ToolCall,
    ToolCallStatus,
    ToolDefinition,
    ToolResult,
    ToolType,
)
from chatagent.mcp.sse import SSEClient, SSEEvent, SSEParser
from chatagent.mcp.transport import MCPTransport, MCPTransportError

__all__ = [
    "HttpTool",
    "LocalTool",
    "MCPMessage",
    "MCPTransport",
    "MCPTransportError",
    "SSEClient",
    "SSEEvent",
    "SSEParser",
    "SseTool",
    "ToolCall",
    "ToolCallStatus",
    "ToolDefinition",
    "ToolRegistry",
    "ToolResult",
    "ToolType",
    "builtin_tools",
    "calculator_tool",
    "datetime_tool",
]
