"""
ChatAgent - Tool-calling chat client for Ollama-compatible backends.

Talks to a local or remote model, detects whether it understands native
tool definitions, and routes the tool calls it makes to in-process
functions or MCP tool servers over HTTP and Server-Sent Events.

Architecture:
- ProtocolClient streams the conversation with the model backend
- ToolRegistry holds tools and dispatches calls over three transports
- Agent wires the two together for the command line
"""

__version__ = "1.0.0"
__author__ = "ChatAgent Team"
__license__ = "Apache-2.0"

from chatagent.core.agent import Agent, TaskResult
from chatagent.mcp.registry import ToolRegistry
from chatagent.providers.ollama import ProtocolClient, TurnResult

__all__ = [
    "Agent",
    "TaskResult",
    "ToolRegistry",
    "ProtocolClient",
    "TurnResult",
    "__version__",
]
