"""
ChatAgent providers module.

Request shapes and the streaming client for Ollama-compatible backends.
"""

from chatagent.providers.base import ModelCapabilities, ToolCallFormat
from chatagent.providers.ollama import ClientState, ProtocolClient, TurnResult

__all__ = ["ClientState", "ModelCapabilities", "ProtocolClient", "ToolCallFormat", "TurnResult"]
