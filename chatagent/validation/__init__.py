"""
ChatAgent validation module.

This module provides configuration validation and schema enforcement.
"""

from chatagent.validation.config import (
    ChatAgentConfig,
    Config,
    ConfigError,
    LLMConfig,
    MCPConfig,
    MCPServerConfig,
)

__all__ = [
    "ChatAgentConfig",
    "Config",
    "ConfigError",
    "LLMConfig",
    "MCPConfig",
    "MCPServerConfig",
]
