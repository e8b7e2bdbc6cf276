"""
ChatAgent Configuration - Configuration loading and validation.

This module provides the Config class for managing ChatAgent configuration
from both global (~/.chatagent/config.yaml) and local (.chatagent/config.yaml)
sources.
"""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from chatagent.core.errors import ChatAgentError

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant with access to tools. Use the available tools "
    "when appropriate to provide accurate and helpful responses."
)


class ConfigError(ChatAgentError):
    """Raised when there's a configuration error."""

    pass


class LLMConfig(BaseModel):
    """Backend connection and generation parameters."""

    backend: str = "ollama"
    model: str = "gpt-oss:20b"
    api_url: str = "http://localhost:11434/api/generate"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Each value below is only sent when its override flag is set.
    context_window_size: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    top_k: int = Field(default=40, ge=1)
    max_tokens: int = Field(default=2048, gt=0)
    override_context_window_size: bool = False
    override_temperature: bool = False
    override_top_p: bool = False
    override_top_k: bool = False
    override_max_tokens: bool = False

    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    request_timeout: float = Field(default=90.0, gt=0)


class MCPServerConfig(BaseModel):
    """A remote tool server."""

    name: str
    url: str
    type: Literal["http", "sse"] = "http"
    enabled: bool = True
    description: str = ""


class MCPConfig(BaseModel):
    """Configured tool servers."""

    servers: List[MCPServerConfig] = Field(default_factory=list)
    discovery_timeout: float = Field(default=5.0, gt=0)

    @property
    def enabled_servers(self) -> List[MCPServerConfig]:
        return [server for server in self.servers if server.enabled]


class ChatAgentConfig(BaseModel):
    """Complete ChatAgent configuration schema."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    mcp: MCPConfig = Field(default_factory=MCPConfig)


class Config:
    """
    ChatAgent configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.chatagent/config.yaml
    - Local: .chatagent/config.yaml (project-specific)

    Local configuration overrides global configuration.

    Example:
        >>> config = Config.load()
        >>> config.merged.llm.model
        'gpt-oss:20b'
        >>> config.set_model("llama3.1", global_=True)
        >>> config.save()
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".chatagent"
    LOCAL_CONFIG_DIR = Path(".chatagent")

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
        local_path: Optional[Path] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
            local_path: File the local configuration was read from.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._local_path = local_path
        self._merged: Optional[ChatAgentConfig] = None

    @classmethod
    def load(cls, local_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from default locations.

        Args:
            local_path: Explicit project config file; when omitted the
                nearest .chatagent/config.yaml above the working directory
                is used.

        Returns:
            Config instance with loaded configuration.
        """
        if local_path is None:
            local_path = cls._find_local_config()
        elif not local_path.exists():
            raise ConfigError(f"Config file not found: {local_path}")

        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(local_path)

        return cls(global_config=global_config, local_config=local_config, local_path=local_path)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return data

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.LOCAL_CONFIG_DIR / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> ChatAgentConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = ChatAgentConfig(**self.get_merged_config())
            except (TypeError, ValidationError) as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def _set_llm_value(self, key: str, value: Any, global_: bool) -> None:
        config = self._global_config if global_ else self._local_config
        config.setdefault("llm", {})[key] = value
        self._merged = None  # Reset cache

    def set_model(self, model_name: str, global_: bool = False) -> None:
        """
        Set the model used for new conversations.

        Args:
            model_name: Backend model name, e.g. "llama3.1".
            global_: Whether to set globally or locally.
        """
        self._set_llm_value("model", model_name, global_)

    def set_api_url(self, api_url: str, global_: bool = False) -> None:
        """Set the backend generate endpoint."""
        self._set_llm_value("api_url", api_url, global_)

    def add_server(self, server: MCPServerConfig, global_: bool = False) -> None:
        """Append a tool server to the selected scope."""
        config = self._global_config if global_ else self._local_config
        servers = config.setdefault("mcp", {}).setdefault("servers", [])
        servers.append(server.model_dump())
        self._merged = None

    def save(self) -> None:
        """Save configuration to files."""
        self._save_yaml(self.GLOBAL_CONFIG_DIR / "config.yaml", self._global_config)

        local_path = self._local_path or self._find_local_config()
        if local_path:
            self._save_yaml(local_path, self._local_config)

    def _save_yaml(self, path: Path, data: Dict[str, Any]) -> None:
        """Save data to a YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    @classmethod
    def create_default_global(cls) -> Path:
        """Create default global configuration file."""
        config_dir = cls.GLOBAL_CONFIG_DIR
        config_file = config_dir / "config.yaml"

        if config_file.exists():
            return config_file

        config_dir.mkdir(parents=True, exist_ok=True)

        default_config = {
            "llm": LLMConfig().model_dump(),
            "mcp": {
                "servers": [],
                "discovery_timeout": 5.0,
            },
        }

        with open(config_file, "w") as f:
            yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)

        return config_file
