"""
mcpchat Configuration - Configuration loading and validation.

This module provides the Config class for managing mcpchat configuration
from both global (~/.config/mcpchat/config.yaml) and local
(.mcpchat/config.yaml) sources.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class ProviderConfig(BaseModel):
    """Configuration for an OpenAI-compatible endpoint and the models it serves."""

    base_url: Optional[str] = None
    api_key: Optional[str] = None
    models: List[str] = Field(default_factory=list)
    proxy_enabled: bool = False
    proxy_url: Optional[str] = None  # socks5://, http:// or https://
    enabled: bool = True


class AgentConfig(BaseModel):
    """Configuration for the conversation loop."""

    default_model: Optional[str] = None
    prompt: Optional[str] = None
    max_tool_rounds: int = Field(default=10, ge=1)
    timeout: float = 120.0
    mcp_request_timeout: float = 120.0


class MCPServerConfig(BaseModel):
    """Configuration for a single MCP server."""

    name: str = ""  # filled in from the mapping key
    type: Literal["stdio", "http", "sse"] = "stdio"
    command: Optional[str] = None
    args: Optional[List[str]] = None
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    api_key: Optional[str] = None
    tools: List[str] = Field(default_factory=list)
    is_active: bool = False
    description: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return self.type in ("http", "sse") or self.url is not None


class AppConfig(BaseModel):
    """Complete mcpchat configuration schema."""

    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    mcp_servers: Dict[str, MCPServerConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _name_servers(self) -> "AppConfig":
        for name, server in self.mcp_servers.items():
            server.name = name
        return self


class Config:
    """
    mcpchat configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.config/mcpchat/config.yaml
    - Local: .mcpchat/config.yaml (project-specific)

    Local configuration overrides global configuration.

    Example:
        >>> config = Config.load()
        >>> model = config.get_default_model()
        >>> config.set_server_active("video2text", True)
        >>> config.save()
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".config" / "mcpchat"
    LOCAL_CONFIG_DIR = Path(".mcpchat")
    FALLBACK_MODEL = "gpt-4-turbo-preview"

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
        config_dir: Optional[Path] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
            config_dir: Directory holding prompts, transcript and caches.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._config_dir = Path(config_dir) if config_dir else None
        self._merged: Optional[AppConfig] = None

    @classmethod
    def load(cls, config_dir: Optional[Path] = None) -> "Config":
        """
        Load configuration from default locations.

        Returns:
            Config instance with loaded configuration.
        """
        global_dir = Path(config_dir) if config_dir else cls.GLOBAL_CONFIG_DIR
        global_config = cls._load_yaml(global_dir / "config.yaml")
        local_config = cls._load_yaml(cls._find_local_config())

        return cls(global_config=global_config, local_config=local_config, config_dir=global_dir)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
                return data if data else {}
        except Exception as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

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

    @property
    def config_dir(self) -> Path:
        """Directory for prompts/, history.md and cached_mcp_tools.json."""
        return self._config_dir or self.GLOBAL_CONFIG_DIR

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> AppConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = AppConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    # ── Models ────────────────────────────────────────────────────────────

    def all_models(self) -> List[str]:
        """All model names from enabled providers, sorted."""
        names = set()
        for provider in self.merged.providers.values():
            if provider.enabled:
                names.update(provider.models)
        return sorted(names)

    def get_default_model(self) -> str:
        """
        Get the default model.

        Falls back to the first configured model when the configured default
        is not served by any provider.
        """
        default = self.merged.agent.default_model
        if default and (self.find_model(default) or default in self.merged.mcp_servers):
            return default

        models = self.all_models()
        return models[0] if models else self.FALLBACK_MODEL

    def find_model(self, model: str) -> Optional[Tuple[str, ProviderConfig]]:
        """Return ``(provider_name, provider_config)`` serving *model*, if any."""
        for name, provider in self.merged.providers.items():
            if provider.enabled and model in provider.models:
                return name, provider
        return None

    def get_model_config(self, model: str) -> Tuple[str, ProviderConfig]:
        """
        Resolve the provider for a model.

        Raises:
            ConfigError: If no provider serves the model or it is incomplete.
        """
        found = self.find_model(model)
        if found is None:
            raise ConfigError(f"Configuration for model '{model}' not found")

        name, provider = found
        if not provider.base_url:
            raise ConfigError(f"Provider '{name}' has no base_url")
        if not self.get_api_key(name):
            raise ConfigError(
                f"Provider '{name}' has no api_key. "
                f"Set {name.upper()}_API_KEY or add it to config."
            )
        return name, provider

    def set_model(self, model_name: str, global_: bool = False) -> None:
        """
        Set the default model.

        Args:
            model_name: The model to set as default.
            global_: Whether to set globally or locally.
        """
        config = self._global_config if global_ else self._local_config
        config.setdefault("agent", {})["default_model"] = model_name
        self._merged = None

    def get_api_key(self, provider_name: str) -> Optional[str]:
        """
        Get API key for a provider.

        Checks config first, then the ``<PROVIDER>_API_KEY`` environment variable.
        """
        provider = self.merged.providers.get(provider_name)
        if provider and provider.api_key:
            return provider.api_key

        env_var = f"{provider_name.upper().replace('-', '_')}_API_KEY"
        return os.environ.get(env_var)

    # ── MCP servers ───────────────────────────────────────────────────────

    def get_mcp_servers(self) -> Dict[str, MCPServerConfig]:
        return self.merged.mcp_servers

    def get_active_mcp_servers(self) -> Dict[str, MCPServerConfig]:
        return {name: s for name, s in self.merged.mcp_servers.items() if s.is_active}

    def set_server_active(self, server_name: str, active: bool, global_: bool = True) -> None:
        """Toggle a server's ``is_active`` flag."""
        if server_name not in self.merged.mcp_servers:
            raise ConfigError(f"MCP server '{server_name}' is not configured")

        config = self._global_config if global_ else self._local_config
        servers = config.setdefault("mcp_servers", {})
        servers.setdefault(server_name, {})["is_active"] = active
        self._merged = None

    # ── Persistence ───────────────────────────────────────────────────────

    def save(self) -> None:
        """Save configuration to files."""
        self._save_yaml(self.config_dir / "config.yaml", self._global_config)

        local_path = self._find_local_config()
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
    def create_default_global(cls, config_dir: Optional[Path] = None) -> Path:
        """Create default global configuration file."""
        config_dir = Path(config_dir) if config_dir else cls.GLOBAL_CONFIG_DIR
        config_file = config_dir / "config.yaml"

        if config_file.exists():
            return config_file

        config_dir.mkdir(parents=True, exist_ok=True)
        (config_dir / "prompts").mkdir(exist_ok=True)

        default_config = {
            "providers": {
                "openai": {
                    "base_url": "https://api.openai.com/v1",
                    "api_key": None,  # Set via OPENAI_API_KEY env var
                    "models": ["gpt-4o", "gpt-4o-mini"],
                    "proxy_enabled": False,
                    "proxy_url": None,
                },
            },
            "agent": {
                "default_model": "gpt-4o",
                "prompt": None,
                "max_tool_rounds": 10,
                "timeout": 120,
            },
            "mcp_servers": {
                "video2text": {
                    "type": "stdio",
                    "description": "Example: transcribe video to text over stdio.",
                    "command": "uvx",
                    "args": ["mcp-video2text"],
                    "tools": ["video_to_text"],
                    "is_active": False,
                },
                "github": {
                    "type": "http",
                    "description": "Example: remote MCP server over HTTP.",
                    "url": "https://api.githubcopilot.com/mcp/",
                    "tools": ["search_repositories"],
                    "is_active": False,
                },
            },
        }

        with open(config_file, "w") as f:
            yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)

        return config_file
