"""
mcpchat validation module.

This module provides configuration validation and schema enforcement.
"""

from mcpchat.validation.config import (
    AgentConfig,
    AppConfig,
    Config,
    ConfigError,
    MCPServerConfig,
    ProviderConfig,
)

__all__ = [
    "AgentConfig",
    "AppConfig",
    "Config",
    "ConfigError",
    "MCPServerConfig",
    "ProviderConfig",
]
