"""
mcpchat providers module.

This module provides the streaming client for OpenAI-compatible chat APIs.
"""

from mcpchat.providers.base import ChatProvider, ProviderError, ProviderFactory, ProviderHTTPError

__all__ = ["ChatProvider", "ProviderError", "ProviderFactory", "ProviderHTTPError"]
