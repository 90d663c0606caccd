"""
mcpchat Provider Base - Streaming client for OpenAI-compatible chat APIs.

Every configured provider speaks the same ``/chat/completions`` protocol,
so one httpx-based client covers them all; providers differ only in base
URL, key and proxy.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import httpx

from mcpchat.validation.config import Config, ConfigError

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when the provider cannot be reached."""


class ProviderHTTPError(ProviderError):
    """Raised when the provider answers with an HTTP error status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}: {body}")


class ChatProvider:
    """
    Streams chat completions from one OpenAI-compatible endpoint.

    Example:
        >>> provider = ChatProvider("gpt-4o", "https://api.openai.com/v1", key)
        >>> with provider.stream(messages) as response:
        ...     for chunk in response.iter_bytes():
        ...         parser.feed(chunk)
    """

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str,
        provider_name: str = "openai",
        proxy: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.provider_name = provider_name
        self.proxy = proxy
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            kwargs: Dict[str, Any] = {"timeout": self.timeout}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            elif self.proxy:
                kwargs["proxy"] = self.proxy
            self._client = httpx.Client(**kwargs)
        return self._client

    def build_request_body(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        return body

    @contextmanager
    def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Iterator[httpx.Response]:
        """
        Open a streaming completion request.

        Yields the live response; closing it aborts the transfer.

        Raises:
            ProviderHTTPError: On a status of 400 or above.
            ProviderError: On connection failure.
        """
        body = self.build_request_body(messages, tools)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        logger.debug("POST %s model=%s messages=%d", self.endpoint, self.model, len(messages))

        try:
            with self.client.stream("POST", self.endpoint, headers=headers, json=body) as response:
                if response.status_code >= 400:
                    response.read()
                    raise ProviderHTTPError(response.status_code, response.text)
                yield response
        except httpx.TimeoutException as exc:
            raise ProviderError(f"Request to {self.provider_name} timed out: {exc}") from exc
        except httpx.ConnectError as exc:
            raise ProviderError(f"Could not connect to {self.provider_name}: {exc}") from exc

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class ProviderFactory:
    """Factory for creating provider instances."""

    @classmethod
    def create(
        cls,
        model: str,
        config: Config,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> ChatProvider:
        """
        Create a streaming client for the given model.

        Args:
            model: Model name as listed under a provider's ``models``.
            config: mcpchat configuration.
            transport: Optional httpx transport, used by tests.

        Raises:
            ConfigError: If no enabled provider serves the model.
        """
        provider_name, provider = config.get_model_config(model)
        api_key = config.get_api_key(provider_name)
        if not api_key:
            raise ConfigError(f"No API key for provider '{provider_name}'")

        proxy = None
        if provider.proxy_enabled and provider.proxy_url:
            proxy = provider.proxy_url
            logger.info("Using proxy %s for %s", proxy, provider_name)

        return ChatProvider(
            model=model,
            base_url=provider.base_url,
            api_key=api_key,
            provider_name=provider_name,
            proxy=proxy,
            timeout=config.merged.agent.timeout,
            transport=transport,
        )
