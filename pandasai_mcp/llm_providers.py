"""
LLM backend configuration and provider implementations.

This module defines the `BackendConfig` model accepted by `configure_llm`, an
abstract `LLMProvider` with concrete implementations for OpenAI, Anthropic and
DeepSeek, and `LLMProviderFactory`, which validates a configuration and
returns the provider instance stored in the session as the backend handle.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import exceptions
from .config import settings

# Load environment variables
load_dotenv()

logger = structlog.get_logger(__name__)


@dataclass
class Message:
    """
    Represents a single message in a chat conversation.
    """
    role: str = field(metadata={"description": "The role of the message sender (e.g., 'user', 'assistant', 'system')."})
    content: str = field(metadata={"description": "The content of the message."})


class BackendConfig(BaseModel):
    """Configuration accepted by `configure_llm` and inline `backend_config`."""
    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    provider: Optional[str] = Field(default=None, description="Provider name: 'openai', 'anthropic' or 'deepseek'. Defaults to DEFAULT_LLM_PROVIDER.")
    model: Optional[str] = Field(default=None, description="Model name. Defaults to the provider's environment setting.")
    api_key: Optional[str] = Field(default=None, description="API key. Defaults to the provider's environment variable.")
    base_url: Optional[str] = Field(default=None, description="Override for the provider's API base URL.")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature.")
    max_tokens: Optional[int] = Field(default=None, gt=0, description="Maximum number of tokens to generate.")
    timeout: float = Field(default=60.0, gt=0, description="HTTP timeout in seconds for provider calls.")


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    provider_name: str = "base"
    api_key_env: str = ""
    model_env: str = ""
    default_model: str = ""
    default_base_url: str = ""

    def __init__(self, config: BackendConfig) -> None:
        """
        Initializes the provider from a configuration, falling back to the
        environment for the API key and model.

        Raises:
            exceptions.LLMProviderError: If no API key is available.
        """
        self.api_key = config.api_key or os.getenv(self.api_key_env)
        self.model = config.model or os.getenv(self.model_env, self.default_model)
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.temperature = config.temperature
        self.max_tokens = config.max_tokens
        self.timeout = config.timeout

        if not self.api_key:
            raise exceptions.LLMProviderError(self.provider_name, f"No api_key given and {self.api_key_env} not found in environment variables")

    def describe(self) -> Dict[str, Any]:
        """Non-secret description of the provider, safe to log or return."""
        return {"provider": self.provider_name, "model": self.model, "base_url": self.base_url}

    @abstractmethod
    async def chat(self, messages: List[Message]) -> str:
        """
        Sends chat messages to the LLM and returns the full response text.

        Args:
            messages: A list of Message objects representing the conversation.

        Returns:
            str: The model's reply. Empty when the API returned no content.
        """
        pass # pragma: no cover

    async def _post(self, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient() as client:
            response = await client.post(url, headers=headers, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()


class OpenAIProvider(LLMProvider):
    """LLM Provider for the OpenAI chat completions API."""

    provider_name = "openai"
    api_key_env = "OPENAI_API_KEY"
    model_env = "OPENAI_MODEL"
    default_model = "gpt-4o-mini"
    default_base_url = "https://api.openai.com/v1"

    def format_messages(self, messages: List[Message]) -> List[Dict[str, str]]:
        return [{"role": msg.role, "content": msg.content} for msg in messages]

    async def chat(self, messages: List[Message]) -> str:
        """
        Raises:
            httpx.HTTPStatusError: If the API request fails.
        """
        headers: Dict[str, str] = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        data: Dict[str, Any] = {
            "model": self.model,
            "messages": self.format_messages(messages),
            "temperature": self.temperature,
        }
        if self.max_tokens:
            data["max_tokens"] = self.max_tokens

        result = await self._post(f"{self.base_url}/chat/completions", headers, data)
        if "choices" in result and result["choices"]:
            return result["choices"][0]["message"].get("content") or ""
        return ""


class DeepSeekProvider(OpenAIProvider):
    """DeepSeek provider (OpenAI-compatible API)."""

    provider_name = "deepseek"
    api_key_env = "DEEPSEEK_API_KEY"
    model_env = "DEEPSEEK_MODEL"
    default_model = "deepseek-chat"
    default_base_url = os.getenv("DEEPSEEK_API_BASE", "https://api.deepseek.com/v1")


class AnthropicProvider(LLMProvider):
    """LLM Provider for the Anthropic messages API."""

    provider_name = "anthropic"
    api_key_env = "ANTHROPIC_API_KEY"
    model_env = "CLAUDE_MODEL"
    default_model = "claude-3-5-sonnet-latest"
    default_base_url = "https://api.anthropic.com/v1"

    def format_messages(self, messages: List[Message]) -> List[Dict[str, str]]:
        """
        Formats user/assistant messages. System messages are passed in the
        dedicated 'system' parameter instead.
        """
        return [{"role": msg.role, "content": msg.content} for msg in messages if msg.role != "system"]

    async def chat(self, messages: List[Message]) -> str:
        """
        Raises:
            httpx.HTTPStatusError: If the API request fails.
        """
        headers: Dict[str, str] = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json"
        }
        system_parts = [msg.content for msg in messages if msg.role == "system"]

        data: Dict[str, Any] = {
            "model": self.model,
            "messages": self.format_messages(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens or 4096, # Anthropic requires max_tokens
        }
        if system_parts:
            data["system"] = "\n\n".join(system_parts)

        result = await self._post(f"{self.base_url}/messages", headers, data)
        blocks = result.get("content") or []
        return "".join(block.get("text", "") for block in blocks if block.get("type") == "text")


class LLMProviderFactory:
    """Factory to create and configure LLM provider instances."""

    providers: Dict[str, type] = {
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "deepseek": DeepSeekProvider,
    }

    @classmethod
    def create(cls, provider_name: str, config: Optional[BackendConfig] = None) -> LLMProvider:
        """
        Creates an LLM provider instance based on the provider name.

        Raises:
            exceptions.LLMProviderError: If the provider_name is unknown or the
                                         provider cannot be initialized.
        """
        provider_class = cls.providers.get(provider_name.lower())
        if not provider_class:
            raise exceptions.LLMProviderError(provider_name, "Provider not recognized or supported.")
        return provider_class(config or BackendConfig(provider=provider_name))

    @classmethod
    async def configure(cls, raw_config: Any) -> LLMProvider:
        """
        Validates a backend configuration and returns the provider handle.

        Args:
            raw_config: Mapping with `provider`, `model`, `api_key`, `base_url`,
                        `temperature`, `max_tokens`, `timeout`. Unknown keys are ignored.

        Returns:
            LLMProvider: The configured provider.

        Raises:
            exceptions.LLMProviderError: If the configuration is invalid or the
                                         provider cannot be initialized.
        """
        if not isinstance(raw_config, dict):
            raise exceptions.LLMProviderError("unknown", "Backend configuration must be a JSON object.")
        try:
            config = BackendConfig.model_validate(raw_config)
        except ValidationError as e:
            raise exceptions.LLMProviderError(str(raw_config.get("provider", "unknown")), f"Invalid configuration: {e.errors(include_url=False, include_input=False)}") from e

        provider_name = config.provider or settings.DEFAULT_LLM_PROVIDER
        provider = cls.create(provider_name, config)
        logger.info("llm_provider_configured", **provider.describe())
        return provider

    @classmethod
    def get_available_providers(cls) -> List[str]:
        """
        Gets a list of LLM providers that have their API keys configured in environment variables.
        """
        return [name for name, provider_class in cls.providers.items() if os.getenv(provider_class.api_key_env)]
