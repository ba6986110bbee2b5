"""
LLM Provider Backends
=====================

One capability set, several backends:

    _execute_model(system_prompt, user_message) -> ModelResponse(text, usage)
    complete(system_prompt, user_message, temperature?, max_tokens?) -> text
    test_connection() -> bool
    get_available_models() -> [model ids]

BACKENDS:
- anthropic : Anthropic Messages API (anthropic SDK, async client)
- google    : Gemini via google-genai (API key or Vertex AI project)
- openwebui : Local OpenWebUI, OpenAI-compatible REST over aiohttp
- groq      : Groq chat completions (groq SDK, async client)

SUPPORTED_MODELS is the static model id -> provider type lookup table used by
the provider factory. Constructors never do network I/O; missing credentials
raise ProviderConfigurationError immediately.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type

import aiohttp
from anthropic import AsyncAnthropic
from google import genai
from google.genai import types as genai_types
from groq import AsyncGroq

from config import FunnelSettings

logger = logging.getLogger(__name__)


PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_GOOGLE = "google"
PROVIDER_OPENWEBUI = "openwebui"
PROVIDER_GROQ = "groq"

# Lower runs first when choosing a fallback
DEFAULT_PROVIDER_PRIORITY = {
    PROVIDER_ANTHROPIC: 10,
    PROVIDER_GOOGLE: 20,
    PROVIDER_OPENWEBUI: 30,
    PROVIDER_GROQ: 40,
}
UNKNOWN_PROVIDER_PRIORITY = 100

DEFAULT_MAX_TOKENS = 2048


class ProviderError(RuntimeError):
    """Base class for provider failures."""


class ProviderConfigurationError(ProviderError):
    """Raised when a provider cannot be constructed from the current settings."""


class ProviderResponseError(ProviderError):
    """Raised when a provider returns an unusable response."""


@dataclass
class ModelInfo:
    """Registry entry for a supported model"""
    model_id: str
    name: str
    provider_type: str
    description: str = ""


SUPPORTED_MODELS: Dict[str, ModelInfo] = {
    m.model_id: m for m in [
        ModelInfo("claude-3-5-sonnet-latest", "Claude 3.5 Sonnet", PROVIDER_ANTHROPIC,
                  "Strong reasoning and SQL generation"),
        ModelInfo("claude-3-opus-latest", "Claude 3 Opus", PROVIDER_ANTHROPIC,
                  "Most capable Anthropic model for complex tasks"),
        ModelInfo("claude-3-5-haiku-latest", "Claude 3.5 Haiku", PROVIDER_ANTHROPIC,
                  "Fast Anthropic model for classification"),
        ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro", PROVIDER_GOOGLE,
                  "Google's most capable model"),
        ModelInfo("gemini-1.5-flash-latest", "Gemini 1.5 Flash", PROVIDER_GOOGLE,
                  "Fast, cost-effective Google model"),
        ModelInfo("llama3.2:3b", "Llama 3.2 3B (Local)", PROVIDER_OPENWEBUI,
                  "Llama 3.2 3B via Open WebUI"),
        ModelInfo("llama3.1:8b", "Llama 3.1 8B (Local)", PROVIDER_OPENWEBUI,
                  "Llama 3.1 8B via Open WebUI"),
        ModelInfo("mistral:7b", "Mistral 7B (Local)", PROVIDER_OPENWEBUI,
                  "Mistral 7B via Open WebUI"),
        ModelInfo("llama-3.3-70b-versatile", "Llama 3.3 70B (Groq)", PROVIDER_GROQ,
                  "Hosted Llama 3.3 70B on Groq"),
        ModelInfo("llama-3.1-8b-instant", "Llama 3.1 8B Instant (Groq)", PROVIDER_GROQ,
                  "Low-latency Llama 3.1 8B on Groq"),
    ]
}

DEFAULT_MODEL_ID = "claude-3-5-sonnet-latest"


def get_model_info(model_id: str) -> Optional[ModelInfo]:
    return SUPPORTED_MODELS.get(model_id)


def default_model_for(provider_type: str) -> Optional[str]:
    """First registered model of a provider type (used for fallback instances)."""
    for info in SUPPORTED_MODELS.values():
        if info.provider_type == provider_type:
            return info.model_id
    return None


def default_priority_for(provider_type: str) -> int:
    return DEFAULT_PROVIDER_PRIORITY.get(provider_type, UNKNOWN_PROVIDER_PRIORITY)


@dataclass
class ModelUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ModelResponse:
    response_text: str
    usage: ModelUsage = field(default_factory=ModelUsage)


# =============================================================================
# BASE PROVIDER
# =============================================================================

class BaseProvider(ABC):
    """Common behaviour for all model-calling backends"""

    provider_type: str = ""

    def __init__(self, model_id: str):
        self.model_id = model_id

    @classmethod
    @abstractmethod
    def from_settings(cls, model_id: str, settings: FunnelSettings) -> "BaseProvider":
        """Build a provider from settings; ProviderConfigurationError when credentials are missing."""

    @abstractmethod
    async def _execute_model(
        self,
        system_prompt: str,
        user_message: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ModelResponse:
        """Call the underlying model once."""

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Run one completion and return the response text.

        Failures propagate to the caller; there are no retries here.
        """
        start = time.perf_counter()
        response = await self._execute_model(
            system_prompt,
            user_message,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"[PROVIDER] {self.provider_type}/{self.model_id} completed in {elapsed_ms:.0f}ms "
            f"(input: {response.usage.input_tokens} tokens, output: {response.usage.output_tokens} tokens)"
        )
        return response.response_text

    async def test_connection(self) -> bool:
        """Health check; backends override with a cheap API call."""
        return True

    async def get_available_models(self) -> List[str]:
        return [self.model_id]

    async def close(self):
        """Release network resources held by the provider."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model_id={self.model_id!r})"


# =============================================================================
# BACKENDS
# =============================================================================

class AnthropicProvider(BaseProvider):
    """Claude models through the Anthropic Messages API"""

    provider_type = PROVIDER_ANTHROPIC

    def __init__(self, model_id: str, api_key: Optional[str] = None, client: Optional[AsyncAnthropic] = None):
        super().__init__(model_id)
        if client is None:
            if not api_key:
                raise ProviderConfigurationError(
                    "Anthropic API key is not configured. Set ANTHROPIC_API_KEY in your environment."
                )
            client = AsyncAnthropic(api_key=api_key)
        self.client = client

    @classmethod
    def from_settings(cls, model_id: str, settings: FunnelSettings) -> "AnthropicProvider":
        return cls(model_id, api_key=settings.anthropic_api_key)

    async def _execute_model(self, system_prompt, user_message, temperature=None, max_tokens=None) -> ModelResponse:
        kwargs = {
            "model": self.model_id,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_message}],
        }
        if temperature is not None:
            kwargs["temperature"] = temperature

        response = await self.client.messages.create(**kwargs)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return ModelResponse(
            response_text=text,
            usage=ModelUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
        )

    async def test_connection(self) -> bool:
        try:
            await self.client.models.list(limit=1)
            return True
        except Exception as e:
            logger.warning(f"[PROVIDER] Anthropic health check failed: {e}")
            return False

    async def get_available_models(self) -> List[str]:
        page = await self.client.models.list()
        return [model.id for model in page.data]

    async def close(self):
        await self.client.close()


class GeminiProvider(BaseProvider):
    """Gemini models through google-genai (Gemini API key or Vertex AI)"""

    provider_type = PROVIDER_GOOGLE

    def __init__(
        self,
        model_id: str,
        api_key: Optional[str] = None,
        project_id: Optional[str] = None,
        location: str = "us-central1",
        client: Optional[genai.Client] = None,
    ):
        super().__init__(model_id)
        if client is None:
            if project_id:
                client = genai.Client(vertexai=True, project=project_id, location=location)
            elif api_key:
                client = genai.Client(api_key=api_key)
            else:
                raise ProviderConfigurationError(
                    "Google Gemini is not configured. Set GOOGLE_CLOUD_PROJECT (Vertex AI) or GOOGLE_API_KEY."
                )
        self.client = client

    @classmethod
    def from_settings(cls, model_id: str, settings: FunnelSettings) -> "GeminiProvider":
        return cls(
            model_id,
            api_key=settings.google_api_key,
            project_id=settings.google_project_id,
            location=settings.google_location,
        )

    async def _execute_model(self, system_prompt, user_message, temperature=None, max_tokens=None) -> ModelResponse:
        config = genai_types.GenerateContentConfig(
            system_instruction=system_prompt,
            temperature=temperature,
            max_output_tokens=max_tokens or DEFAULT_MAX_TOKENS,
        )
        response = await self.client.aio.models.generate_content(
            model=self.model_id,
            contents=user_message,
            config=config,
        )

        text = response.text
        if not text:
            raise ProviderResponseError("Empty response text from Google GenAI API")

        usage = response.usage_metadata
        return ModelResponse(
            response_text=text,
            usage=ModelUsage(
                input_tokens=(usage.prompt_token_count or 0) if usage else 0,
                output_tokens=(usage.candidates_token_count or 0) if usage else 0,
            ),
        )

    async def test_connection(self) -> bool:
        try:
            await self.client.aio.models.list(config={"page_size": 1})
            return True
        except Exception as e:
            logger.warning(f"[PROVIDER] Gemini health check failed: {e}")
            return False

    async def get_available_models(self) -> List[str]:
        names = []
        async for model in await self.client.aio.models.list():
            name = model.name or ""
            names.append(name.split("/", 1)[1] if name.startswith("models/") else name)
        return names


class OpenWebUIProvider(BaseProvider):
    """Local models behind an OpenWebUI instance (OpenAI-compatible API)"""

    provider_type = PROVIDER_OPENWEBUI

    HEALTH_CHECK_TIMEOUT_SECONDS = 5

    def __init__(
        self,
        model_id: str,
        base_url: str = "http://localhost:8080",
        api_key: Optional[str] = None,
        timeout_seconds: int = 120,
    ):
        super().__init__(model_id)
        if not base_url:
            raise ProviderConfigurationError("OpenWebUI base URL is not configured. Set OPENWEBUI_BASE_URL.")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, model_id: str, settings: FunnelSettings) -> "OpenWebUIProvider":
        return cls(
            model_id,
            base_url=settings.openwebui_base_url,
            api_key=settings.openwebui_api_key,
            timeout_seconds=settings.openwebui_timeout_seconds,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _ensure_session(self):
        """Ensure aiohttp session exists"""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def close(self):
        """Close aiohttp session"""
        if self.session and not self.session.closed:
            await self.session.close()

    async def _execute_model(self, system_prompt, user_message, temperature=None, max_tokens=None) -> ModelResponse:
        await self._ensure_session()

        payload = {
            "model": self.model_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "stream": False,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
        }
        if temperature is not None:
            payload["temperature"] = temperature

        url = f"{self.base_url}/api/v1/chat/completions"
        async with self.session.post(url, json=payload, headers=self._headers()) as response:
            if response.status != 200:
                body = await response.text()
                raise ProviderResponseError(f"OpenWebUI API error ({response.status}): {body[:200]}")
            data = await response.json()

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise ProviderResponseError("Invalid response structure from OpenWebUI API")

        usage = data.get("usage") or {}
        return ModelResponse(
            response_text=text,
            usage=ModelUsage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            ),
        )

    async def test_connection(self) -> bool:
        await self._ensure_session()
        url = f"{self.base_url}/api/v1/models"
        timeout = aiohttp.ClientTimeout(total=self.HEALTH_CHECK_TIMEOUT_SECONDS)
        try:
            async with self.session.get(url, headers=self._headers(), timeout=timeout) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[PROVIDER] OpenWebUI health check failed: {e}")
            return False

    async def get_available_models(self) -> List[str]:
        await self._ensure_session()
        url = f"{self.base_url}/api/v1/models"
        async with self.session.get(url, headers=self._headers()) as response:
            if response.status != 200:
                raise ProviderResponseError(f"Failed to fetch models: HTTP {response.status}")
            data = await response.json()
        return [model["id"] for model in data.get("data", []) if "id" in model]


class GroqProvider(BaseProvider):
    """Hosted open models on Groq"""

    provider_type = PROVIDER_GROQ

    def __init__(self, model_id: str, api_key: Optional[str] = None, client: Optional[AsyncGroq] = None):
        super().__init__(model_id)
        if client is None:
            if not api_key:
                raise ProviderConfigurationError(
                    "GROQ_API_KEY not found! Set it in your environment. "
                    "You can get one at: https://console.groq.com/keys"
                )
            client = AsyncGroq(api_key=api_key)
        self.client = client

    @classmethod
    def from_settings(cls, model_id: str, settings: FunnelSettings) -> "GroqProvider":
        return cls(model_id, api_key=settings.groq_api_key)

    async def _execute_model(self, system_prompt, user_message, temperature=None, max_tokens=None) -> ModelResponse:
        kwargs = {
            "model": self.model_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature

        response = await self.client.chat.completions.create(**kwargs)

        text = response.choices[0].message.content or ""
        usage = response.usage
        return ModelResponse(
            response_text=text,
            usage=ModelUsage(
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
            ),
        )

    async def test_connection(self) -> bool:
        try:
            await self.client.models.list()
            return True
        except Exception as e:
            logger.warning(f"[PROVIDER] Groq health check failed: {e}")
            return False

    async def get_available_models(self) -> List[str]:
        response = await self.client.models.list()
        return [model.id for model in response.data]

    async def close(self):
        await self.client.close()


PROVIDER_CLASSES: Dict[str, Type[BaseProvider]] = {
    PROVIDER_ANTHROPIC: AnthropicProvider,
    PROVIDER_GOOGLE: GeminiProvider,
    PROVIDER_OPENWEBUI: OpenWebUIProvider,
    PROVIDER_GROQ: GroqProvider,
}


def create_provider(provider_type: str, model_id: str, settings: FunnelSettings) -> BaseProvider:
    """
    Instantiate a backend for a provider type.

    Raises:
        ProviderConfigurationError: Unknown type or missing credentials
    """
    provider_class = PROVIDER_CLASSES.get(provider_type)
    if provider_class is None:
        raise ProviderConfigurationError(
            f"No provider implementation available for model: {model_id} with provider type {provider_type}"
        )
    return provider_class.from_settings(model_id, settings)
