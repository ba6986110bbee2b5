"""
Provider Fallback Orchestrator
==============================

Resolves a model id to a working model-calling provider.

FLOW (get_provider):
1. Look the model id up in SUPPORTED_MODELS        -> UnsupportedModelError
2. Instantiate the provider and run test_connection()
3. Healthy                                           -> return it
4. Unhealthy, fallback disabled                      -> ProviderHealthCheckError
5. Unhealthy, fallback allowed                       -> find_fallback_provider()
6. No healthy candidate                              -> NoUsableProviderError

FALLBACK ORDER (find_fallback_provider):
    enabled + healthy providers of OTHER types, ordered by configured
    priority (default anthropic 10, google 20, openwebui 30, groq 40),
    then provider type, then provider name. A candidate whose constructor
    fails is skipped. Health comes from the directory, which re-checks the
    other enabled configs when their records are stale; the factory never
    writes health records itself.

The ProviderHealthDirectory is the in-process store of provider configs and
their last health check results.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from config import FunnelSettings
from llm_providers import (
    BaseProvider,
    ProviderError,
    create_provider,
    default_model_for,
    default_priority_for,
    get_model_info,
)

logger = logging.getLogger(__name__)

PROVIDER_DISPLAY_NAMES = {
    "anthropic": "Anthropic",
    "google": "Google Gemini",
    "openwebui": "OpenWebUI",
    "groq": "Groq",
}

ProviderBuilder = Callable[[str, str], BaseProvider]


class UnsupportedModelError(ValueError):
    """Raised for model ids that are not in the registry."""

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Unsupported AI model ID: {model_id}")


class ProviderHealthCheckError(ProviderError):
    """Raised when the requested provider is unhealthy and fallback is off."""

    def __init__(self, provider_type: str):
        self.provider_type = provider_type
        super().__init__(f"Provider {provider_type} health check failed")


class NoUsableProviderError(ProviderError):
    """Raised when neither the requested provider nor any fallback works."""

    def __init__(self, model_id: str, cause: str):
        self.model_id = model_id
        super().__init__(
            f"NoUsableProvider: Failed to initialize provider for model {model_id}. "
            f"{cause}. No suitable fallback provider available."
        )


@dataclass
class ProviderConfig:
    """An enabled/disabled provider configuration"""
    provider_type: str
    provider_name: str
    is_enabled: bool = True
    priority: Optional[int] = None
    config_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def effective_priority(self) -> int:
        return self.priority if self.priority is not None else default_priority_for(self.provider_type)


@dataclass
class ProviderHealth:
    """Result of the last health check of one provider configuration"""
    provider_type: str
    provider_name: str
    is_healthy: bool
    last_checked: datetime
    response_time_ms: float = 0.0
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "provider_type": self.provider_type,
            "provider_name": self.provider_name,
            "is_healthy": self.is_healthy,
            "last_checked": self.last_checked.isoformat(),
            "response_time_ms": round(self.response_time_ms, 2),
            "error_message": self.error_message,
        }


@dataclass
class FallbackProvider:
    provider: str
    provider_type: str
    model_id: str
    instance: BaseProvider


class ProviderHealthDirectory:
    """
    In-memory provider configurations and health records.

    With a checker attached, get_all_provider_health() re-checks any enabled
    configuration whose record is missing or older than max_age_seconds.
    """

    def __init__(
        self,
        configs: Optional[List[ProviderConfig]] = None,
        checker: Optional[ProviderBuilder] = None,
        max_age_seconds: float = 30.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._configs: Dict[tuple, ProviderConfig] = {}
        self._health: Dict[tuple, ProviderHealth] = {}
        self.checker = checker
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        for config in configs or []:
            self.upsert_config(config)

    @classmethod
    def from_settings(cls, settings: FunnelSettings) -> "ProviderHealthDirectory":
        """One enabled config per provider type that has credentials"""
        configs = [
            ProviderConfig(
                provider_type=provider_type,
                provider_name=PROVIDER_DISPLAY_NAMES.get(provider_type, provider_type),
                priority=settings.provider_priorities.get(provider_type),
            )
            for provider_type in settings.configured_provider_types()
        ]
        return cls(
            configs,
            checker=lambda provider_type, model_id: create_provider(provider_type, model_id, settings),
            max_age_seconds=settings.provider_health_max_age_seconds,
        )

    def upsert_config(self, config: ProviderConfig):
        self._configs[(config.provider_type, config.provider_name)] = config

    def get_config(self, provider_type: str) -> Optional[ProviderConfig]:
        """Highest-priority enabled config of a provider type"""
        matches = [c for c in self._configs.values() if c.provider_type == provider_type and c.is_enabled]
        if not matches:
            return None
        return sorted(matches, key=lambda c: (c.effective_priority, c.provider_name))[0]

    def record_health(self, health: ProviderHealth):
        self._health[(health.provider_type, health.provider_name)] = health

    def is_stale(self, config: ProviderConfig) -> bool:
        record = self._health.get((config.provider_type, config.provider_name))
        if record is None:
            return True
        return (self._clock() - record.last_checked).total_seconds() >= self.max_age_seconds

    async def get_enabled_configurations(self) -> List[ProviderConfig]:
        return [c for c in self._configs.values() if c.is_enabled]

    async def get_all_provider_health(self, skip_recheck_type: Optional[str] = None) -> List[ProviderHealth]:
        """
        Current health records, after re-checking stale enabled configs.

        Args:
            skip_recheck_type: Provider type whose record is returned as-is
        """
        if self.checker is not None:
            stale = [
                c for c in await self.get_enabled_configurations()
                if c.provider_type != skip_recheck_type and self.is_stale(c)
            ]
            if stale:
                await self.refresh(self.checker, stale)
        return list(self._health.values())

    async def refresh(
        self,
        builder: ProviderBuilder,
        configs: Optional[List[ProviderConfig]] = None,
    ) -> List[ProviderHealth]:
        """
        Health-check configurations and record the results.

        Args:
            builder: (provider_type, model_id) -> provider instance
            configs: Configurations to check (default: every enabled one)
        """
        if configs is None:
            configs = await self.get_enabled_configurations()

        results = []
        for config in configs:
            model_id = config.config_data.get("default_model_id") or default_model_for(config.provider_type)
            start = time.perf_counter()
            provider = None
            error_message = None
            healthy = False
            try:
                if model_id is None:
                    raise ProviderError(f"No registered model for provider type {config.provider_type}")
                provider = builder(config.provider_type, model_id)
                healthy = await provider.test_connection()
                if not healthy:
                    error_message = "Connection test failed"
            except Exception as e:
                error_message = str(e)
            finally:
                if provider is not None:
                    await provider.close()

            health = ProviderHealth(
                provider_type=config.provider_type,
                provider_name=config.provider_name,
                is_healthy=healthy,
                last_checked=self._clock(),
                response_time_ms=(time.perf_counter() - start) * 1000,
                error_message=error_message,
            )
            self.record_health(health)
            results.append(health)

            status = "healthy" if healthy else f"unhealthy ({error_message})"
            logger.info(f"[PROVIDER] Health {config.provider_name}: {status}")
        return results


class ProviderFactory:
    """Creates health-checked providers with priority-ordered fallback"""

    def __init__(
        self,
        settings: FunnelSettings,
        directory: ProviderHealthDirectory,
        builder: Optional[ProviderBuilder] = None,
    ):
        self.settings = settings
        self.directory = directory
        self._builder = builder or (lambda provider_type, model_id: create_provider(provider_type, model_id, settings))

    async def refresh_health(self) -> List[ProviderHealth]:
        return await self.directory.refresh(self._builder)

    async def get_provider(self, model_id: str, allow_fallback: bool = True) -> BaseProvider:
        """
        Get a healthy provider for a model id.

        Raises:
            UnsupportedModelError: Model id not registered
            ProviderHealthCheckError: Provider unhealthy and fallback not allowed
            NoUsableProviderError: Provider unhealthy and no fallback available
        """
        info = get_model_info(model_id)
        if info is None:
            raise UnsupportedModelError(model_id)

        provider = None
        try:
            provider = self._builder(info.provider_type, model_id)
            if await provider.test_connection():
                return provider
            raise ProviderHealthCheckError(info.provider_type)
        except Exception as e:
            primary_error = e
            if provider is not None:
                await provider.close()
            logger.warning(
                f"[PROVIDER] Failed to initialize {info.provider_type} provider for model {model_id}: {e}"
            )

        if not allow_fallback or not self.settings.auto_failover:
            raise primary_error

        logger.info(f"[PROVIDER] Attempting fallback for model {model_id} (original provider: {info.provider_type})")
        fallback = await self.find_fallback_provider(info.provider_type)
        if fallback is not None:
            logger.info(
                f"[PROVIDER] Using fallback provider {fallback.provider} "
                f"({fallback.model_id}) for model {model_id}"
            )
            return fallback.instance

        raise NoUsableProviderError(model_id, str(primary_error)) from primary_error

    async def find_fallback_provider(self, exclude_provider_type: str) -> Optional[FallbackProvider]:
        """
        Pick the best healthy provider of a different type.

        Returns:
            FallbackProvider, or None when no candidate can be instantiated
        """
        excluded = (exclude_provider_type or "").lower()
        configs = {
            (c.provider_type, c.provider_name): c
            for c in await self.directory.get_enabled_configurations()
        }
        health_records = await self.directory.get_all_provider_health(skip_recheck_type=excluded)

        candidates = []
        for health in health_records:
            key = (health.provider_type, health.provider_name)
            if not health.is_healthy or health.provider_type == excluded or key not in configs:
                continue
            candidates.append((configs[key], health))

        if not candidates:
            logger.warning("[PROVIDER] No healthy AI providers found for fallback")
            return None

        candidates.sort(key=lambda pair: (pair[0].effective_priority, pair[0].provider_type, pair[0].provider_name))

        for config, health in candidates:
            model_id = config.config_data.get("default_model_id") or default_model_for(config.provider_type)
            if model_id is None:
                continue
            try:
                instance = self._builder(config.provider_type, model_id)
            except Exception as e:
                logger.warning(f"[PROVIDER] Failed to create fallback instance for {config.provider_type}: {e}")
                continue
            return FallbackProvider(
                provider=config.provider_name,
                provider_type=config.provider_type,
                model_id=model_id,
                instance=instance,
            )

        logger.warning("[PROVIDER] No suitable fallback providers found")
        return None
