"""
Tests for provider health checks and priority-ordered fallback
"""

import unittest
from datetime import datetime, timedelta

from config import FunnelSettings
from llm_providers import BaseProvider, ModelResponse, ProviderConfigurationError
from provider_factory import (
    NoUsableProviderError,
    ProviderConfig,
    ProviderFactory,
    ProviderHealth,
    ProviderHealthCheckError,
    ProviderHealthDirectory,
    UnsupportedModelError,
)


class StubProvider(BaseProvider):
    def __init__(self, provider_type, model_id, healthy=True):
        super().__init__(model_id)
        self.provider_type = provider_type
        self.healthy = healthy
        self.closed = False

    @classmethod
    def from_settings(cls, model_id, settings):
        return cls("stub", model_id)

    async def _execute_model(self, system_prompt, user_message, temperature=None, max_tokens=None):
        return ModelResponse(response_text="ok")

    async def test_connection(self):
        if self.healthy is None:
            raise ConnectionError(f"{self.provider_type} unreachable")
        return self.healthy

    async def close(self):
        self.closed = True


class StubBuilder:
    """Records every construction; per-type health, check errors or constructor failure"""

    def __init__(self, unhealthy=(), failing=(), unreachable=()):
        self.unhealthy = set(unhealthy)
        self.failing = set(failing)
        self.unreachable = set(unreachable)
        self.built = []

    def __call__(self, provider_type, model_id):
        if provider_type in self.failing:
            raise ProviderConfigurationError(f"{provider_type} credentials missing")
        if provider_type in self.unreachable:
            healthy = None
        else:
            healthy = provider_type not in self.unhealthy
        provider = StubProvider(provider_type, model_id, healthy=healthy)
        self.built.append(provider)
        return provider


def _health(provider_type, provider_name, healthy=True):
    return ProviderHealth(provider_type, provider_name, healthy, datetime.now())


def _directory(health=(("anthropic", "Anthropic", False), ("google", "Google Gemini", True), ("groq", "Groq", True))):
    directory = ProviderHealthDirectory([
        ProviderConfig("anthropic", "Anthropic"),
        ProviderConfig("google", "Google Gemini"),
        ProviderConfig("groq", "Groq"),
    ])
    for provider_type, name, healthy in health:
        directory.record_health(_health(provider_type, name, healthy))
    return directory


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _checked_directory(builder, clock, max_age_seconds=30):
    return ProviderHealthDirectory(
        [
            ProviderConfig("anthropic", "Anthropic"),
            ProviderConfig("google", "Google Gemini"),
            ProviderConfig("groq", "Groq"),
        ],
        checker=builder,
        max_age_seconds=max_age_seconds,
        clock=clock,
    )


# =============================================================================
# get_provider
# =============================================================================

class TestGetProvider(unittest.IsolatedAsyncioTestCase):
    async def test_healthy_primary_returned(self):
        builder = StubBuilder()
        factory = ProviderFactory(FunnelSettings(), _directory(), builder)
        provider = await factory.get_provider("claude-3-5-sonnet-latest")
        self.assertEqual(provider.provider_type, "anthropic")
        self.assertEqual(provider.model_id, "claude-3-5-sonnet-latest")

    async def test_unsupported_model(self):
        factory = ProviderFactory(FunnelSettings(), _directory(), StubBuilder())
        with self.assertRaises(UnsupportedModelError) as ctx:
            await factory.get_provider("gpt-99")
        self.assertEqual(str(ctx.exception), "Unsupported AI model ID: gpt-99")

    async def test_unhealthy_primary_falls_back_by_priority(self):
        builder = StubBuilder(unhealthy={"anthropic"})
        factory = ProviderFactory(FunnelSettings(), _directory(), builder)

        provider = await factory.get_provider("claude-3-5-sonnet-latest")

        self.assertEqual(provider.provider_type, "google")
        self.assertEqual(provider.model_id, "gemini-2.5-pro")
        self.assertTrue(builder.built[0].closed)

    async def test_fallback_disabled_by_caller(self):
        factory = ProviderFactory(FunnelSettings(), _directory(), StubBuilder(unhealthy={"anthropic"}))
        with self.assertRaises(ProviderHealthCheckError) as ctx:
            await factory.get_provider("claude-3-5-sonnet-latest", allow_fallback=False)
        self.assertEqual(str(ctx.exception), "Provider anthropic health check failed")

    async def test_fallback_disabled_by_settings(self):
        settings = FunnelSettings(auto_failover=False)
        factory = ProviderFactory(settings, _directory(), StubBuilder(unhealthy={"anthropic"}))
        with self.assertRaises(ProviderHealthCheckError):
            await factory.get_provider("claude-3-5-sonnet-latest")

    async def test_constructor_failure_without_fallback_propagates(self):
        factory = ProviderFactory(FunnelSettings(), _directory(), StubBuilder(failing={"anthropic"}))
        with self.assertRaises(ProviderConfigurationError):
            await factory.get_provider("claude-3-5-sonnet-latest", allow_fallback=False)

    async def test_constructor_failure_falls_back(self):
        factory = ProviderFactory(FunnelSettings(), _directory(), StubBuilder(failing={"anthropic"}))
        provider = await factory.get_provider("claude-3-5-sonnet-latest")
        self.assertEqual(provider.provider_type, "google")

    async def test_primary_closed_when_health_check_raises(self):
        builder = StubBuilder(unreachable={"anthropic"})
        factory = ProviderFactory(FunnelSettings(), _directory(), builder)

        provider = await factory.get_provider("claude-3-5-sonnet-latest")

        self.assertEqual(provider.provider_type, "google")
        self.assertEqual(builder.built[0].provider_type, "anthropic")
        self.assertTrue(builder.built[0].closed)

    async def test_check_error_without_fallback_propagates(self):
        builder = StubBuilder(unreachable={"anthropic"})
        factory = ProviderFactory(FunnelSettings(), _directory(), builder)
        with self.assertRaises(ConnectionError):
            await factory.get_provider("claude-3-5-sonnet-latest", allow_fallback=False)
        self.assertTrue(builder.built[0].closed)

    async def test_recovered_provider_used_for_fallback(self):
        clock = FakeClock()
        builder = StubBuilder(unhealthy={"google", "groq"})
        directory = _checked_directory(builder, clock)
        factory = ProviderFactory(FunnelSettings(), directory, builder)
        await factory.refresh_health()

        builder.unhealthy = {"anthropic"}
        clock.advance(31)
        provider = await factory.get_provider("claude-3-5-sonnet-latest")

        self.assertEqual(provider.provider_type, "google")

    async def test_no_usable_provider(self):
        directory = _directory(health=(("anthropic", "Anthropic", False), ("google", "Google Gemini", False)))
        factory = ProviderFactory(FunnelSettings(), directory, StubBuilder(unhealthy={"anthropic"}))
        with self.assertRaises(NoUsableProviderError) as ctx:
            await factory.get_provider("claude-3-5-sonnet-latest")
        message = str(ctx.exception)
        self.assertTrue(message.startswith("NoUsableProvider: Failed to initialize provider for model claude-3-5-sonnet-latest."))
        self.assertIn("Provider anthropic health check failed", message)
        self.assertTrue(message.endswith("No suitable fallback provider available."))


# =============================================================================
# find_fallback_provider
# =============================================================================

class TestFindFallbackProvider(unittest.IsolatedAsyncioTestCase):
    async def test_openwebui_request_prefers_anthropic(self):
        directory = _directory(health=(("anthropic", "Anthropic", True), ("google", "Google Gemini", True)))
        factory = ProviderFactory(FunnelSettings(), directory, StubBuilder())
        fallback = await factory.find_fallback_provider("openwebui")
        self.assertEqual(fallback.provider_type, "anthropic")
        self.assertEqual(fallback.model_id, "claude-3-5-sonnet-latest")

    async def test_excludes_requested_type(self):
        directory = _directory(health=(("anthropic", "Anthropic", True),))
        factory = ProviderFactory(FunnelSettings(), directory, StubBuilder())
        self.assertIsNone(await factory.find_fallback_provider("anthropic"))

    async def test_configured_priority_wins(self):
        directory = _directory()
        directory.upsert_config(ProviderConfig("groq", "Groq", priority=1))
        factory = ProviderFactory(FunnelSettings(), directory, StubBuilder())
        fallback = await factory.find_fallback_provider("anthropic")
        self.assertEqual(fallback.provider_type, "groq")
        self.assertEqual(fallback.provider, "Groq")
        self.assertEqual(fallback.model_id, "llama-3.3-70b-versatile")

    async def test_constructor_failure_skipped(self):
        factory = ProviderFactory(FunnelSettings(), _directory(), StubBuilder(failing={"google"}))
        fallback = await factory.find_fallback_provider("anthropic")
        self.assertEqual(fallback.provider_type, "groq")

    async def test_disabled_config_not_a_candidate(self):
        directory = _directory()
        directory.upsert_config(ProviderConfig("google", "Google Gemini", is_enabled=False))
        factory = ProviderFactory(FunnelSettings(), directory, StubBuilder())
        fallback = await factory.find_fallback_provider("anthropic")
        self.assertEqual(fallback.provider_type, "groq")

    async def test_config_default_model_used(self):
        directory = _directory()
        directory.upsert_config(ProviderConfig("google", "Google Gemini", config_data={"default_model_id": "gemini-1.5-flash-latest"}))
        factory = ProviderFactory(FunnelSettings(), directory, StubBuilder())
        fallback = await factory.find_fallback_provider("anthropic")
        self.assertEqual(fallback.model_id, "gemini-1.5-flash-latest")

    async def test_factory_does_not_write_health(self):
        directory = _directory()
        before = [h.to_dict() for h in await directory.get_all_provider_health()]
        factory = ProviderFactory(FunnelSettings(), directory, StubBuilder(failing={"google", "groq"}))
        self.assertIsNone(await factory.find_fallback_provider("anthropic"))
        after = [h.to_dict() for h in await directory.get_all_provider_health()]
        self.assertEqual(before, after)


# =============================================================================
# Health directory
# =============================================================================

class TestHealthDirectory(unittest.IsolatedAsyncioTestCase):
    async def test_refresh_records_results(self):
        directory = ProviderHealthDirectory([
            ProviderConfig("anthropic", "Anthropic"),
            ProviderConfig("groq", "Groq"),
            ProviderConfig("openwebui", "OpenWebUI", is_enabled=False),
        ])
        builder = StubBuilder(failing={"groq"})
        results = await directory.refresh(builder)

        by_type = {h.provider_type: h for h in results}
        self.assertEqual(set(by_type), {"anthropic", "groq"})
        self.assertTrue(by_type["anthropic"].is_healthy)
        self.assertFalse(by_type["groq"].is_healthy)
        self.assertIn("credentials missing", by_type["groq"].error_message)
        self.assertTrue(builder.built[0].closed)
        self.assertEqual(len(await directory.get_all_provider_health()), 2)

    async def test_missing_records_checked_on_read(self):
        builder = StubBuilder(unhealthy={"groq"})
        directory = _checked_directory(builder, FakeClock())

        records = {h.provider_type: h for h in await directory.get_all_provider_health()}

        self.assertTrue(records["anthropic"].is_healthy)
        self.assertTrue(records["google"].is_healthy)
        self.assertFalse(records["groq"].is_healthy)
        self.assertTrue(all(p.closed for p in builder.built))

    async def test_fallback_without_startup_refresh(self):
        builder = StubBuilder(unhealthy={"anthropic"})
        factory = ProviderFactory(FunnelSettings(), _checked_directory(builder, FakeClock()), builder)
        fallback = await factory.find_fallback_provider("anthropic")
        self.assertEqual(fallback.provider_type, "google")

    async def test_fresh_records_not_rechecked(self):
        clock = FakeClock()
        builder = StubBuilder(unhealthy={"google"})
        directory = _checked_directory(builder, clock)
        await directory.get_all_provider_health()
        built = len(builder.built)

        builder.unhealthy = set()
        clock.advance(10)
        records = {h.provider_type: h for h in await directory.get_all_provider_health()}

        self.assertEqual(len(builder.built), built)
        self.assertFalse(records["google"].is_healthy)

    async def test_stale_records_rechecked(self):
        clock = FakeClock()
        builder = StubBuilder(unhealthy={"google"})
        directory = _checked_directory(builder, clock)
        await directory.get_all_provider_health()

        builder.unhealthy = set()
        clock.advance(30)
        records = {h.provider_type: h for h in await directory.get_all_provider_health()}

        self.assertTrue(records["google"].is_healthy)
        self.assertEqual(records["google"].last_checked, clock.now)

    async def test_skipped_type_not_rechecked(self):
        builder = StubBuilder()
        directory = _checked_directory(builder, FakeClock())
        records = await directory.get_all_provider_health(skip_recheck_type="anthropic")
        self.assertNotIn("anthropic", {h.provider_type for h in records})
        self.assertNotIn("anthropic", {p.provider_type for p in builder.built})

    async def test_max_age_zero_rechecks_every_read(self):
        builder = StubBuilder()
        directory = _checked_directory(builder, FakeClock(), max_age_seconds=0)
        await directory.get_all_provider_health()
        await directory.get_all_provider_health()
        self.assertEqual(len(builder.built), 6)

    async def test_from_settings(self):
        settings = FunnelSettings(anthropic_api_key="sk-test", groq_api_key="gsk_test", provider_priorities={"groq": 5})
        directory = ProviderHealthDirectory.from_settings(settings)
        types = sorted(c.provider_type for c in await directory.get_enabled_configurations())
        self.assertEqual(types, ["anthropic", "groq", "openwebui"])
        self.assertEqual(directory.get_config("groq").effective_priority, 5)
        self.assertEqual(directory.get_config("anthropic").effective_priority, 10)
        self.assertIsNone(directory.get_config("google"))
        self.assertIsNotNone(directory.checker)
        self.assertEqual(directory.max_age_seconds, 30)

    def test_health_to_dict(self):
        data = _health("groq", "Groq").to_dict()
        self.assertEqual(data["provider_type"], "groq")
        self.assertTrue(data["is_healthy"])
        self.assertIsInstance(data["last_checked"], str)


if __name__ == "__main__":
    unittest.main()
