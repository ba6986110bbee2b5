"""
Tests for in-family model routing
"""

import unittest

from model_router import (
    COMPLEXITY_COMPLEX,
    COMPLEXITY_MEDIUM,
    COMPLEXITY_SIMPLE,
    TASK_CLARIFICATION,
    TASK_INTENT,
    TASK_SQL,
    ModelRouter,
)
from provider_factory import ProviderConfig, ProviderHealthDirectory


class TestModelRouter(unittest.IsolatedAsyncioTestCase):
    async def test_intent_task_uses_fast_model(self):
        selection = await ModelRouter().select_model(
            "claude-3-5-sonnet-latest", complexity=COMPLEXITY_SIMPLE, task_type=TASK_INTENT
        )
        self.assertEqual(selection.model_id, "claude-3-5-haiku-latest")
        self.assertEqual(selection.provider, "anthropic")
        self.assertEqual(
            selection.rationale,
            "claude-3-5-haiku-latest: intent classification task, using fast model for efficiency",
        )

    async def test_complex_sql_uses_powerful_model(self):
        selection = await ModelRouter().select_model(
            "gemini-1.5-flash-latest", complexity=COMPLEXITY_COMPLEX, task_type=TASK_SQL
        )
        self.assertEqual(selection.model_id, "gemini-2.5-pro")
        self.assertIn("complex reasoning required", selection.rationale)

    async def test_never_crosses_provider_family(self):
        for model_id in ["llama3.1:8b", "llama-3.3-70b-versatile", "gemini-2.5-pro"]:
            for task in [TASK_INTENT, TASK_SQL, TASK_CLARIFICATION]:
                selection = await ModelRouter().select_model(model_id, task_type=task)
                self.assertEqual(
                    selection.provider,
                    {"llama3.1:8b": "openwebui", "llama-3.3-70b-versatile": "groq", "gemini-2.5-pro": "google"}[model_id],
                )

    async def test_high_semantic_confidence_downgrades_medium(self):
        selection = await ModelRouter().select_model(
            "llama-3.3-70b-versatile",
            complexity=COMPLEXITY_MEDIUM,
            task_type=TASK_SQL,
            semantic_confidence=0.9,
        )
        self.assertEqual(selection.model_id, "llama-3.1-8b-instant")
        self.assertIn("high semantic confidence", selection.rationale)

    async def test_unknown_model_passes_through(self):
        selection = await ModelRouter().select_model("my-custom-model", task_type=TASK_INTENT)
        self.assertEqual(selection.model_id, "my-custom-model")
        self.assertEqual(selection.provider, "unknown")

    async def test_provider_config_overrides_family_pair(self):
        directory = ProviderHealthDirectory([
            ProviderConfig(
                "openwebui",
                "OpenWebUI",
                config_data={"simple_query_model_id": "mistral:7b", "complex_query_model_id": "llama3.1:8b"},
            )
        ])
        selection = await ModelRouter(directory).select_model("llama3.2:3b", task_type=TASK_INTENT)
        self.assertEqual(selection.model_id, "mistral:7b")

    async def test_incomplete_config_keeps_user_model(self):
        directory = ProviderHealthDirectory([
            ProviderConfig("groq", "Groq", config_data={"simple_query_model_id": None})
        ])
        selection = await ModelRouter(directory).select_model("llama-3.3-70b-versatile", task_type=TASK_INTENT)
        self.assertEqual(selection.model_id, "llama-3.3-70b-versatile")
        self.assertIn("incomplete", selection.rationale)


if __name__ == "__main__":
    unittest.main()
