"""
Model Router
Routes a task to the simple or complex model WITHIN the user's provider family
(never crosses provider boundaries: a Gemini user only gets Gemini models)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from llm_providers import (
    PROVIDER_ANTHROPIC,
    PROVIDER_GOOGLE,
    PROVIDER_GROQ,
    PROVIDER_OPENWEBUI,
    get_model_info,
)

logger = logging.getLogger(__name__)

COMPLEXITY_SIMPLE = "simple"
COMPLEXITY_MEDIUM = "medium"
COMPLEXITY_COMPLEX = "complex"

TASK_INTENT = "intent"
TASK_SQL = "sql"
TASK_CLARIFICATION = "clarification"

# (simple model, complex model) per provider family, used when the provider
# configuration does not name its own pair
FAMILY_MODELS = {
    PROVIDER_ANTHROPIC: ("claude-3-5-haiku-latest", "claude-3-5-sonnet-latest"),
    PROVIDER_GOOGLE: ("gemini-1.5-flash-latest", "gemini-2.5-pro"),
    PROVIDER_OPENWEBUI: ("llama3.2:3b", "llama3.1:8b"),
    PROVIDER_GROQ: ("llama-3.1-8b-instant", "llama-3.3-70b-versatile"),
}

HIGH_SEMANTIC_CONFIDENCE = 0.85


@dataclass
class ModelSelection:
    model_id: str
    provider: str
    rationale: str


class ModelRouter:
    """Pick a fast or a powerful model for a task, inside one provider family"""

    def __init__(self, directory=None):
        """
        Args:
            directory: Optional ProviderHealthDirectory; a provider config's
                       config_data may set simple_query_model_id /
                       complex_query_model_id to override FAMILY_MODELS
        """
        self.directory = directory

    async def select_model(
        self,
        user_selected_model_id: str,
        complexity: str = COMPLEXITY_COMPLEX,
        task_type: str = TASK_SQL,
        semantic_confidence: Optional[float] = None,
    ) -> ModelSelection:
        info = get_model_info(user_selected_model_id)
        if info is None:
            return ModelSelection(
                model_id=user_selected_model_id,
                provider="unknown",
                rationale="Using user-selected model (provider type unknown)",
            )

        simple_model, complex_model = self._family_models(info.provider_type)
        if not simple_model or not complex_model:
            return ModelSelection(
                model_id=user_selected_model_id,
                provider=info.provider_type,
                rationale="Using user-selected model (provider configuration incomplete)",
            )

        use_simple = self._should_use_simple_model(complexity, task_type, semantic_confidence)
        selected = simple_model if use_simple else complex_model
        rationale = self._build_rationale(complexity, task_type, semantic_confidence, use_simple, selected)

        logger.debug(f"[MODEL_ROUTER] {rationale}")
        return ModelSelection(model_id=selected, provider=info.provider_type, rationale=rationale)

    def _family_models(self, provider_type: str):
        simple_model, complex_model = FAMILY_MODELS.get(provider_type, (None, None))
        if self.directory is not None:
            config = self.directory.get_config(provider_type)
            if config is not None:
                simple_model = config.config_data.get("simple_query_model_id", simple_model)
                complex_model = config.config_data.get("complex_query_model_id", complex_model)
        return simple_model, complex_model

    @staticmethod
    def _should_use_simple_model(complexity, task_type, semantic_confidence) -> bool:
        if task_type in (TASK_INTENT, TASK_CLARIFICATION):
            return True
        if task_type == TASK_SQL and complexity == COMPLEXITY_SIMPLE:
            return True
        if (
            semantic_confidence is not None
            and semantic_confidence > HIGH_SEMANTIC_CONFIDENCE
            and complexity in (COMPLEXITY_SIMPLE, COMPLEXITY_MEDIUM)
        ):
            return True
        return False

    @staticmethod
    def _build_rationale(complexity, task_type, semantic_confidence, used_simple, selected) -> str:
        reasons = []
        if task_type == TASK_INTENT:
            reasons.append("intent classification task")
        elif task_type == TASK_CLARIFICATION:
            reasons.append("clarification generation")
        elif complexity == COMPLEXITY_SIMPLE:
            reasons.append("simple query")
        elif complexity == COMPLEXITY_COMPLEX:
            reasons.append("complex reasoning required")

        if semantic_confidence is not None and semantic_confidence > HIGH_SEMANTIC_CONFIDENCE:
            reasons.append("high semantic confidence")

        reasons.append("using fast model for efficiency" if used_simple else "using powerful model for quality")
        return f"{selected}: {', '.join(reasons)}"
