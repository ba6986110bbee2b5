"""
Clinical Query Funnel API
=========================

Thin FastAPI surface over the query funnel core:

- SQL safety validation (plain and composed SQL)
- Sub-question dependency validation
- Hybrid intent classification (pattern fast path + AI fallback, cached)
- Conversational SQL composition across turns
- Full funnel run (decompose -> validate -> SQL per step)

Shared state (intent cache + sweeper, provider health directory, provider
factory, classifier) is built once in the lifespan handler and kept on
app.state; nothing below reaches for module globals.

Error mapping:
    UnsupportedModelError                     -> 400
    SqlSafetyError / reply format / DAG error -> 422
    ProviderError                             -> 503
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from audit_log import create_audit_sink, drain_background_tasks
from config import FunnelSettings, configure_logging, get_settings, validate_settings
from intent_cache import IntentCacheSweeper, IntentClassificationCache
from intent_classifier import ClassificationOptions, HybridIntentClassifier
from llm_providers import ProviderError, SUPPORTED_MODELS
from model_router import ModelRouter
from provider_factory import ProviderFactory, ProviderHealthDirectory, UnsupportedModelError
from query_funnel import QueryFunnel
from response_parsing import ModelReplyFormatError
from sql_composer import SqlComposer
from sql_safety import SqlSafetyError, SqlSafetyValidator
from subquestion_validator import SubQuestionDependencyError, validate_sub_question_dependencies

logger = logging.getLogger(__name__)

VERSION = "1.0"


# Pydantic Models
class SqlValidationRequest(BaseModel):
    sql: str
    composed: bool = False


class SubQuestionValidationRequest(BaseModel):
    sub_questions: List[Dict[str, Any]]


class IntentClassificationRequest(BaseModel):
    question: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    model_id: Optional[str] = None
    enable_cache: bool = True
    timeout_ms: Optional[int] = Field(default=None, gt=0)


class CompositionRequest(BaseModel):
    current_question: str = Field(min_length=1)
    previous_question: str = Field(min_length=1)
    previous_sql: str = Field(min_length=1)
    model_id: Optional[str] = None


class FunnelRunRequest(BaseModel):
    question: str = Field(min_length=1)
    model_id: Optional[str] = None
    form_definition: Optional[Dict[str, Any]] = None


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, UnsupportedModelError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (SqlSafetyError, ModelReplyFormatError, SubQuestionDependencyError)):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, ProviderError):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def create_app(settings: Optional[FunnelSettings] = None, refresh_health_on_startup: bool = True) -> FastAPI:
    """
    Build the API.

    Args:
        settings: Explicit settings (defaults to environment settings)
        refresh_health_on_startup: Health-check configured providers at startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize shared services on startup, cleanup on shutdown"""
        current = settings or get_settings()
        configure_logging(current.log_level)
        logger.info("Initializing Query Funnel API...")

        errors = validate_settings(current)
        if errors:
            for error in errors:
                logger.error(f"[CONFIG] {error}")
            raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

        cache = IntentClassificationCache(
            pattern_ttl_seconds=current.intent_pattern_cache_ttl_seconds,
            ai_ttl_seconds=current.intent_ai_cache_ttl_seconds,
        )
        sweeper = IntentCacheSweeper(cache, interval_seconds=current.intent_cache_sweep_seconds)
        directory = ProviderHealthDirectory.from_settings(current)
        factory = ProviderFactory(current, directory)
        router = ModelRouter(directory)
        validator = SqlSafetyValidator(row_limit=current.sql_row_limit)

        app.state.settings = current
        app.state.intent_cache = cache
        app.state.sweeper = sweeper
        app.state.provider_directory = directory
        app.state.provider_factory = factory
        app.state.sql_validator = validator
        app.state.composer = SqlComposer(validator)
        app.state.funnel = QueryFunnel(validator)
        app.state.classifier = HybridIntentClassifier(
            cache=cache,
            provider_factory=factory,
            model_router=router,
            audit_sink=create_audit_sink(current.audit_database_url),
            default_model_id=current.default_model_id,
            confidence_threshold=current.intent_confidence_threshold,
            default_timeout_ms=current.intent_ai_timeout_ms,
        )

        sweeper.start()
        if refresh_health_on_startup:
            await factory.refresh_health()

        logger.info("=" * 60)
        logger.info(f"Query Funnel API v{VERSION} Ready!")
        logger.info(f"Providers configured: {current.configured_provider_types() or 'none'}")
        logger.info(f"Default model: {current.default_model_id} (auto failover: {current.auto_failover})")
        logger.info("=" * 60)

        yield  # Server is running

        logger.info("Shutting down Query Funnel API...")
        await sweeper.stop()
        await drain_background_tasks()

    app = FastAPI(
        title="Clinical Query Funnel API",
        description="NL-to-SQL funnel orchestration: safety validation, intent classification, composition",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        state = request.app.state
        provider_health = await state.provider_directory.get_all_provider_health()
        return {
            "status": "healthy",
            "version": VERSION,
            "default_model": state.settings.default_model_id,
            "intent_cache": state.intent_cache.get_stats(),
            "cache_sweeper_running": state.sweeper.running,
            "providers": [h.to_dict() for h in provider_health],
        }

    @app.get("/api/models")
    async def get_models():
        return {
            "models": [
                {"id": m.model_id, "name": m.name, "provider": m.provider_type, "description": m.description}
                for m in SUPPORTED_MODELS.values()
            ]
        }

    @app.post("/api/sql/validate")
    async def validate_sql(body: SqlValidationRequest, request: Request):
        validator: SqlSafetyValidator = request.app.state.sql_validator
        report = validator.validate(body.sql)
        response = {
            "is_valid": report.is_valid,
            "modified_sql": report.modified_sql,
            "warnings": report.warnings,
        }
        if body.composed:
            check = validator.validate_composed(body.sql)
            response["is_valid"] = check.valid
            response["errors"] = check.errors
            response["cte_count"] = check.cte_count
        return response

    @app.post("/api/funnel/sub-questions/validate")
    async def validate_sub_questions(body: SubQuestionValidationRequest):
        try:
            steps = validate_sub_question_dependencies(body.sub_questions)
        except SubQuestionDependencyError as e:
            raise _http_error(e)
        return {
            "valid": True,
            "steps": [{"step": s.step, "question": s.question, "depends_on": s.dependencies} for s in steps],
        }

    @app.post("/api/intent/classify")
    async def classify_intent(body: IntentClassificationRequest, request: Request):
        state = request.app.state
        options = ClassificationOptions(
            model_id=body.model_id,
            enable_cache=body.enable_cache,
            timeout_ms=body.timeout_ms or state.settings.intent_ai_timeout_ms,
        )
        result = await state.classifier.classify(body.question, body.customer_id, options)
        return result.to_dict()

    @app.post("/api/conversation/compose")
    async def compose_conversation(body: CompositionRequest, request: Request):
        state = request.app.state
        try:
            provider = await state.provider_factory.get_provider(body.model_id or state.settings.default_model_id)
        except Exception as e:
            logger.error(f"[COMPOSER] Provider unavailable: {e}")
            raise _http_error(e)

        try:
            decision = await state.composer.should_compose_query(
                body.current_question, body.previous_question, body.previous_sql, provider
            )
            composed = None
            if decision.should_compose:
                composed = await state.composer.compose_query(
                    body.previous_sql, body.previous_question, body.current_question, provider
                )
        except Exception as e:
            raise _http_error(e)
        finally:
            await provider.close()

        return {
            "decision": decision.to_dict(),
            "composed": composed.to_dict() if composed else None,
        }

    @app.post("/api/funnel/run")
    async def run_funnel(body: FunnelRunRequest, request: Request):
        state = request.app.state
        try:
            provider = await state.provider_factory.get_provider(body.model_id or state.settings.default_model_id)
        except Exception as e:
            logger.error(f"[FUNNEL] Provider unavailable: {e}")
            raise _http_error(e)

        try:
            result = await state.funnel.run(body.question, provider, body.form_definition)
        except Exception as e:
            logger.error(f"[FUNNEL] Run failed: {e}")
            raise _http_error(e)
        finally:
            await provider.close()

        return {
            "original_question": result.plan.original_question,
            "matched_template": result.plan.matched_template,
            "steps": [
                {
                    "step": q.step,
                    "question": q.question,
                    "sql": q.sql,
                    "explanation": q.explanation,
                    "validation_notes": q.validation_notes,
                    "matched_template": q.matched_template,
                }
                for q in result.queries
            ],
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
