import os
import structlog

from palette_core.logging_config import setup_structlog

JSON_LOGS_ENABLED = os.getenv("JSON_LOGS", "false").lower() in ("true", "1", "t")
setup_structlog(json_logs=JSON_LOGS_ENABLED)

logger = structlog.get_logger(__name__)

from contextlib import asynccontextmanager
import structlog.contextvars
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from prometheus_fastapi_instrumentator import Instrumentator
from pymongo.errors import ConnectionFailure
from pydantic import create_model

from palette.config import AppConfig
from palette.plugins import get_plugin_manager
from palette.plugins.core.config.repository import ConfigRepository
from palette.plugins.core.config.service import ConfigService
from palette.plugins.core.credits.repository import CreditRepository
from palette.plugins.core.credits.service import CreditService
from palette.plugins.post_production.gen4.service import Gen4Handler
from palette.plugins.post_production.image_edit.service import ImageEditHandler
from palette.plugins.post_production.queue.config import QueueSettings
from palette.plugins.post_production.queue.generation_queue import GenerationQueue
from palette.plugins.post_production.queue.handlers import GenerationHandler
from palette.plugins.post_production.queue.models import GenerationType
from palette.plugins.post_production.queue.persistence import (
    InMemoryQueueStore,
    QueueStore,
    RedisQueueStore,
)
from palette.plugins.post_production.queue.service import QueueService
from palette.plugins.post_production.video_animate.service import VideoAnimateHandler
from palette.utils.database_setup import ensure_indexes
from palette.utils.exceptions import InsufficientCreditsError, ServiceError
from palette.utils.middleware import api_key_middleware, structured_logging_middleware
from palette.utils.redis_client import close_redis_client, init_redis_client
from palette.utils.replicate_client import ReplicateClient
from palette_core.tracing import setup_tracing

EXCLUDED_PLUGINS = []

HANDLER_CLASSES = (ImageEditHandler, Gen4Handler, VideoAnimateHandler)


def build_handlers(
    replicate: ReplicateClient, config: ConfigService
) -> dict[GenerationType, GenerationHandler]:
    return {cls.generation_type: cls(replicate, config) for cls in HANDLER_CLASSES}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage the application's lifespan.
    Connects to all required services on startup, restores the generation
    queue and gracefully stops everything on shutdown.
    """
    logger.info("Initializing plugin manager and discovering plugins...")
    plugin_manager = get_plugin_manager(excluded_plugins=EXCLUDED_PLUGINS)
    app.state.plugin_manager = plugin_manager

    plugin_config_models = plugin_manager.get_config_models()

    all_bases = (AppConfig, *plugin_config_models)
    CombinedSettings = create_model("CombinedSettings", __base__=all_bases)
    try:
        app.state.settings = CombinedSettings()
        plugin_manager.bind_settings(app.state.settings)
        logger.info(
            "Successfully loaded combined application and plugin configuration."
        )
    except Exception as e:
        logger.fatal(
            "Failed to load combined configuration from environment.", error=str(e)
        )
        raise
    settings = app.state.settings

    setup_tracing(service_name=settings.service_name, environment=settings.environment)
    HTTPXClientInstrumentor().instrument()
    logger.info("Application starting up...", service=settings.service_name)

    instrumentator.expose(app)
    logger.info("Prometheus metrics endpoint exposed at /metrics.")

    try:
        app.state.mongo_client = AsyncIOMotorClient(str(settings.mongodb_url))
        await app.state.mongo_client.admin.command("ping")
        logger.info("Successfully connected to MongoDB.")
        db = app.state.mongo_client[settings.mongodb_database]
        await ensure_indexes(db)
    except ConnectionFailure as e:
        logger.fatal("Failed to connect to MongoDB on startup.", error=str(e))
        raise

    app.state.redis = await init_redis_client(settings)
    logger.info("Successfully connected to Redis.")

    app.state.config_service = ConfigService(
        ConfigRepository(db["configurations"]), app.state.redis
    )

    queue_settings = plugin_manager.get_plugin_config(QueueSettings) or QueueSettings()
    app.state.replicate_client = ReplicateClient(
        api_token=settings.replicate_api_token,
        poll_policy=queue_settings.poll_policy(),
        base_url=str(settings.replicate_base_url),
        prefer_wait_seconds=queue_settings.replicate_prefer_wait_seconds,
    )
    logger.info(
        "Replicate client initialized.",
        poll_policy=queue_settings.poll_policy().model_dump(),
    )

    app.state.credit_service = CreditService(CreditRepository(db))

    handlers = build_handlers(app.state.replicate_client, app.state.config_service)
    store: QueueStore
    if queue_settings.queue_persistence_enabled:
        store = RedisQueueStore(app.state.redis, key=queue_settings.queue_storage_key)
    else:
        store = InMemoryQueueStore()
    app.state.generation_queue = GenerationQueue(
        handlers,
        store=store,
        on_completed=app.state.credit_service.deduct_for_request,
    )
    await app.state.generation_queue.restore()
    app.state.queue_service = QueueService(
        app.state.generation_queue, handlers, app.state.credit_service
    )
    logger.info("Generation queue ready.", handlers=[t.value for t in handlers])

    plugin_manager.register_routers(app)

    yield

    logger.info("Application shutting down...")
    await app.state.generation_queue.shutdown()
    logger.info("Generation queue stopped.")
    await app.state.replicate_client.close()
    app.state.mongo_client.close()
    logger.info("MongoDB connection closed.")
    await close_redis_client()
    logger.info("Redis connection closed.")


app = FastAPI(
    version="1.0.0",
    title="Director's Palette API",
    description="Queued image and video generation on Replicate, with credits and live queue events.",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app, metric_namespace="palette", metric_subsystem="backend")


@app.exception_handler(ServiceError)
async def service_exception_handler(request: Request, exc: ServiceError):
    logger.warning(
        "Service error occurred, returning HTTP response",
        detail=exc.detail,
        status_code=exc.status_code,
    )
    content = {"detail": exc.detail}
    if isinstance(exc, InsufficientCreditsError):
        content.update(exc.details)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "An unhandled exception occurred",
        error=str(exc),
    )
    context_vars = structlog.contextvars.get_contextvars()
    correlation_id = context_vars.get("correlation_id", "not-available")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal server error occurred.",
            "error_id": correlation_id,
        },
    )


@app.middleware("http")
async def api_key_middleware_wrapper(request: Request, call_next):
    return await api_key_middleware(request, call_next, request.app.state.settings)


app.middleware("http")(structured_logging_middleware)


@app.get("/health", tags=["Health Check"], include_in_schema=False)
def health_check():
    return {"status": "ok"}
