"""
Main Application Entry Point.

This module initializes the FastAPI application, configures middleware (CORS,
Logfire), registers exception handlers and includes the API routers. The
lifespan owns the database bootstrap and the agent queue worker.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from webpilot_ai.core.logging_config import get_logger, setup_logging
from webpilot_ai.core.monitoring import initialize_logfire

from .api.v1 import health, runs
from .core.config import API_V1_STR, PROJECT_NAME, settings
from .core.database import init_db, tables_exist
from .exception_handlers import setup_exception_handlers
from .middleware import LogfireMiddleware
from .services.orchestrator import init_orchestrator

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events.

    Startup creates missing tables (the memory tables only when
    ``AGENT_PROVISION_MEMORY`` is on), checks whether the memory tables are
    provisioned and starts the queue worker. Shutdown stops the worker and
    closes the model gateway.
    """
    logger.info("Starting up WebPilot-AI Server...")
    memory_provisioned = True
    try:
        await init_db()
        memory_provisioned = await tables_exist()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        memory_provisioned = False

    if not memory_provisioned:
        logger.warning("Memory tables are not provisioned; runs continue without memory")

    orchestrator = init_orchestrator(memory_provisioned=memory_provisioned)
    await orchestrator.start()

    yield

    logger.info("Shutting down WebPilot-AI Server...")
    await orchestrator.shutdown()


app = FastAPI(
    title=PROJECT_NAME,
    description="""
    WebPilot-AI Server API

    Queue autonomous browser-automation runs, steer them with stop, resume and
    approve actions, and follow their audit trail in real time.
    """,
    version="0.1.0",
    openapi_url=f"{API_V1_STR}/openapi.json",
    docs_url=f"{API_V1_STR}/docs",
    redoc_url=f"{API_V1_STR}/redoc",
    lifespan=lifespan,
)

cors = settings.cors
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors.origins,
    allow_credentials=cors.allow_credentials,
    allow_methods=cors.allow_methods,
    allow_headers=cors.allow_headers,
)
app.add_middleware(LogfireMiddleware)

setup_exception_handlers(app)
initialize_logfire(app)

app.include_router(health.router, tags=["health"])
app.include_router(runs.router, prefix=f"{API_V1_STR}/runs", tags=["runs"])


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "webpilot_ai.server.main:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )
