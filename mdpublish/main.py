import logging
import sys
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from .config import settings
from .middleware import RequestLoggingMiddleware
from .middleware.logging import ACCESS_LOGGER_NAME
from .routers import assets, documents, health, projects, publishes
from .services.errors import PublishFailed, PublishingError
from .services.storage import StorageError
from .workers.autosave import AutosaveScheduler

logging.basicConfig(level=logging.INFO, handlers=[logging.StreamHandler(sys.stdout)])
logging.getLogger(ACCESS_LOGGER_NAME).setLevel(logging.INFO)

logger = logging.getLogger(__name__)

if settings.sentry_dsn and str(settings.sentry_dsn).strip().lower().startswith(("http://", "https://")):
    sentry_sdk.init(
        dsn=str(settings.sentry_dsn).strip(),
        environment=settings.environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=settings.sentry_traces_sample_rate,
        profiles_sample_rate=settings.sentry_profiles_sample_rate,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.autosave.start()
    try:
        yield
    finally:
        app.state.autosave.shutdown(flush=True)


app = FastAPI(title="mdpublish", version="0.1.0", lifespan=lifespan)
app.state.autosave = AutosaveScheduler()

app.add_middleware(RequestLoggingMiddleware)

if settings.metrics_enabled:
    instrumentator = Instrumentator(should_group_status_codes=True, should_ignore_untemplated=True)
    instrumentator.instrument(app).expose(app, include_in_schema=False)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PublishingError)
async def publishing_error_handler(request: Request, exc: PublishingError) -> JSONResponse:
    message = PublishFailed.default_message if isinstance(exc, PublishFailed) else exc.message
    return JSONResponse(status_code=exc.status_code, content={"detail": message})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": "Object storage unavailable"})


app.include_router(health.router, tags=["health"])
app.include_router(projects.router)
app.include_router(documents.router)
app.include_router(assets.router)
app.include_router(publishes.router)
