"""FastAPI application entry point for the short-link service.

Application Lifecycle Diagram
=============================
::
    ┌──────────────┐
    │  uvicorn     │
    │  startup     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan():  │
    │ ServiceMan-  │
    │ ager.start() │  engine + tables, Redis, Kafka producer
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Serve HTTP   │
    │ requests     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan():  │
    │ cleanup()    │
    └──────────────┘

How to Use
===========
**Run the API**::
    uvicorn shortlinks.main:app --host 0.0.0.0 --port 8080

**Run the ingestion worker**::
    python -m shortlinks.worker

**Shorten and follow**::
    curl -X POST http://localhost:8080/api/links \\
         -H "Content-Type: application/json" \\
         -d '{"url": "https://example.com", "maxClicks": 3}'
    curl -i http://localhost:8080/<code>

Key Behaviours
===============
- A manager already present on ``app.state.services`` is reused, so tests
  can inject their own before the first request.
- Every ``ShortLinkError`` becomes an ``ErrorResponse`` body with its status.
- Request validation errors are reported as 400 ``ValidationError``.
- Prometheus metrics are exposed at ``/metrics``.
"""

__all__ = ["app", "create_app"]

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from shortlinks.config import Settings, get_settings
from shortlinks.dependencies import ServiceManager
from shortlinks.exceptions import AccessDeniedError, LinkValidationError, ShortLinkError
from shortlinks.routes import router
from shortlinks.schemas import ErrorResponse

logger = logging.getLogger("shortlinks.api")


def _error_body(exc: ShortLinkError) -> dict:
    return ErrorResponse(
        status_code=exc.status_code,
        error=exc.error,
        message=exc.message,
        short_code=exc.short_code,
        reason=exc.reason if isinstance(exc, AccessDeniedError) else None,
    ).model_dump(mode="json")


async def short_link_error_handler(request: Request, exc: ShortLinkError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.error} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}" for error in exc.errors()
    )
    return JSONResponse(status_code=400, content=_error_body(LinkValidationError(details or "Invalid request")))


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = await ServiceManager.start(settings)
        yield
        if owned:
            await app.state.services.cleanup()
            app.state.services = None

    application = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description="Short links with access control and asynchronous click analytics",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(ShortLinkError, short_link_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)

    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=False,
        should_respect_env_var=False,
    ).instrument(application).expose(application)

    application.include_router(router)
    return application


app = create_app()
