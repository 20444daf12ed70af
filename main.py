from typing import Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth.routes import router as auth_router
from auth.api_key_routes import router as api_key_router
from intake_service.intake_route import router as intake_router
from files.file_routes import router as files_router
from metrics.submission_routes import router as submissions_router
from entities.entity_routes import router as companies_router
from webhooks.webhook_routes import router as webhooks_router
from storage.routes import router as storage_router
from db.postgres import init_postgres, close_postgres
import logging
from settings.config import settings
from settings.errors import PipelineError, pipeline_error_handler
from settings.logging_config import configure_logging

logger = logging.getLogger(__name__)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # malformed input is a 400 in this API, not FastAPI's default 422
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def get_app() -> FastAPI:
    configure_logging()
    logger.info("Starting document ingestion API")
    app = FastAPI(title="Document Ingestion API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # DB lifecycle
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Initializing database")
        await init_postgres()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Closing database")
        await close_postgres()

    # Routers
    app.include_router(auth_router)
    app.include_router(api_key_router)
    app.include_router(intake_router)
    app.include_router(submissions_router)
    app.include_router(files_router)
    app.include_router(companies_router)
    app.include_router(webhooks_router)
    app.include_router(storage_router)
    logger.info("Routers initialized successfully")

    # Health
    @app.get("/health")
    async def health_check() -> Dict[str, str]:
        return {"status": "ok"}

    logger.info("API started")
    return app


# ASGI app instance
app = get_app()
