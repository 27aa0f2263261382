"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes the routers and wires
the receipt pipeline on startup. When run with uvicorn it initialises
the database and loads configuration from ``receiptflow.core.config``::

    uvicorn receiptflow.api.main:app --app-dir backend
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from receiptflow.api.error_handlers import (
    domain_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from receiptflow.api.routes.health import router as health_router
from receiptflow.api.routes.receipts import router as receipts_router
from receiptflow.core.background import BackgroundDispatcher
from receiptflow.core.config import settings
from receiptflow.core.database import AsyncSessionLocal, init_db
from receiptflow.core.errors import ReceiptFlowError
from receiptflow.core.observability import configure_logging, init_sentry
from receiptflow.services.events import ReceiptEventPublisher
from receiptflow.services.extraction_service import ExtractionEngine, build_vision_client
from receiptflow.services.receipt_pipeline import ReceiptPipeline
from receiptflow.services.storage_service import build_object_store

logger = logging.getLogger(__name__)


def build_pipeline() -> ReceiptPipeline:
    """Pipeline wired from ``settings``."""
    return ReceiptPipeline(
        AsyncSessionLocal,
        build_object_store(settings),
        ExtractionEngine(build_vision_client(settings)),
        dispatcher=BackgroundDispatcher(),
        events=ReceiptEventPublisher(),
    )


def create_app(pipeline: Optional[ReceiptPipeline] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        configure_logging()
        logger.info("Starting up...")
        if init_sentry("api"):
            logger.info("Sentry SDK initialized (api)")
        await init_db()
        if app.state.pipeline is None:
            app.state.pipeline = build_pipeline()
        yield
        logger.info("Shutting down...")
        await app.state.pipeline.dispatcher.drain()
        if app.state.pipeline.events is not None:
            await app.state.pipeline.events.close()

    app = FastAPI(title="receiptflow API", version="1.0.0", lifespan=lifespan)
    app.state.pipeline = pipeline

    env_is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if env_is_dev else ["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ReceiptFlowError, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health_router)
    app.include_router(receipts_router)
    return app


app = create_app()
