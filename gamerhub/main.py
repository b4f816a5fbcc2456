import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

# Load env from the project root before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from gamerhub.core.config import settings, validate_config
from gamerhub.core.logging import configure_logging
from gamerhub.core.middleware.request_id import RequestIdMiddleware
from gamerhub.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from gamerhub.core.database import create_all_tables
from gamerhub.api import health, subscription, uploads

configure_logging(settings.ENV, settings.LOG_LEVEL)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("gamerhub")
    logger.info("Starting GamerHub backend...")
    create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("gamerhub").info("Stopping GamerHub backend...")


app = FastAPI(title="GamerHub - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(uploads.router, prefix="/api", tags=["uploads"])
app.include_router(subscription.router, prefix="/api", tags=["subscription"])

# Finished uploads are served from UPLOAD_DIR under MEDIA_BASE_URL
app.mount("/media", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="media")
