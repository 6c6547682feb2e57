import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from the working directory's .env (skipped under pytest)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

# Import after dotenv is loaded
from tutorgate.core.config import settings, validate_config  # noqa: E402
from tutorgate.core.database import check_connection, create_all_tables, get_database_url  # noqa: E402
from tutorgate.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_error_handler,
    unhandled_exception_handler,
)
from tutorgate.core.logging import configure_logging  # noqa: E402
from tutorgate.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from tutorgate.core.validation import validate_env  # noqa: E402
from tutorgate.api import activation, billing, entitlements, health, tools, usage  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

logger = logging.getLogger("tutorgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting tutorgate...")
    if get_database_url() and check_connection():
        create_all_tables()
    else:
        logger.warning("Database not configured or unreachable; tables not created at startup")
    try:
        yield
    finally:
        logger.info("Stopping tutorgate...")


app = FastAPI(title="tutorgate", lifespan=lifespan)

# Set by the deployment with a ContentGenerator implementation
app.state.content_generator = None

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS for the activation page
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tools.router, tags=["tools"])
app.include_router(entitlements.router, tags=["entitlements"])
app.include_router(activation.router, tags=["activation"])
app.include_router(usage.router, tags=["usage"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(health.root_router, tags=["health"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tutorgate.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
