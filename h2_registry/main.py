import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

from .batch.routes import router as batch_router
from .core.database.db import get_db_name_to_client
from .core.error_handling import (
    LedgerError,
    general_exception_handler,
    http_exception_handler,
    ledger_exception_handler,
    validation_exception_handler,
)
from .core.models.base import LedgerResponse, LoggingLevelRequest
from .credit.routes import router as credit_router
from .logging_config import logger, set_logger_and_children_level
from .settings import settings
from .transaction.routes import router as transaction_router

tags_metadata = [
    {
        "name": "Batches",
        "description": """Hydrogen production runs submitted by producers. Certifiers verify pending
                          batches, approve or reject them, and mint credits against approved ones.""",
    },
    {
        "name": "Credits",
        "description": """Tradeable credits minted from approved batches. Owners transfer and retire
                          them; every action is recorded as an immutable credit event.""",
    },
    {
        "name": "Transactions",
        "description": "Bookkeeping records of purchases, transfers, retirements and verifications, with an audit trail.",
    },
]

# --- Middleware and CORS Setup ---

# Default local origins
origins = [
    "http://localhost:3000",
    "http://localhost:8080",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8080",
]
origins.extend(settings.cors_origins)

logger.info(f"Initialized CORS origins: {origins}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Starting up application...")
    yield
    logger.info("Shutting down application...")


app = FastAPI(
    openapi_tags=tags_metadata,
    title="Green Hydrogen Credit Registry",
    description="Issuance, transfer and retirement ledger for green hydrogen credits.",
    version="1.0",
    docs_url="/docs",
    dependencies=[Depends(get_db_name_to_client)],
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "X-User-Id", "Accept", "Origin"],
)

# --- Error Handling ---

app.add_exception_handler(LedgerError, ledger_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, general_exception_handler)

# --- Router Inclusions ---

app.include_router(batch_router, prefix="/batches")
app.include_router(credit_router, prefix="/credits")
app.include_router(transaction_router, prefix="/transactions")


@app.get("/health", tags=["Core"], response_model=LedgerResponse[dict])
async def health():
    return LedgerResponse(
        message="Green Hydrogen Credit Registry is running",
        data={"environment": settings.ENVIRONMENT},
    )


@app.post("/logging_level", tags=["Core"])
async def change_log_level_endpoint(request: LoggingLevelRequest):
    """Change the logging level at runtime for the registry loggers."""
    set_logger_and_children_level(request.level.value)

    return LedgerResponse(
        message=f"Log level changed to {request.level.value}",
        data={
            "effective_level": logging.getLevelName(logger.getEffectiveLevel()),
        },
    )


def main() -> None:
    uvicorn.run("h2_registry.main:app", host="0.0.0.0", port=8000)
