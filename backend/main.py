import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    insecure_secret_warnings,
)
from backend.errors import ChainError
from backend.logging_config import setup_logging
from backend.rate_limit import limiter, rate_limit_handler
from backend.routers import attendance, auth, chains, core, scans, snapshots
from database.db import create_tables

logger = logging.getLogger(__name__)


# -----------------------------
# Startup
# -----------------------------
@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    for message in insecure_secret_warnings():
        logger.warning(message)
    create_tables()
    yield


app = FastAPI(title="Chainroll API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)


# -----------------------------
# CORS (React dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(ChainError)
async def chain_error_handler(_request: Request, exc: ChainError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(chains.router)
app.include_router(scans.router)
app.include_router(snapshots.router)
app.include_router(attendance.router)
