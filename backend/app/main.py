"""Expose the gift card ledger FastAPI app and its CORS configuration."""

import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Iterable

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .database import read_bool_env, read_int_env
from .migrations import run_database_migrations
from .routers import auth_router, gift_cards_router

LOGGER = logging.getLogger(__name__)

RUN_MIGRATIONS_ENV = "RUN_MIGRATIONS_ON_STARTUP"
ALLOWED_ORIGINS_ENV = "BACKEND_ALLOWED_ORIGINS"
HOST_ENV = "BACKEND_HOST"
PORT_ENV = "BACKEND_PORT"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

# Vite dev server used by the storefront admin.
LOCAL_DEVELOPMENT_ORIGIN = "http://localhost:5173"
LOCAL_DEVELOPMENT_ORIGINS = {
    LOCAL_DEVELOPMENT_ORIGIN,
    "http://localhost:3000",
}
LOCALHOST_ORIGIN_REGEX = r"https?://(localhost|127\.0\.0\.1|0\.0\.0\.0)(:\d+)?$"

DEFAULT_ALLOWED_ORIGINS = {
    *LOCAL_DEVELOPMENT_ORIGINS,
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
    "http://localhost:4173",
    "http://127.0.0.1:4173",
}


def _normalize_origin(origin: str) -> str | None:
    stripped = origin.strip()
    if not stripped:
        return None
    return stripped.rstrip("/")


def _read_allowed_origins(raw_origins: Iterable[str]) -> list[str]:
    normalized = {_normalize_origin(origin) for origin in raw_origins}
    return sorted({origin for origin in normalized if origin})


def _split_raw_origins(raw_value: str) -> list[str]:
    """Split a raw origin string using commas or whitespace as separators."""

    return [origin for origin in re.split(r"[\s,]+", raw_value) if origin]


def _load_allowed_origins_from_env() -> list[str]:
    raw_value = os.getenv(ALLOWED_ORIGINS_ENV)
    if not raw_value:
        return []
    return _read_allowed_origins(_split_raw_origins(raw_value))


def _resolve_allowed_origins() -> list[str]:
    origins = _load_allowed_origins_from_env() or _read_allowed_origins(DEFAULT_ALLOWED_ORIGINS)
    missing_dev_origins = [
        origin for origin in LOCAL_DEVELOPMENT_ORIGINS if origin not in origins
    ]
    if missing_dev_origins:
        origins = _read_allowed_origins([*origins, *missing_dev_origins])
    return origins


def ensure_database_is_ready() -> None:
    """Apply pending database migrations unless disabled for this process."""

    if not read_bool_env(RUN_MIGRATIONS_ENV, True):
        LOGGER.info("Skipping database migrations (%s is off)", RUN_MIGRATIONS_ENV)
        return
    LOGGER.info("Ensuring database schema is up to date before serving requests")
    run_database_migrations()


@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_database_is_ready()
    yield


app = FastAPI(title="ATL Urban Farms Gift Card API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_resolve_allowed_origins(),
    allow_origin_regex=LOCALHOST_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(gift_cards_router, prefix="/gift-cards", tags=["gift-cards"])


@app.get("/", tags=["health"])
def read_root() -> dict[str, str]:
    """Return a simple health check response."""
    return {"status": "ok"}


def run() -> None:
    """Serve the API with uvicorn; bound by ``BACKEND_HOST`` and ``BACKEND_PORT``."""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    host = os.getenv(HOST_ENV, DEFAULT_HOST)
    port = read_int_env(PORT_ENV, DEFAULT_PORT, minimum=1)
    LOGGER.info("Starting gift card API on %s:%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
