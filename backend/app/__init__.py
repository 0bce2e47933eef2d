"""FastAPI application package for the gift card ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .main import app as fastapi_app


def get_app():
    """Return the FastAPI application without importing it eagerly.

    Alembic and the CLI scripts import this package but never need the
    web application or its middleware.
    """

    from .main import app as fastapi_app

    return fastapi_app


__all__ = ["get_app"]
