"""Routers package."""

from .auth import router as auth_router
from .gift_cards import router as gift_cards_router

__all__ = [
    "auth_router",
    "gift_cards_router",
]
