"""Shared schema definitions."""

from __future__ import annotations

from decimal import Decimal
from typing import Generic, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """Standard shape for paginated listings."""

    items: Sequence[T]
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    skip: int = Field(..., ge=0)


class OperationError(BaseModel):
    """Machine readable failure attached to an :class:`OperationResult`."""

    code: str
    message: str
    current_balance: Optional[Decimal] = None


class OperationResult(BaseModel, Generic[T]):
    """Uniform envelope returned by every ledger mutation."""

    success: bool
    value: Optional[T] = None
    error: Optional[OperationError] = None
