"""
Service Layer Data Transfer Objects.

Pydantic models for validated output at service boundaries.
Replaces raw dict passing between layers.
"""

from __future__ import annotations

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

__all__ = [
    "ServiceResult",
]


class ServiceResult(BaseModel, Generic[T]):
    """
    Standard service return envelope.

    Owned-record service methods return this, providing a consistent
    contract for whatever front end drives them.

    Generic over ``T`` so callers can annotate return types precisely
    (e.g. ``ServiceResult[list[Workout]]``).  Using bare
    ``ServiceResult(...)`` without a type parameter is still valid --
    Pydantic v2 treats the unparameterised form as ``ServiceResult[Any]``
    at runtime.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    status_code: int = 200
