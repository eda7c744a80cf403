"""
Owned-Record Models.

Workouts, their exercises and sets all carry an ``owner_id``.  Access
goes exclusively through ``UserStore.run_scoped``, described by a
``ScopedQuery``; the owner is never part of the query object itself.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional, Union

from pydantic import BaseModel, Field

ColumnValue = Union[str, int, float, bool, None]


class ScopedOperation(StrEnum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ScopedQuery(BaseModel):
    """Structured description of one owned-record statement.

    Table and column names are checked against the owned-table
    allow-list; values are always bound as parameters.

    Attributes
    ----------
    table:
        One of the owned tables (``workouts``, ``workout_exercises``,
        ``sets``).
    operation:
        Statement kind.
    filters:
        Equality conditions ANDed with the owner condition.
    values:
        Column values for INSERT / UPDATE.
    order_by:
        Optional column to sort SELECT results by (ascending).
    limit:
        Optional row cap for SELECT.
    """

    table: str
    operation: ScopedOperation
    filters: dict[str, ColumnValue] = Field(default_factory=dict)
    values: dict[str, ColumnValue] = Field(default_factory=dict)
    order_by: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)


class ScopedResult(BaseModel):
    """Rows for SELECT; affected row count / insert id for writes."""

    rows: list[dict[str, ColumnValue]] = Field(default_factory=list)
    rowcount: int = 0
    last_insert_id: Optional[int] = None


class Workout(BaseModel):
    id: int
    owner_id: str
    name: str
    performed_at: Optional[datetime] = None
    duration_s: int = 0
    notes: Optional[str] = None
    is_completed: bool = False

    model_config = {"from_attributes": True}


class WorkoutExercise(BaseModel):
    id: int
    owner_id: str
    workout_id: int
    exercise_name: str
    position: int = 0

    model_config = {"from_attributes": True}


class WorkoutSet(BaseModel):
    id: int
    owner_id: str
    workout_exercise_id: int
    set_number: int
    weight: Optional[float] = None
    reps: Optional[int] = None
    duration_s: Optional[int] = None
    distance: Optional[float] = None
    is_warmup: bool = False
    is_completed: bool = False

    model_config = {"from_attributes": True}
