"""
Workout Service.

Create, read, rename and delete the signed-in user's workouts, and add
exercises and sets to them.

Every statement goes through ``UserStore.run_scoped`` and the owner id
is always taken from the active session, never from the caller.  All
public methods are wrapped by the authentication guard: each call counts
as session activity, and calling one signed out (or after the session
idled out) raises ``AuthenticationError``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fitguard.auth import SessionManager
from fitguard.auth_guard import require_auth
from fitguard.errors import InvalidInput, StorageFailure
from fitguard.logger import StructuredLogger
from fitguard.models.service_models import ServiceResult
from fitguard.models.workout import (
    ColumnValue,
    ScopedOperation,
    ScopedQuery,
    Workout,
    WorkoutExercise,
    WorkoutSet,
)
from fitguard.repositories.user_store import UserStore
from fitguard.utils.general import from_db_timestamp, to_db_timestamp


class WorkoutService:
    """
    Service layer for owned workout records.

    Delegates all data access to ``UserStore.run_scoped``.  Public
    methods are declared with a leading ``owner_id`` that the guard
    fills in from the session; callers never pass it.
    """

    def __init__(
        self,
        user_store: UserStore,
        session: SessionManager,
        logger: StructuredLogger,
    ) -> None:
        self._store: UserStore = user_store
        self._logger: StructuredLogger = logger

        guard = require_auth(session)
        self.create_workout = guard(self.create_workout)
        self.list_workouts = guard(self.list_workouts)
        self.get_workout = guard(self.get_workout)
        self.rename_workout = guard(self.rename_workout)
        self.delete_workout = guard(self.delete_workout)
        self.add_exercise = guard(self.add_exercise)
        self.list_exercises = guard(self.list_exercises)
        self.add_set = guard(self.add_set)
        self.list_sets = guard(self.list_sets)

    # ==================================================================
    # Workouts
    # ==================================================================

    def create_workout(
        self,
        owner_id: str,
        name: str,
        performed_at: Optional[datetime] = None,
        duration_s: int = 0,
        notes: Optional[str] = None,
    ) -> ServiceResult[Workout]:
        """Create a workout owned by the signed-in user.

        Returns:
            ServiceResult with the stored ``Workout`` (status 201), or a
            400 when the name is empty.
        """
        clean_name: str = (name or "").strip()
        if not clean_name:
            return ServiceResult(success=False, error="Workout name is required.", status_code=400)

        values: dict[str, ColumnValue] = {
            "name": clean_name,
            "performed_at": to_db_timestamp(performed_at) if performed_at else None,
            "duration_s": max(0, int(duration_s)),
            "notes": notes,
        }
        return self._insert_and_fetch(owner_id, "workouts", values, self._row_to_workout, "Workout")

    def list_workouts(
        self, owner_id: str, limit: Optional[int] = None,
    ) -> ServiceResult[list[Workout]]:
        """Return the signed-in user's workouts, oldest first."""
        return self._select_many(
            owner_id,
            ScopedQuery(
                table="workouts",
                operation=ScopedOperation.SELECT,
                limit=limit,
            ),
            self._row_to_workout,
        )

    def get_workout(self, owner_id: str, workout_id: int) -> ServiceResult[Workout]:
        """Return one workout, or a 404 when it does not exist for this user."""
        return self._select_one(owner_id, "workouts", workout_id, self._row_to_workout, "Workout")

    def rename_workout(self, owner_id: str, workout_id: int, name: str) -> ServiceResult[Workout]:
        clean_name: str = (name or "").strip()
        if not clean_name:
            return ServiceResult(success=False, error="Workout name is required.", status_code=400)
        try:
            result = self._store.run_scoped(
                owner_id,
                ScopedQuery(
                    table="workouts",
                    operation=ScopedOperation.UPDATE,
                    filters={"id": workout_id},
                    values={"name": clean_name},
                ),
            )
        except (InvalidInput, StorageFailure) as exc:
            return self._error("rename workout", exc)
        if result.rowcount == 0:
            return ServiceResult(success=False, error="Workout not found.", status_code=404)
        return self._select_one(owner_id, "workouts", workout_id, self._row_to_workout, "Workout")

    def delete_workout(self, owner_id: str, workout_id: int) -> ServiceResult[int]:
        """Delete a workout with its exercises and sets.

        Returns:
            ServiceResult with the number of workouts removed, or a 404
            when no workout with that id belongs to the signed-in user.
        """
        try:
            result = self._store.run_scoped(
                owner_id,
                ScopedQuery(
                    table="workouts",
                    operation=ScopedOperation.DELETE,
                    filters={"id": workout_id},
                ),
            )
        except (InvalidInput, StorageFailure) as exc:
            return self._error("delete workout", exc)
        if result.rowcount == 0:
            return ServiceResult(success=False, error="Workout not found.", status_code=404)
        self._logger.info(
            "Workout %s deleted.", workout_id,
            extra={"event": "WORKOUT_DELETED", "user_id": owner_id},
        )
        return ServiceResult(success=True, data=result.rowcount)

    # ==================================================================
    # Exercises and sets
    # ==================================================================

    def add_exercise(
        self,
        owner_id: str,
        workout_id: int,
        exercise_name: str,
        position: int = 0,
    ) -> ServiceResult[WorkoutExercise]:
        """Attach an exercise to one of the signed-in user's workouts.

        A workout id that belongs to someone else is reported as a 404,
        exactly like one that does not exist.
        """
        clean_name: str = (exercise_name or "").strip()
        if not clean_name:
            return ServiceResult(success=False, error="Exercise name is required.", status_code=400)
        values: dict[str, ColumnValue] = {
            "workout_id": workout_id,
            "exercise_name": clean_name,
            "position": position,
        }
        return self._insert_and_fetch(
            owner_id, "workout_exercises", values, self._row_to_exercise, "Workout",
        )

    def list_exercises(
        self, owner_id: str, workout_id: int,
    ) -> ServiceResult[list[WorkoutExercise]]:
        return self._select_many(
            owner_id,
            ScopedQuery(
                table="workout_exercises",
                operation=ScopedOperation.SELECT,
                filters={"workout_id": workout_id},
                order_by="position",
            ),
            self._row_to_exercise,
        )

    def add_set(
        self,
        owner_id: str,
        workout_exercise_id: int,
        set_number: int,
        weight: Optional[float] = None,
        reps: Optional[int] = None,
        duration_s: Optional[int] = None,
        distance: Optional[float] = None,
        is_warmup: bool = False,
    ) -> ServiceResult[WorkoutSet]:
        if set_number < 1:
            return ServiceResult(success=False, error="Set number must be at least 1.", status_code=400)
        values: dict[str, ColumnValue] = {
            "workout_exercise_id": workout_exercise_id,
            "set_number": set_number,
            "weight": weight,
            "reps": reps,
            "duration_s": duration_s,
            "distance": distance,
            "is_warmup": int(is_warmup),
        }
        return self._insert_and_fetch(owner_id, "sets", values, self._row_to_set, "Exercise")

    def list_sets(
        self, owner_id: str, workout_exercise_id: int,
    ) -> ServiceResult[list[WorkoutSet]]:
        return self._select_many(
            owner_id,
            ScopedQuery(
                table="sets",
                operation=ScopedOperation.SELECT,
                filters={"workout_exercise_id": workout_exercise_id},
                order_by="set_number",
            ),
            self._row_to_set,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _insert_and_fetch(
        self, owner_id: str, table: str, values, mapper, parent_label: str,
    ) -> ServiceResult:
        try:
            result = self._store.run_scoped(
                owner_id,
                ScopedQuery(table=table, operation=ScopedOperation.INSERT, values=values),
            )
        except (InvalidInput, StorageFailure) as exc:
            return self._error(f"insert into {table}", exc)

        if result.rowcount == 0 or result.last_insert_id is None:
            # The parent row is missing or owned by someone else.
            return ServiceResult(success=False, error=f"{parent_label} not found.", status_code=404)

        fetched = self._select_one(owner_id, table, result.last_insert_id, mapper, parent_label)
        if fetched.success:
            fetched.status_code = 201
        return fetched

    def _select_one(
        self, owner_id: str, table: str, record_id: int, mapper, label: str,
    ) -> ServiceResult:
        try:
            result = self._store.run_scoped(
                owner_id,
                ScopedQuery(
                    table=table,
                    operation=ScopedOperation.SELECT,
                    filters={"id": record_id},
                    limit=1,
                ),
            )
        except (InvalidInput, StorageFailure) as exc:
            return self._error(f"read {table}", exc)
        if not result.rows:
            return ServiceResult(success=False, error=f"{label} not found.", status_code=404)
        return ServiceResult(success=True, data=mapper(result.rows[0]))

    def _select_many(self, owner_id: str, query: ScopedQuery, mapper) -> ServiceResult:
        try:
            result = self._store.run_scoped(owner_id, query)
        except (InvalidInput, StorageFailure) as exc:
            return self._error(f"list {query.table}", exc)
        return ServiceResult(success=True, data=[mapper(row) for row in result.rows])

    def _error(self, action: str, exc: Exception) -> ServiceResult:
        if isinstance(exc, InvalidInput):
            return ServiceResult(success=False, error=exc.message, status_code=400)
        self._logger.error("Failed to %s: %s", action, exc, exc_info=True)
        return ServiceResult(
            success=False,
            error="Something went wrong. Please try again.",
            status_code=500,
        )

    @staticmethod
    def _row_to_workout(row: dict[str, ColumnValue]) -> Workout:
        return Workout.model_validate(
            {**row, "performed_at": from_db_timestamp(row.get("performed_at"))}
        )

    @staticmethod
    def _row_to_exercise(row: dict[str, ColumnValue]) -> WorkoutExercise:
        return WorkoutExercise.model_validate(row)

    @staticmethod
    def _row_to_set(row: dict[str, ColumnValue]) -> WorkoutSet:
        return WorkoutSet.model_validate(row)
