from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, desc, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medquiz.engine.errors import ActiveRecordConflict, SealedRecordError
from medquiz.models.entities import QuizProgress


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ProgressPayload(BaseModel):
    """Full snapshot written on every save; never a delta."""

    current_unit_index: int = 0
    answers: dict[str, list[str]] = Field(default_factory=dict)
    running_score: float = 0.0
    questions_answered: int = 0
    incorrect_question_ids: list[str] = Field(default_factory=list)
    partially_correct_question_ids: list[str] = Field(default_factory=list)
    is_completed: bool = False
    final_grade: float | None = None


class PersistedRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    learner_id: str
    course_id: str
    current_unit_index: int = 0
    answers: dict[str, list[str]] = Field(default_factory=dict)
    running_score: float = 0.0
    questions_answered: int = 0
    incorrect_question_ids: list[str] = Field(default_factory=list)
    partially_correct_question_ids: list[str] = Field(default_factory=list)
    is_completed: bool = False
    final_grade: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _to_record(row: QuizProgress) -> PersistedRecord:
    record = PersistedRecord.model_validate(row)
    record.created_at = as_utc(record.created_at)
    record.updated_at = as_utc(record.updated_at)
    return record


class ProgressStore:
    """Repository over ``quiz_progress``; every call runs in its own short transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, record_id: str) -> PersistedRecord | None:
        async with self._session_factory() as db:
            row = await db.get(QuizProgress, record_id)
            return _to_record(row) if row else None

    async def find_active(self, learner_id: str, course_id: str) -> PersistedRecord | None:
        async with self._session_factory() as db:
            row = (
                await db.execute(
                    select(QuizProgress)
                    .where(
                        QuizProgress.learner_id == learner_id,
                        QuizProgress.course_id == course_id,
                        QuizProgress.is_completed.is_(False),
                    )
                    .order_by(desc(QuizProgress.updated_at))
                    .limit(1)
                )
            ).scalar_one_or_none()
            return _to_record(row) if row else None

    async def find_latest_completed(self, learner_id: str, course_id: str) -> PersistedRecord | None:
        async with self._session_factory() as db:
            row = (
                await db.execute(
                    select(QuizProgress)
                    .where(
                        QuizProgress.learner_id == learner_id,
                        QuizProgress.course_id == course_id,
                        QuizProgress.is_completed.is_(True),
                    )
                    .order_by(desc(QuizProgress.updated_at))
                    .limit(1)
                )
            ).scalar_one_or_none()
            return _to_record(row) if row else None

    async def list_active_for_learner(self, learner_id: str, limit: int = 5) -> list[PersistedRecord]:
        async with self._session_factory() as db:
            rows = (
                await db.execute(
                    select(QuizProgress)
                    .where(QuizProgress.learner_id == learner_id, QuizProgress.is_completed.is_(False))
                    .order_by(desc(QuizProgress.updated_at))
                    .limit(limit)
                )
            ).scalars()
            return [_to_record(row) for row in rows]

    async def insert(self, learner_id: str, course_id: str, payload: ProgressPayload) -> PersistedRecord:
        now = datetime.now(timezone.utc)
        row = QuizProgress(
            learner_id=learner_id,
            course_id=course_id,
            created_at=now,
            updated_at=now,
            **payload.model_dump(),
        )
        async with self._session_factory() as db:
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise ActiveRecordConflict(
                    "An in-progress record already exists", learner_id=learner_id, course_id=course_id
                ) from exc
            await db.refresh(row)
            return _to_record(row)

    async def update(self, record_id: str, payload: ProgressPayload) -> bool:
        """Overwrite an in-progress record. False when no such row exists.

        Raises SealedRecordError if the row is already completed.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(QuizProgress)
                .where(QuizProgress.id == record_id, QuizProgress.is_completed.is_(False))
                .values(updated_at=datetime.now(timezone.utc), **payload.model_dump())
            )
            await db.commit()
            if result.rowcount:
                return True
            row = await db.get(QuizProgress, record_id)
            if row is not None and row.is_completed:
                raise SealedRecordError("Record is sealed", record_id=record_id)
            return False

    async def touch(self, record_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(QuizProgress)
                .where(QuizProgress.id == record_id, QuizProgress.is_completed.is_(False))
                .values(updated_at=datetime.now(timezone.utc))
            )
            await db.commit()

    async def delete_active(self, learner_id: str, course_id: str) -> list[str]:
        async with self._session_factory() as db:
            ids = list(
                (
                    await db.execute(
                        select(QuizProgress.id).where(
                            QuizProgress.learner_id == learner_id,
                            QuizProgress.course_id == course_id,
                            QuizProgress.is_completed.is_(False),
                        )
                    )
                ).scalars()
            )
            if ids:
                await db.execute(delete(QuizProgress).where(QuizProgress.id.in_(ids)))
                await db.commit()
            return ids
