from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from medquiz.core.logging import DOMAIN_CONTENT, get_domain_logger
from medquiz.core.resilience import retry_with_backoff
from medquiz.core.settings import settings
from medquiz.engine.errors import NoContent
from medquiz.engine.types import CaseGroupItem, CourseContent, OptionItem, QuestionItem
from medquiz.models.entities import CaseGroup, Question

logger = get_domain_logger(__name__, DOMAIN_CONTENT)


def _question_item(row: Question) -> QuestionItem:
    return QuestionItem(
        id=row.id,
        text=row.text,
        text_fr=row.text_fr,
        explanation=row.explanation,
        explanation_fr=row.explanation_fr,
        order_index=row.order_index or 0,
        group_id=row.group_id,
        options=tuple(
            OptionItem(id=option.id, text=option.text, text_fr=option.text_fr, is_correct=bool(option.is_correct))
            for option in row.options
        ),
    )


def _case_group_item(row: CaseGroup) -> CaseGroupItem:
    return CaseGroupItem(
        id=row.id,
        title=row.title,
        title_fr=row.title_fr,
        description=row.description,
        description_fr=row.description_fr,
        order_index=row.order_index or 0,
    )


class QuestionBankLoader:
    """Reads a course's questions, options and case groups from the content tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def fetch_questions(self, course_id: str, unit_filter: str | None = None) -> list[QuestionItem]:
        stmt = (
            select(Question)
            .options(selectinload(Question.options))
            .where(Question.course_id == course_id)
            .order_by(Question.created_at, Question.id)
        )
        if unit_filter:
            stmt = stmt.where(Question.org_unit_id == unit_filter)
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_question_item(row) for row in rows]

    async def fetch_case_groups(self, course_id: str, unit_filter: str | None = None) -> list[CaseGroupItem]:
        stmt = (
            select(CaseGroup)
            .where(CaseGroup.course_id == course_id)
            .order_by(CaseGroup.order_index, CaseGroup.created_at, CaseGroup.id)
        )
        if unit_filter:
            # Groups without a unit apply to every unit of the course.
            stmt = stmt.where(or_(CaseGroup.org_unit_id == unit_filter, CaseGroup.org_unit_id.is_(None)))
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_case_group_item(row) for row in rows]

    async def load(self, course_id: str, unit_filter: str | None = None) -> CourseContent:
        """Questions plus case groups for a course; NoContent when unreachable or empty."""
        try:
            questions = await retry_with_backoff(
                lambda: self.fetch_questions(course_id, unit_filter),
                max_retries=settings.content_load_retries,
            )
            case_groups = await retry_with_backoff(
                lambda: self.fetch_case_groups(course_id, unit_filter),
                max_retries=settings.content_load_retries,
            )
        except SQLAlchemyError as exc:
            logger.warning("Content store unavailable for course %s: %s", course_id, exc)
            raise NoContent("Content store unavailable", course_id=course_id) from exc
        except (ConnectionError, TimeoutError) as exc:
            logger.warning("Content store unreachable for course %s: %s", course_id, exc)
            raise NoContent("Content store unavailable", course_id=course_id) from exc

        if not questions:
            raise NoContent("Course has no questions", course_id=course_id, unit_filter=unit_filter)
        logger.info(
            "Loaded course %s: %s questions, %s case groups (unit_filter=%s)",
            course_id,
            len(questions),
            len(case_groups),
            unit_filter,
        )
        return CourseContent(
            course_id=course_id,
            questions=tuple(questions),
            case_groups=tuple(case_groups),
            unit_filter=unit_filter,
        )
