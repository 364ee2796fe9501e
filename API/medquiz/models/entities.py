import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medquiz.models.base import Base, JSONType


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaseGroup(Base):
    __tablename__ = "case_groups"
    __table_args__ = (
        Index("idx_case_groups_course_id", "course_id"),
        Index("idx_case_groups_course_org_unit", "course_id", "org_unit_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    course_id: Mapped[str] = mapped_column(String(36), nullable=False)
    org_unit_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    title_fr: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    description_fr: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_course_id", "course_id"),
        Index("idx_questions_course_org_unit", "course_id", "org_unit_id"),
        Index("idx_questions_group_id", "group_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    course_id: Mapped[str] = mapped_column(String(36), nullable=False)
    org_unit_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    group_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("case_groups.id", ondelete="SET NULL"), nullable=True
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    text_fr: Mapped[str | None] = mapped_column(Text, nullable=True)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    explanation_fr: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())

    options: Mapped[list["QuestionOption"]] = relationship(
        back_populates="question",
        cascade="all, delete-orphan",
        order_by="QuestionOption.position",
    )


class QuestionOption(Base):
    __tablename__ = "question_options"
    __table_args__ = (Index("idx_question_options_question_id", "question_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    question_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("questions.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    text_fr: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    question: Mapped[Question] = relationship(back_populates="options")


class QuizProgress(Base):
    """Durable projection of one learner's attempt at one course."""

    __tablename__ = "quiz_progress"
    __table_args__ = (
        Index("idx_quiz_progress_learner_id", "learner_id"),
        Index("idx_quiz_progress_learner_course", "learner_id", "course_id"),
        Index("idx_quiz_progress_updated_at", "updated_at"),
        # At most one in-progress attempt per (learner, course).
        Index(
            "uq_quiz_progress_active_attempt",
            "learner_id",
            "course_id",
            unique=True,
            postgresql_where=text("is_completed = false"),
            sqlite_where=text("is_completed = 0"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    learner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    course_id: Mapped[str] = mapped_column(String(36), nullable=False)
    current_unit_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    answers: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    running_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    questions_answered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    incorrect_question_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    partially_correct_question_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    final_grade: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
