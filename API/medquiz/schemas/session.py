from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

Language = Literal["en", "fr"]
UnitStatusValue = Literal["unanswered", "correct", "partial", "incorrect"]


class StartSessionRequest(BaseModel):
    course_id: str = Field(min_length=1, max_length=64)
    unit_filter: str | None = Field(default=None, max_length=64)


class SessionSettingsRequest(BaseModel):
    reveal_answers_immediately: bool = True
    time_limit_seconds: int | None = Field(default=None, gt=0, le=24 * 3600)


class RestoreDecisionRequest(BaseModel):
    resume: bool


class SelectOptionRequest(BaseModel):
    question_id: str
    option_id: str


class JumpRequest(BaseModel):
    unit_index: int = Field(ge=0)


class OptionView(BaseModel):
    id: str
    text: str
    selected: bool = False
    is_correct: bool | None = None


class QuestionView(BaseModel):
    id: str
    text: str
    options: list[OptionView]
    outcome: str | None = None
    explanation: str | None = None


class UnitView(BaseModel):
    id: str
    title: str
    description: str | None = None
    is_case_group: bool
    answered: bool
    bookmarked: bool
    questions: list[QuestionView]


class UnitStatus(BaseModel):
    index: int
    unit_id: str
    status: UnitStatusValue
    bookmarked: bool
    current: bool


class SessionView(BaseModel):
    session_id: str
    course_id: str
    unit_filter: str | None = None
    phase: str
    language: Language = "en"
    has_saved_progress: bool
    reveal_answers_immediately: bool
    time_limit_seconds: int | None = None
    unit_index: int
    total_units: int
    total_questions: int
    questions_answered: int
    running_score: float
    elapsed_seconds: int
    remaining_seconds: int | None = None
    paused: bool
    completed: bool
    retry_mode: bool
    revealed: bool
    final_grade: int | None = None
    current_unit: UnitView | None = None
    grid: list[UnitStatus] = Field(default_factory=list)


class ResultsView(BaseModel):
    session_id: str
    final_grade: int | None = None
    running_score: float
    total_questions: int
    questions_answered: int
    correct: int
    partial: int
    incorrect: int
    unanswered: int
    elapsed_seconds: int
    retry_mode: bool
    can_retry: bool


class ReviewQuestion(BaseModel):
    id: str
    unit_id: str
    text: str
    explanation: str | None = None
    selected_option_ids: list[str]
    correct_option_ids: list[str]
    outcome: str | None = None
    options: list[OptionView]


class ReviewView(BaseModel):
    session_id: str
    language: Language = "en"
    questions: list[ReviewQuestion]


class ProgressRecordView(BaseModel):
    id: str
    course_id: str
    current_unit_index: int
    questions_answered: int
    running_score: float
    is_completed: bool
    final_grade: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
