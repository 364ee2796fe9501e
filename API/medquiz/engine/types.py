from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


def pick_language(default_text: str | None, fr_text: str | None, language: str) -> str:
    """Localized text with fallback to whichever translation exists."""
    if language == "fr":
        return fr_text or default_text or ""
    return default_text or fr_text or ""


@dataclass(frozen=True)
class OptionItem:
    id: str
    text: str
    text_fr: str | None = None
    is_correct: bool = False

    def localized_text(self, language: str = "en") -> str:
        return pick_language(self.text, self.text_fr, language)


@dataclass(frozen=True)
class QuestionItem:
    id: str
    text: str
    text_fr: str | None = None
    explanation: str | None = None
    explanation_fr: str | None = None
    order_index: int = 0
    group_id: str | None = None
    options: tuple[OptionItem, ...] = ()

    @property
    def correct_option_ids(self) -> frozenset[str]:
        return frozenset(option.id for option in self.options if option.is_correct)

    @property
    def option_ids(self) -> frozenset[str]:
        return frozenset(option.id for option in self.options)

    def localized_text(self, language: str = "en") -> str:
        return pick_language(self.text, self.text_fr, language)

    def localized_explanation(self, language: str = "en") -> str:
        return pick_language(self.explanation, self.explanation_fr, language)


@dataclass(frozen=True)
class CaseGroupItem:
    """Case-group metadata as authored in content; membership lives on the question side."""

    id: str
    title: str
    title_fr: str | None = None
    description: str | None = None
    description_fr: str | None = None
    order_index: int = 0


@dataclass(frozen=True)
class AnswerableUnit:
    id: str
    title: str
    question_ids: tuple[str, ...]
    title_fr: str | None = None
    description: str | None = None
    description_fr: str | None = None
    is_case_group: bool = False

    def localized_title(self, language: str = "en") -> str:
        return pick_language(self.title, self.title_fr, language)

    def localized_description(self, language: str = "en") -> str | None:
        if self.description is None and self.description_fr is None:
            return None
        return pick_language(self.description, self.description_fr, language)


@dataclass(frozen=True)
class CourseContent:
    course_id: str
    questions: tuple[QuestionItem, ...]
    case_groups: tuple[CaseGroupItem, ...] = ()
    unit_filter: str | None = None


class Outcome(str, Enum):
    CORRECT = "correct"
    PARTIAL = "partial"
    INCORRECT = "incorrect"


@dataclass
class OutcomeSets:
    correct: set[str] = field(default_factory=set)
    partial: set[str] = field(default_factory=set)
    incorrect: set[str] = field(default_factory=set)

    def add(self, question_id: str, outcome: Outcome) -> None:
        # A question lives in exactly one bucket.
        self.discard(question_id)
        if outcome is Outcome.CORRECT:
            self.correct.add(question_id)
        elif outcome is Outcome.PARTIAL:
            self.partial.add(question_id)
        else:
            self.incorrect.add(question_id)

    def discard(self, question_id: str) -> None:
        self.correct.discard(question_id)
        self.partial.discard(question_id)
        self.incorrect.discard(question_id)

    def outcome_of(self, question_id: str) -> Outcome | None:
        if question_id in self.correct:
            return Outcome.CORRECT
        if question_id in self.partial:
            return Outcome.PARTIAL
        if question_id in self.incorrect:
            return Outcome.INCORRECT
        return None

    def copy(self) -> OutcomeSets:
        return OutcomeSets(set(self.correct), set(self.partial), set(self.incorrect))


@dataclass(frozen=True)
class QuizSettings:
    reveal_answers_immediately: bool = True
    time_limit_seconds: int | None = None
