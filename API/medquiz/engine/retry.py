from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from medquiz.engine.types import AnswerableUnit, OutcomeSets, QuestionItem


@dataclass(frozen=True)
class RetrySelection:
    units: tuple[AnswerableUnit, ...]
    questions: tuple[QuestionItem, ...]

    @property
    def is_empty(self) -> bool:
        return not self.questions


def select_incorrect(
    units: Sequence[AnswerableUnit],
    questions: Sequence[QuestionItem],
    outcomes: OutcomeSets,
) -> RetrySelection:
    """Keep only incorrect or partially-correct questions and the units that still hold one."""
    wanted = outcomes.incorrect | outcomes.partial
    kept_questions = tuple(question for question in questions if question.id in wanted)
    kept_ids = {question.id for question in kept_questions}

    kept_units: list[AnswerableUnit] = []
    for unit in units:
        remaining = tuple(qid for qid in unit.question_ids if qid in kept_ids)
        if not remaining:
            continue
        kept_units.append(
            AnswerableUnit(
                id=unit.id,
                title=unit.title,
                title_fr=unit.title_fr,
                description=unit.description,
                description_fr=unit.description_fr,
                question_ids=remaining,
                is_case_group=unit.is_case_group,
            )
        )
    if not kept_units:
        return RetrySelection(units=(), questions=())
    return RetrySelection(units=tuple(kept_units), questions=kept_questions)
