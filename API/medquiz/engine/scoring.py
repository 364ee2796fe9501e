"""Per-question evaluation and the 0-20 final grade.

The live score and the final grade intentionally use different formulas: the
live score is additive and never penalizes, the grade subtracts wrong picks
inside each question (floored at zero). Both are shown to learners, on the
quiz screen and on the results screen respectively.
"""
from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from medquiz.engine.types import Outcome, QuestionItem

PARTIAL_CREDIT_WEIGHT = 0.5
GRADE_SCALE = 20


@dataclass(frozen=True)
class QuestionEvaluation:
    outcome: Outcome
    contribution: float


def evaluate_question(correct_option_ids: Iterable[str], selected_option_ids: Iterable[str]) -> QuestionEvaluation:
    correct = frozenset(correct_option_ids)
    selected = frozenset(selected_option_ids)
    if not selected:
        return QuestionEvaluation(Outcome.INCORRECT, 0.0)
    if selected == correct:
        return QuestionEvaluation(Outcome.CORRECT, 1.0)
    if selected < correct:
        return QuestionEvaluation(Outcome.PARTIAL, PARTIAL_CREDIT_WEIGHT * len(selected) / len(correct))
    return QuestionEvaluation(Outcome.INCORRECT, 0.0)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_final_grade(questions: Iterable[QuestionItem], answers: Mapping[str, Iterable[str]]) -> int:
    earned = 0
    possible = 0
    for question in questions:
        correct = question.correct_option_ids
        possible += len(correct)
        selected = set(answers.get(question.id) or ())
        right = len(selected & correct)
        wrong = len(selected - correct)
        earned += max(0, right - wrong)
    if possible == 0:
        return 0
    return _round_half_up(earned / possible * GRADE_SCALE)
