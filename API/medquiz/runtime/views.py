"""Read-only projections of a live session for the HTTP layer."""
from __future__ import annotations

from medquiz.engine.retry import select_incorrect
from medquiz.engine.states import SessionPhase
from medquiz.engine.types import AnswerableUnit, Outcome, QuestionItem
from medquiz.runtime.session_manager import QuizSession
from medquiz.schemas.session import (
    OptionView,
    QuestionView,
    ResultsView,
    ReviewQuestion,
    ReviewView,
    SessionView,
    UnitStatus,
    UnitView,
)

PRE_START_PHASES = {
    SessionPhase.NOT_STARTED,
    SessionPhase.CONFIGURING_SETTINGS,
    SessionPhase.AWAITING_RESTORE_DECISION,
}


def _shows_correctness(session: QuizSession) -> bool:
    # Retry attempts keep answers hidden until the end.
    state = session.state
    return not state.retry_mode or state.completed


def _unit_status(session: QuizSession, unit: AnswerableUnit) -> str:
    state = session.state
    if unit.id not in state.answered_units:
        return "unanswered"
    outcomes = {state.outcomes.outcome_of(qid) for qid in unit.question_ids}
    if outcomes == {Outcome.CORRECT}:
        return "correct"
    if outcomes == {Outcome.INCORRECT}:
        return "incorrect"
    return "partial"


def _question_view(session: QuizSession, question: QuestionItem, language: str) -> QuestionView:
    state = session.state
    answered = question.id in state.answers
    reveal = answered and _shows_correctness(session)
    picked = set(state.answers.get(question.id) or state.selections.get(question.id) or ())
    outcome = state.outcomes.outcome_of(question.id) if reveal else None
    return QuestionView(
        id=question.id,
        text=question.localized_text(language),
        options=[
            OptionView(
                id=option.id,
                text=option.localized_text(language),
                selected=option.id in picked,
                is_correct=option.is_correct if reveal else None,
            )
            for option in question.options
        ],
        outcome=outcome.value if outcome else None,
        explanation=(question.localized_explanation(language) or None) if reveal else None,
    )


def build_session_view(session: QuizSession, language: str = "en") -> SessionView:
    machine = session.machine
    state = session.state
    limit = machine.settings.time_limit_seconds

    current_unit = None
    grid: list[UnitStatus] = []
    if machine.phase not in PRE_START_PHASES:
        unit = machine.current_unit
        current_unit = UnitView(
            id=unit.id,
            title=unit.localized_title(language),
            description=unit.localized_description(language),
            is_case_group=unit.is_case_group,
            answered=machine.is_unit_answered(unit),
            bookmarked=unit.id in state.bookmarked,
            questions=[_question_view(session, question, language) for question in machine.current_questions()],
        )
        grid = [
            UnitStatus(
                index=index,
                unit_id=item.id,
                status=_unit_status(session, item),
                bookmarked=item.id in state.bookmarked,
                current=index == state.unit_index,
            )
            for index, item in enumerate(machine.units)
        ]

    return SessionView(
        session_id=session.session_id,
        course_id=session.course_id,
        unit_filter=session.unit_filter,
        phase=machine.phase.value,
        language=language,
        has_saved_progress=session.has_saved_progress,
        reveal_answers_immediately=machine.settings.reveal_answers_immediately,
        time_limit_seconds=limit,
        unit_index=state.unit_index,
        total_units=len(machine.units),
        total_questions=len(machine.questions),
        questions_answered=state.questions_answered,
        running_score=state.running_score,
        elapsed_seconds=state.elapsed_seconds,
        remaining_seconds=max(0, limit - state.elapsed_seconds) if limit is not None else None,
        paused=state.paused,
        completed=state.completed,
        retry_mode=state.retry_mode,
        revealed=state.revealed,
        final_grade=state.final_grade,
        current_unit=current_unit,
        grid=grid,
    )


def build_results(session: QuizSession) -> ResultsView:
    machine = session.machine
    state = session.state
    total = len(machine.questions)
    return ResultsView(
        session_id=session.session_id,
        final_grade=state.final_grade,
        running_score=state.running_score,
        total_questions=total,
        questions_answered=state.questions_answered,
        correct=len(state.outcomes.correct),
        partial=len(state.outcomes.partial),
        incorrect=len(state.outcomes.incorrect),
        unanswered=max(0, total - state.questions_answered),
        elapsed_seconds=state.elapsed_seconds,
        retry_mode=state.retry_mode,
        can_retry=not select_incorrect(machine.units, machine.questions, state.outcomes).is_empty,
    )


def build_review(session: QuizSession, language: str = "en") -> ReviewView:
    """Every question of the attempt with the learner's picks next to the correct options."""
    machine = session.machine
    state = session.state
    questions: list[ReviewQuestion] = []
    for unit in machine.units:
        for question_id in unit.question_ids:
            question = machine.questions_by_id[question_id]
            selected = state.answers.get(question_id, [])
            outcome = state.outcomes.outcome_of(question_id)
            questions.append(
                ReviewQuestion(
                    id=question.id,
                    unit_id=unit.id,
                    text=question.localized_text(language),
                    explanation=question.localized_explanation(language) or None,
                    selected_option_ids=list(selected),
                    correct_option_ids=[option.id for option in question.options if option.is_correct],
                    outcome=outcome.value if outcome else None,
                    options=[
                        OptionView(
                            id=option.id,
                            text=option.localized_text(language),
                            selected=option.id in selected,
                            is_correct=option.is_correct,
                        )
                        for option in question.options
                    ],
                )
            )
    return ReviewView(session_id=session.session_id, language=language, questions=questions)
