from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone

from medquiz.core.logging import DOMAIN_SESSION, get_domain_logger
from medquiz.engine.errors import (
    IncompleteSelection,
    InvalidTransition,
    NoContent,
    NothingToRetry,
    UnknownOption,
)
from medquiz.engine.retry import select_incorrect
from medquiz.engine.scoring import compute_final_grade, evaluate_question
from medquiz.engine.states import Effect, SessionPhase, SessionState
from medquiz.engine.types import AnswerableUnit, QuestionItem, QuizSettings

logger = get_domain_logger(__name__, DOMAIN_SESSION)

NAVIGABLE_PHASES = {SessionPhase.ACTIVE}
RETRYABLE_PHASES = {SessionPhase.ACTIVE, SessionPhase.PAUSED, SessionPhase.COMPLETED}
RESTARTABLE_PHASES = {
    SessionPhase.AWAITING_RESTORE_DECISION,
    SessionPhase.ACTIVE,
    SessionPhase.PAUSED,
    SessionPhase.COMPLETED,
}


class SessionStateMachine:
    """Owns one learner's session state and the rules for moving it forward.

    Every transition mutates ``self.state`` synchronously and returns the list of
    effects (save, seal, clock start/stop...) the host must perform. The machine
    itself never touches storage or timers.
    """

    def __init__(
        self,
        units: Sequence[AnswerableUnit],
        questions: Sequence[QuestionItem],
        *,
        session_id: str = "",
    ):
        if not units or not questions:
            raise NoContent("Course has no questions to practice")
        self.session_id = session_id
        self._all_units = tuple(units)
        self._all_questions = tuple(questions)
        self.units: tuple[AnswerableUnit, ...] = self._all_units
        self.questions: tuple[QuestionItem, ...] = self._all_questions
        self._questions_by_id = {question.id: question for question in self.questions}
        self.settings = QuizSettings()
        self.state = SessionState()

    # -- read helpers -------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self.state.phase

    @property
    def questions_by_id(self) -> dict[str, QuestionItem]:
        return self._questions_by_id

    @property
    def current_unit(self) -> AnswerableUnit:
        return self.units[self.state.unit_index]

    def current_questions(self) -> list[QuestionItem]:
        return [self._questions_by_id[qid] for qid in self.current_unit.question_ids]

    def is_unit_answered(self, unit: AnswerableUnit | None = None) -> bool:
        unit = unit or self.current_unit
        return unit.id in self.state.answered_units

    def is_last_unit(self) -> bool:
        return self.state.unit_index >= len(self.units) - 1

    # -- lifecycle ----------------------------------------------------------

    def open(self) -> list[Effect]:
        self._require(SessionPhase.NOT_STARTED, "open")
        self._move(SessionPhase.CONFIGURING_SETTINGS, "open")
        return []

    def configure(self, settings: QuizSettings, *, has_saved_progress: bool = False) -> list[Effect]:
        self._require(SessionPhase.CONFIGURING_SETTINGS, "configure")
        if settings.time_limit_seconds is not None and settings.time_limit_seconds <= 0:
            raise InvalidTransition("time_limit_seconds must be positive")
        self.settings = settings
        if has_saved_progress:
            self._move(SessionPhase.AWAITING_RESTORE_DECISION, "configure")
            return []
        self._move(SessionPhase.ACTIVE, "configure")
        return [Effect.START_CLOCK]

    def resume(self, restored: SessionState) -> list[Effect]:
        """Adopt a state rebuilt from persisted progress."""
        self._require(SessionPhase.AWAITING_RESTORE_DECISION, "resume")
        self.state = SessionState(
            phase=self.state.phase,
            unit_index=restored.unit_index,
            answers=dict(restored.answers),
            answered_units=set(restored.answered_units),
            outcomes=restored.outcomes.copy(),
            bookmarked=set(restored.bookmarked),
            elapsed_seconds=restored.elapsed_seconds,
            running_score=restored.running_score,
        )
        self._move(SessionPhase.ACTIVE, "resume", {"unit_index": self.state.unit_index})
        return [Effect.START_CLOCK]

    def restart_from_scratch(self) -> list[Effect]:
        self._require_any(RESTARTABLE_PHASES, "restart_from_scratch")
        self._reset(self._all_units, self._all_questions, retry_mode=False)
        self._move(SessionPhase.ACTIVE, "restart_from_scratch")
        return [Effect.DISCARD_RECORD, Effect.START_CLOCK]

    def start_retry(self) -> list[Effect]:
        self._require_any(RETRYABLE_PHASES, "start_retry")
        selection = select_incorrect(self.units, self.questions, self.state.outcomes)
        if selection.is_empty:
            raise NothingToRetry("No incorrect or partially correct questions to retry")
        self._reset(selection.units, selection.questions, retry_mode=True)
        self._move(
            SessionPhase.ACTIVE,
            "start_retry",
            {"units": len(selection.units), "questions": len(selection.questions)},
        )
        return [Effect.DISCARD_RECORD, Effect.START_CLOCK]

    # -- answering ----------------------------------------------------------

    def select_option(self, question_id: str, option_id: str) -> list[Effect]:
        self._require(SessionPhase.ACTIVE, "select_option")
        if question_id not in self.current_unit.question_ids:
            raise UnknownOption("Question is not part of the current unit", question_id=question_id)
        question = self._questions_by_id[question_id]
        if option_id not in question.option_ids:
            raise UnknownOption("Option does not belong to the question", question_id=question_id, option_id=option_id)
        if self.is_unit_answered():
            raise InvalidTransition("Unit has already been submitted")
        picked = self.state.selections.setdefault(question_id, set())
        if option_id in picked:
            picked.remove(option_id)
        else:
            picked.add(option_id)
        return []

    def submit_unit(self) -> list[Effect]:
        self._require(SessionPhase.ACTIVE, "submit_unit")
        unit = self.current_unit
        if self.is_unit_answered(unit):
            raise InvalidTransition("Unit has already been submitted")
        questions = self.current_questions()
        missing = [q.id for q in questions if not self.state.selections.get(q.id)]
        if missing:
            raise IncompleteSelection("Every question of the unit needs a selection", question_ids=missing)

        gained = 0.0
        for question in questions:
            picked = self.state.selections.pop(question.id)
            evaluation = evaluate_question(question.correct_option_ids, picked)
            self.state.answers[question.id] = [option.id for option in question.options if option.id in picked]
            self.state.outcomes.add(question.id, evaluation.outcome)
            gained += evaluation.contribution
        self.state.running_score += gained
        self.state.answered_units.add(unit.id)
        _log_event(self.session_id, "unit_submitted", {"unit_id": unit.id, "gained": gained})

        effects: list[Effect] = []
        if not self.state.retry_mode:
            effects.append(Effect.SAVE)
        if self.state.retry_mode or not self.settings.reveal_answers_immediately:
            effects.append(Effect.SCHEDULE_ADVANCE)
        else:
            self.state.revealed = True
        return effects

    # -- navigation ---------------------------------------------------------

    def advance(self) -> list[Effect]:
        self._require_any(NAVIGABLE_PHASES, "advance")
        self.state.revealed = False
        if self.is_last_unit():
            return self._complete("advance")
        self.state.unit_index += 1
        return []

    def retreat(self) -> list[Effect]:
        self._require_any(NAVIGABLE_PHASES, "retreat")
        if self.state.unit_index == 0:
            return []
        self.state.revealed = False
        self.state.unit_index -= 1
        return []

    def jump_to(self, unit_index: int) -> list[Effect]:
        self._require_any(NAVIGABLE_PHASES | {SessionPhase.COMPLETED}, "jump_to")
        if not 0 <= unit_index < len(self.units):
            raise InvalidTransition("Unit index out of range", unit_index=unit_index)
        self.state.revealed = False
        self.state.unit_index = unit_index
        return []

    def toggle_bookmark(self) -> list[Effect]:
        self._require_any({SessionPhase.ACTIVE, SessionPhase.PAUSED}, "toggle_bookmark")
        unit_id = self.current_unit.id
        if unit_id in self.state.bookmarked:
            self.state.bookmarked.remove(unit_id)
        else:
            self.state.bookmarked.add(unit_id)
        return []

    def toggle_pause(self) -> list[Effect]:
        if self.phase is SessionPhase.ACTIVE:
            self._move(SessionPhase.PAUSED, "toggle_pause")
            effects = [Effect.STOP_CLOCK]
            if not self.state.retry_mode:
                effects.append(Effect.SAVE)
            return effects
        if self.phase is SessionPhase.PAUSED:
            self._move(SessionPhase.ACTIVE, "toggle_pause")
            return [Effect.START_CLOCK]
        raise InvalidTransition(f"Cannot pause or resume from {self.phase.value}")

    # -- clock --------------------------------------------------------------

    def tick(self) -> list[Effect]:
        if self.phase is not SessionPhase.ACTIVE:
            return []
        self.state.elapsed_seconds += 1
        limit = self.settings.time_limit_seconds
        if limit is not None and self.state.elapsed_seconds >= limit:
            return self.expire()
        return []

    def expire(self) -> list[Effect]:
        """Time box ran out: finish with whatever has been answered."""
        self._require_any({SessionPhase.ACTIVE, SessionPhase.PAUSED}, "expire")
        self.state.revealed = False
        return self._complete("time_limit_expired")

    # -- internals ----------------------------------------------------------

    def _complete(self, event: str) -> list[Effect]:
        self.state.final_grade = compute_final_grade(self.questions, self.state.answers)
        self._move(
            SessionPhase.COMPLETED,
            event,
            {"final_grade": self.state.final_grade, "running_score": self.state.running_score},
        )
        effects = [Effect.STOP_CLOCK]
        if not self.state.retry_mode:
            effects.append(Effect.SEAL)
        return effects

    def _reset(
        self,
        units: Sequence[AnswerableUnit],
        questions: Sequence[QuestionItem],
        *,
        retry_mode: bool,
    ) -> None:
        self.units = tuple(units)
        self.questions = tuple(questions)
        self._questions_by_id = {question.id: question for question in self.questions}
        self.state = SessionState(phase=self.state.phase, retry_mode=retry_mode)

    def _require(self, phase: SessionPhase, operation: str) -> None:
        self._require_any({phase}, operation)

    def _require_any(self, phases: set[SessionPhase], operation: str) -> None:
        if self.phase not in phases:
            raise InvalidTransition(
                f"{operation} is not allowed while {self.phase.value}",
                phase=self.phase.value,
                operation=operation,
            )

    def _move(self, to_phase: SessionPhase, event: str, payload: dict | None = None) -> None:
        from_phase = self.state.phase
        self.state.phase = to_phase
        logger.info(
            json.dumps(
                {
                    "type": "state_transition",
                    "session_id": self.session_id,
                    "from_state": from_phase.value,
                    "to_state": to_phase.value,
                    "event": event,
                    "payload": payload or {},
                    "ts": datetime.now(timezone.utc).isoformat(),
                }
            )
        )


def _log_event(session_id: str, event: str, payload: dict) -> None:
    logger.debug(json.dumps({"type": event, "session_id": session_id, **payload}))
