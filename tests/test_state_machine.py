import json
import logging

import pytest

from medquiz.engine.assembler import assemble_units
from medquiz.engine.errors import (
    IncompleteSelection,
    InvalidTransition,
    NoContent,
    NothingToRetry,
    UnknownOption,
)
from medquiz.engine.machine import SessionStateMachine
from medquiz.engine.states import Effect, SessionPhase, SessionState
from medquiz.engine.types import CaseGroupItem, OptionItem, Outcome, QuestionItem, QuizSettings


def _course():
    questions = [
        QuestionItem(
            id="q1",
            text="q1",
            group_id="g1",
            order_index=2,
            options=(
                OptionItem(id="a", text="a", is_correct=True),
                OptionItem(id="b", text="b", is_correct=True),
                OptionItem(id="c", text="c"),
            ),
        ),
        QuestionItem(
            id="q2",
            text="q2",
            group_id="g1",
            order_index=1,
            options=(OptionItem(id="d", text="d", is_correct=True), OptionItem(id="e", text="e")),
        ),
        QuestionItem(id="q3", text="q3", options=(OptionItem(id="f", text="f", is_correct=True), OptionItem(id="g", text="g"))),
        QuestionItem(id="q4", text="q4", options=(OptionItem(id="h", text="h", is_correct=True), OptionItem(id="i", text="i"))),
    ]
    units = assemble_units(questions, [CaseGroupItem(id="g1", title="Case")])
    return units, questions


def _machine(**settings) -> SessionStateMachine:
    units, questions = _course()
    machine = SessionStateMachine(units, questions, session_id="s-1")
    machine.open()
    machine.configure(QuizSettings(**settings))
    return machine


def _answer(machine: SessionStateMachine, picks: dict[str, list[str]]) -> list[Effect]:
    for question_id, options in picks.items():
        for option_id in options:
            machine.select_option(question_id, option_id)
    return machine.submit_unit()


def test_empty_course_is_rejected():
    with pytest.raises(NoContent):
        SessionStateMachine([], [])


def test_configure_without_saved_progress_starts_clock():
    units, questions = _course()
    machine = SessionStateMachine(units, questions)
    assert machine.open() == []
    assert machine.phase is SessionPhase.CONFIGURING_SETTINGS
    assert machine.configure(QuizSettings()) == [Effect.START_CLOCK]
    assert machine.phase is SessionPhase.ACTIVE


def test_configure_with_saved_progress_waits_for_restore_decision():
    units, questions = _course()
    machine = SessionStateMachine(units, questions)
    machine.open()
    assert machine.configure(QuizSettings(), has_saved_progress=True) == []
    assert machine.phase is SessionPhase.AWAITING_RESTORE_DECISION
    with pytest.raises(InvalidTransition):
        machine.submit_unit()


def test_non_positive_time_limit_is_rejected():
    units, questions = _course()
    machine = SessionStateMachine(units, questions)
    machine.open()
    with pytest.raises(InvalidTransition):
        machine.configure(QuizSettings(time_limit_seconds=0))


def test_submit_scores_whole_case_group_and_reveals():
    machine = _machine()

    effects = _answer(machine, {"q2": ["d"], "q1": ["a"]})

    assert effects == [Effect.SAVE]
    assert machine.state.revealed is True
    assert machine.state.running_score == pytest.approx(1.25)
    assert machine.state.outcomes.outcome_of("q2") is Outcome.CORRECT
    assert machine.state.outcomes.outcome_of("q1") is Outcome.PARTIAL
    assert machine.state.questions_answered == 2
    assert machine.is_unit_answered()


def test_submit_requires_a_pick_for_every_question_of_the_unit():
    machine = _machine()
    machine.select_option("q2", "d")
    with pytest.raises(IncompleteSelection) as excinfo:
        machine.submit_unit()
    assert excinfo.value.details == {"question_ids": ["q1"]}
    assert machine.state.running_score == 0.0


def test_selecting_twice_deselects_and_answers_keep_option_order():
    machine = _machine()
    machine.select_option("q1", "b")
    machine.select_option("q1", "c")
    machine.select_option("q1", "c")
    machine.select_option("q1", "a")
    machine.select_option("q2", "d")
    machine.submit_unit()
    assert machine.state.answers["q1"] == ["a", "b"]


def test_answered_unit_cannot_be_changed():
    machine = _machine()
    _answer(machine, {"q2": ["d"], "q1": ["a", "b"]})
    with pytest.raises(InvalidTransition):
        machine.select_option("q1", "c")
    with pytest.raises(InvalidTransition):
        machine.submit_unit()


def test_foreign_option_or_question_is_rejected():
    machine = _machine()
    with pytest.raises(UnknownOption):
        machine.select_option("q2", "a")
    with pytest.raises(UnknownOption):
        machine.select_option("q3", "f")


def test_hidden_reveal_mode_schedules_auto_advance():
    machine = _machine(reveal_answers_immediately=False)
    effects = _answer(machine, {"q2": ["d"], "q1": ["a", "b"]})
    assert effects == [Effect.SAVE, Effect.SCHEDULE_ADVANCE]
    assert machine.state.revealed is False


def test_full_walk_completes_with_grade_and_seal():
    machine = _machine()
    _answer(machine, {"q2": ["d"], "q1": ["a"]})
    assert machine.advance() == []
    _answer(machine, {"q3": ["g"]})
    machine.advance()
    _answer(machine, {"q4": ["h"]})

    effects = machine.advance()

    assert effects == [Effect.STOP_CLOCK, Effect.SEAL]
    assert machine.phase is SessionPhase.COMPLETED
    # q1: 1 of 2, q2: 1, q3: 0, q4: 1 -> 3 / 5 * 20
    assert machine.state.final_grade == 12
    assert machine.state.running_score == pytest.approx(2.25)


def test_advance_past_unanswered_units_is_allowed():
    machine = _machine()
    machine.advance()
    machine.advance()
    assert machine.advance() == [Effect.STOP_CLOCK, Effect.SEAL]
    assert machine.state.final_grade == 0


def test_retreat_at_first_unit_is_a_no_op():
    machine = _machine()
    assert machine.retreat() == []
    assert machine.state.unit_index == 0
    machine.advance()
    machine.retreat()
    assert machine.state.unit_index == 0


def test_jump_bounds_and_completed_review_navigation():
    machine = _machine()
    machine.jump_to(2)
    assert machine.state.unit_index == 2
    with pytest.raises(InvalidTransition):
        machine.jump_to(3)
    machine.expire()
    machine.jump_to(0)
    assert machine.state.unit_index == 0
    with pytest.raises(InvalidTransition):
        machine.advance()


def test_pause_stops_clock_and_blocks_answering():
    machine = _machine()
    assert machine.toggle_pause() == [Effect.STOP_CLOCK, Effect.SAVE]
    assert machine.state.paused
    with pytest.raises(InvalidTransition):
        machine.select_option("q2", "d")
    assert machine.tick() == []
    assert machine.state.elapsed_seconds == 0
    assert machine.toggle_pause() == [Effect.START_CLOCK]
    assert machine.phase is SessionPhase.ACTIVE


def test_bookmark_toggles_current_unit():
    machine = _machine()
    machine.toggle_bookmark()
    assert machine.current_unit.id in machine.state.bookmarked
    machine.toggle_bookmark()
    assert machine.state.bookmarked == set()


def test_tick_reaching_time_limit_expires_session():
    machine = _machine(time_limit_seconds=3)
    _answer(machine, {"q2": ["d"], "q1": ["a", "b"]})
    assert machine.tick() == []
    assert machine.tick() == []
    effects = machine.tick()
    assert effects == [Effect.STOP_CLOCK, Effect.SEAL]
    assert machine.phase is SessionPhase.COMPLETED
    assert machine.state.elapsed_seconds == 3
    assert machine.state.final_grade == 12


def test_retry_runs_only_missed_questions_without_persistence():
    machine = _machine()
    _answer(machine, {"q2": ["d"], "q1": ["a"]})
    machine.advance()
    _answer(machine, {"q3": ["g"]})
    machine.advance()
    _answer(machine, {"q4": ["h"]})
    machine.advance()

    effects = machine.start_retry()

    assert effects == [Effect.DISCARD_RECORD, Effect.START_CLOCK]
    assert machine.state.retry_mode is True
    assert [unit.question_ids for unit in machine.units] == [("q1",), ("q3",)]
    assert machine.state.answers == {}
    assert machine.state.running_score == 0.0

    assert _answer(machine, {"q1": ["a", "b"]}) == [Effect.SCHEDULE_ADVANCE]
    machine.advance()
    _answer(machine, {"q3": ["f"]})
    assert machine.advance() == [Effect.STOP_CLOCK]
    assert machine.state.final_grade == 20


def test_retry_with_nothing_missed_is_refused():
    machine = _machine()
    _answer(machine, {"q2": ["d"], "q1": ["a", "b"]})
    machine.advance()
    _answer(machine, {"q3": ["f"]})
    machine.advance()
    _answer(machine, {"q4": ["h"]})
    machine.advance()
    with pytest.raises(NothingToRetry):
        machine.start_retry()
    assert machine.phase is SessionPhase.COMPLETED


def test_restart_from_scratch_resets_and_discards():
    machine = _machine(time_limit_seconds=60)
    _answer(machine, {"q2": ["d"], "q1": ["a"]})
    machine.tick()

    effects = machine.restart_from_scratch()

    assert effects == [Effect.DISCARD_RECORD, Effect.START_CLOCK]
    assert machine.phase is SessionPhase.ACTIVE
    assert machine.state.answers == {}
    assert machine.state.elapsed_seconds == 0
    assert machine.settings.time_limit_seconds == 60
    assert len(machine.units) == 3


def test_resume_adopts_restored_state():
    units, questions = _course()
    machine = SessionStateMachine(units, questions)
    machine.open()
    machine.configure(QuizSettings(), has_saved_progress=True)
    restored = SessionState(unit_index=1, answers={"q2": ["d"], "q1": ["a", "b"]}, running_score=2.0, elapsed_seconds=40)
    restored.answered_units.add(units[0].id)
    restored.outcomes.add("q1", Outcome.CORRECT)
    restored.outcomes.add("q2", Outcome.CORRECT)

    assert machine.resume(restored) == [Effect.START_CLOCK]

    assert machine.phase is SessionPhase.ACTIVE
    assert machine.state.unit_index == 1
    assert machine.state.elapsed_seconds == 40
    assert machine.is_unit_answered(units[0])


def test_transitions_are_logged_as_json(caplog):
    caplog.set_level(logging.INFO, logger="medquiz.engine.machine")
    machine = _machine()
    machine.toggle_pause()
    transitions = [
        json.loads(record.getMessage())
        for record in caplog.records
        if record.name == "medquiz.engine.machine" and record.getMessage().startswith("{")
    ]
    moves = [(t["from_state"], t["to_state"]) for t in transitions if t["type"] == "state_transition"]
    assert ("configuring_settings", "active") in moves
    assert ("active", "paused") in moves
