from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from medquiz.content.loader import QuestionBankLoader
from medquiz.core.event_bus import EventBus
from medquiz.engine.errors import NoContent, SessionNotFound
from medquiz.engine.states import SessionPhase
from medquiz.engine.store import ProgressStore
from medquiz.engine.types import QuizSettings
from medquiz.memory.local_cache import LocalFallbackCache
from medquiz.runtime.registry import SessionRegistry
from medquiz.runtime.session_manager import SessionManager

FAST = {"tick_seconds": 0.01, "autosave_seconds": 3600, "advance_delay_seconds": 0.01}


def _manager(
    session_factory,
    tmp_path: Path,
    registry: SessionRegistry | None = None,
    events: EventBus | None = None,
    **options,
):
    return SessionManager(
        QuestionBankLoader(session_factory),
        ProgressStore(session_factory),
        LocalFallbackCache(tmp_path / "local"),
        registry or SessionRegistry(backend="memory"),
        events=events or EventBus(),
        session_options=FAST,
        **options,
    )


async def _answer_current(session, *option_ids: str) -> None:
    for question in session.machine.current_questions():
        for option_id in option_ids:
            if option_id in question.option_ids:
                await session.select_option(question.id, option_id)
    await session.submit()


@pytest.mark.asyncio
async def test_hidden_reveal_mode_auto_advances_and_saves(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    manager = _manager(session_factory, tmp_path)
    session = await manager.start("learner-a", course.course_id)
    await manager.configure(session, QuizSettings(reveal_answers_immediately=False))

    await _answer_current(session, course.options["d"], course.options["a"], course.options["b"])
    await asyncio.sleep(0.1)
    await session.drain()

    assert session.state.unit_index == 1
    record = await manager.store.find_active("learner-a", course.course_id)
    assert record is not None
    assert record.questions_answered == 2
    await manager.close_all()


@pytest.mark.asyncio
async def test_manual_navigation_cancels_pending_auto_advance(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    manager = _manager(session_factory, tmp_path)
    session = await manager.start("learner-b", course.course_id)
    await manager.configure(session, QuizSettings(reveal_answers_immediately=False))

    await _answer_current(session, course.options["d"], course.options["a"], course.options["b"])
    await session.jump_to(2)
    await asyncio.sleep(0.05)

    assert session.state.unit_index == 2
    await manager.close_all()


@pytest.mark.asyncio
async def test_time_limit_expiry_seals_attempt(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    events = EventBus()
    manager = _manager(session_factory, tmp_path, events=events)
    session = await manager.start("learner-c", course.course_id)
    await manager.configure(session, QuizSettings(time_limit_seconds=3))
    await _answer_current(session, course.options["d"], course.options["a"], course.options["b"])

    for _ in range(50):
        if session.state.completed:
            break
        await asyncio.sleep(0.02)
    await session.drain()

    assert session.machine.phase is SessionPhase.COMPLETED
    assert session.clock.running is False
    assert session.state.final_grade == 12
    completed = await manager.completed_for("learner-c", course.course_id)
    assert completed is not None
    assert completed.final_grade == pytest.approx(12.0)
    assert [e["type"] for e in events.history(session.session_id)][-1] == "session_completed"
    await manager.close_all()


@pytest.mark.asyncio
async def test_pause_stops_and_resume_restarts_clock(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    manager = _manager(session_factory, tmp_path)
    session = await manager.start("learner-d", course.course_id)
    await manager.configure(session, QuizSettings())
    assert session.clock.running is True

    await session.toggle_pause()
    frozen = session.state.elapsed_seconds
    await asyncio.sleep(0.05)

    assert session.clock.running is False
    assert session.state.elapsed_seconds == frozen
    await session.toggle_pause()
    assert session.clock.running is True
    await manager.close_all()


@pytest.mark.asyncio
async def test_resume_offered_and_restores_progress(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    events = EventBus()
    manager = _manager(session_factory, tmp_path, events=events)
    first = await manager.start("learner-e", course.course_id)
    await manager.configure(first, QuizSettings())
    await _answer_current(first, course.options["d"], course.options["a"])
    await first.advance()
    await manager.close(first.session_id, "learner-e")

    second = await manager.start("learner-e", course.course_id)
    assert second.has_saved_progress is True
    await manager.configure(second, QuizSettings())
    assert second.machine.phase is SessionPhase.AWAITING_RESTORE_DECISION

    await second.decide_restore(resume=True)

    assert second.machine.phase is SessionPhase.ACTIVE
    assert second.state.unit_index == 1
    assert second.state.running_score == pytest.approx(1.25)
    assert set(second.state.answers) == {course.questions["q1"], course.questions["q2"]}
    assert "session_resumed" in [e["type"] for e in events.history(second.session_id)]
    await manager.close_all()


@pytest.mark.asyncio
async def test_declining_restore_discards_saved_attempt(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    manager = _manager(session_factory, tmp_path)
    first = await manager.start("learner-f", course.course_id)
    await manager.configure(first, QuizSettings())
    await _answer_current(first, course.options["d"], course.options["a"])
    await manager.close(first.session_id, "learner-f")

    second = await manager.start("learner-f", course.course_id)
    await manager.configure(second, QuizSettings())
    await second.decide_restore(resume=False)

    assert second.machine.phase is SessionPhase.ACTIVE
    assert second.state.answers == {}
    assert await manager.store.find_active("learner-f", course.course_id) is None
    await manager.close_all()


@pytest.mark.asyncio
async def test_retry_attempt_leaves_sealed_record_alone(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    manager = _manager(session_factory, tmp_path)
    session = await manager.start("learner-g", course.course_id)
    await manager.configure(session, QuizSettings())
    await _answer_current(session, course.options["d"], course.options["a"])
    await session.jump_to(2)
    await _answer_current(session, course.options["i"])
    await session.advance()
    await session.drain()
    sealed = await manager.completed_for("learner-g", course.course_id)

    await session.start_retry()
    await _answer_current(session, course.options["a"], course.options["b"])
    await asyncio.sleep(0.05)
    await session.drain()

    assert session.state.retry_mode is True
    assert await manager.store.find_active("learner-g", course.course_id) is None
    again = await manager.completed_for("learner-g", course.course_id)
    assert again.id == sealed.id
    assert again.final_grade == sealed.final_grade
    await manager.close_all()


@pytest.mark.asyncio
async def test_rehydration_in_another_process_resumes_automatically(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    registry = SessionRegistry(backend="memory")
    original = _manager(session_factory, tmp_path, registry=registry)
    session = await original.start("learner-h", course.course_id)
    await original.configure(session, QuizSettings(time_limit_seconds=600))
    await _answer_current(session, course.options["d"], course.options["a"], course.options["b"])
    await original.close_all()

    restarted = _manager(session_factory, tmp_path, registry=registry)
    rebuilt = await restarted.get(session.session_id, "learner-h")

    assert rebuilt.session_id == session.session_id
    assert rebuilt.machine.phase is SessionPhase.ACTIVE
    assert rebuilt.machine.settings.time_limit_seconds == 600
    assert rebuilt.state.running_score == pytest.approx(2.0)
    with pytest.raises(SessionNotFound):
        await restarted.get(session.session_id, "someone-else")
    await restarted.close_all()


@pytest.mark.asyncio
async def test_unknown_session_and_empty_course(session_factory, tmp_path):
    manager = _manager(session_factory, tmp_path)
    with pytest.raises(SessionNotFound):
        await manager.get("missing", "learner-i")
    with pytest.raises(NoContent):
        await manager.start("learner-i", "no-such-course")


@pytest.mark.asyncio
async def test_restart_drops_saves_queued_for_the_old_attempt(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    manager = _manager(session_factory, tmp_path)
    session = await manager.start("learner-j", course.course_id)
    await manager.configure(session, QuizSettings())
    await _answer_current(session, course.options["d"], course.options["a"])
    await session.advance()
    await _answer_current(session, course.options["g"])

    await session.restart()
    await session.drain()

    assert session.state.answers == {}
    assert await manager.store.find_active("learner-j", course.course_id) is None
    await manager.close_all()


@pytest.mark.asyncio
async def test_retry_drops_saves_queued_for_the_main_attempt(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    manager = _manager(session_factory, tmp_path)
    session = await manager.start("learner-k", course.course_id)
    await manager.configure(session, QuizSettings())
    await _answer_current(session, course.options["d"], course.options["c"])

    await session.start_retry()
    await session.drain()

    assert session.state.retry_mode is True
    assert await manager.store.find_active("learner-k", course.course_id) is None
    await manager.close_all()


@pytest.mark.asyncio
async def test_seal_lost_to_outage_lands_when_learner_exits(session_factory, seed_course, tmp_path, monkeypatch):
    course = await seed_course(session_factory)
    manager = _manager(session_factory, tmp_path)
    real_update = manager.store.update
    outage = {"left": 3}

    async def _flaky_update(record_id, payload):
        if payload.is_completed and outage["left"]:
            outage["left"] -= 1
            raise OperationalError("UPDATE quiz_progress", {}, Exception("connection lost"))
        return await real_update(record_id, payload)

    monkeypatch.setattr(manager.store, "update", _flaky_update)
    session = await manager.start("learner-l", course.course_id)
    await manager.configure(session, QuizSettings())
    await _answer_current(session, course.options["d"], course.options["a"])
    await session.jump_to(2)
    await _answer_current(session, course.options["i"])
    await session.drain()
    await session.advance()
    await session.drain()

    assert session.machine.phase is SessionPhase.COMPLETED
    assert session.sync.pending_grade == session.state.final_grade
    assert await manager.completed_for("learner-l", course.course_id) is None

    await manager.close(session.session_id, "learner-l")

    assert await manager.store.find_active("learner-l", course.course_id) is None
    completed = await manager.completed_for("learner-l", course.course_id)
    assert completed is not None
    assert completed.final_grade == pytest.approx(float(session.state.final_grade))


@pytest.mark.asyncio
async def test_idle_sessions_are_reaped_and_rebuilt_on_demand(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    now = {"t": 1000.0}
    manager = _manager(session_factory, tmp_path, idle_seconds=60, clock=lambda: now["t"])
    session = await manager.start("learner-m", course.course_id)
    await manager.configure(session, QuizSettings())
    await _answer_current(session, course.options["d"], course.options["a"])

    now["t"] += 30
    assert await manager.reap_idle() == []
    now["t"] += 31

    assert await manager.reap_idle() == [session.session_id]
    assert len(manager) == 0
    assert session.closed is True
    assert session.autosave.running is False
    record = await manager.store.find_active("learner-m", course.course_id)
    assert record.questions_answered == 2

    rebuilt = await manager.get(session.session_id, "learner-m")
    assert rebuilt is not session
    assert rebuilt.machine.phase is SessionPhase.ACTIVE
    assert rebuilt.state.questions_answered == 2
    await manager.close_all()


@pytest.mark.asyncio
async def test_concurrent_requests_rehydrate_one_session(session_factory, seed_course, tmp_path):
    course = await seed_course(session_factory)
    registry = SessionRegistry(backend="memory")
    first = _manager(session_factory, tmp_path, registry=registry)
    session = await first.start("learner-n", course.course_id)
    await first.configure(session, QuizSettings())
    await first.close_all()

    manager = _manager(session_factory, tmp_path, registry=registry)
    a, b = await asyncio.gather(
        manager.get(session.session_id, "learner-n"),
        manager.get(session.session_id, "learner-n"),
    )

    assert a is b
    assert len(manager) == 1
    await manager.close_all()
