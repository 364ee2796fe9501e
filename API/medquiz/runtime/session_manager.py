from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable

from medquiz.content.loader import QuestionBankLoader
from medquiz.core.event_bus import EventBus, event_bus
from medquiz.core.logging import DOMAIN_SESSION, get_domain_logger
from medquiz.core.settings import settings
from medquiz.engine.assembler import assemble_units
from medquiz.engine.errors import InvalidTransition, SessionNotFound
from medquiz.engine.machine import SessionStateMachine
from medquiz.engine.states import Effect, SessionPhase
from medquiz.engine.store import PersistedRecord, ProgressStore
from medquiz.engine.sync import PersistenceSync, rebuild_state
from medquiz.engine.timer import RecurringTask, TimerController
from medquiz.engine.types import CourseContent, QuizSettings
from medquiz.memory.local_cache import LocalFallbackCache
from medquiz.runtime.registry import SessionRegistry

logger = get_domain_logger(__name__, DOMAIN_SESSION)


class QuizSession:
    """Hosts one state machine and carries out the effects its transitions ask for."""

    def __init__(
        self,
        session_id: str,
        learner_id: str,
        content: CourseContent,
        sync: PersistenceSync,
        *,
        events: EventBus = event_bus,
        tick_seconds: float | None = None,
        autosave_seconds: float | None = None,
        advance_delay_seconds: float | None = None,
        on_completed: Callable[[], Awaitable[None]] | None = None,
    ):
        self.session_id = session_id
        self.learner_id = learner_id
        self.course_id = content.course_id
        self.unit_filter = content.unit_filter
        self.sync = sync
        self.events = events
        self.machine = SessionStateMachine(
            assemble_units(content.questions, content.case_groups),
            content.questions,
            session_id=session_id,
        )
        self.clock = TimerController(
            self._on_tick,
            tick_seconds=tick_seconds if tick_seconds is not None else settings.tick_seconds,
            name=f"clock:{session_id}",
        )
        self.autosave = RecurringTask(
            f"autosave:{session_id}",
            autosave_seconds if autosave_seconds is not None else settings.autosave_interval_seconds,
            self._on_autosave,
        )
        self.advance_delay_seconds = (
            advance_delay_seconds if advance_delay_seconds is not None else settings.auto_advance_delay_seconds
        )
        self.has_saved_progress = False
        self.closed = False
        self._on_completed = on_completed
        self._pending: set[asyncio.Task] = set()
        self._advance_handle: asyncio.TimerHandle | None = None
        self._seal_retry: asyncio.Task | None = None

    @property
    def state(self):
        return self.machine.state

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        self.machine.open()
        self.has_saved_progress = await self.sync.find_resumable() is not None
        self.autosave.start()
        self._publish("session_started", {"course_id": self.course_id, "has_saved_progress": self.has_saved_progress})

    async def configure(self, quiz_settings: QuizSettings) -> None:
        await self._apply(self.machine.configure(quiz_settings, has_saved_progress=self.has_saved_progress))

    async def decide_restore(self, resume: bool) -> None:
        if not resume:
            await self._apply(self.machine.restart_from_scratch())
            self.has_saved_progress = False
            self._publish("session_restarted", {"reason": "discarded_saved_progress"})
            return
        if self.machine.phase is not SessionPhase.AWAITING_RESTORE_DECISION:
            raise InvalidTransition(
                f"resume is not allowed while {self.machine.phase.value}",
                phase=self.machine.phase.value,
                operation="resume",
            )
        point = await self.sync.load_restore_point()
        if point is None:
            # The record vanished between the prompt and the decision.
            await self._apply(self.machine.restart_from_scratch())
        else:
            restored = rebuild_state(point, self.machine.units, self.machine.questions)
            await self._apply(self.machine.resume(restored))
            self._publish("session_resumed", {"record_id": point.record_id, "source": point.source})
        self.has_saved_progress = False

    async def close(self) -> None:
        """Leave the session: flush what we have and stop every timer."""
        if self.closed:
            return
        self.closed = True
        self._cancel_scheduled_advance()
        self.clock.stop()
        self.autosave.stop()
        task = self.sync.flush_on_hide(self.state)
        if task is not None:
            self._track(task)
        self._retry_pending_seal()
        await self.drain()

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def hide(self) -> None:
        """The learner's page went to the background."""
        task = self.sync.flush_on_hide(self.state)
        if task is not None:
            self._track(task)
        self._retry_pending_seal()

    # -- learner input --------------------------------------------------------

    async def select_option(self, question_id: str, option_id: str) -> None:
        await self._apply(self.machine.select_option(question_id, option_id))

    async def submit(self) -> None:
        unit_id = self.machine.current_unit.id
        effects = self.machine.submit_unit()
        self._publish(
            "unit_submitted",
            {"unit_id": unit_id, "running_score": self.state.running_score, "questions_answered": self.state.questions_answered},
        )
        await self._apply(effects)

    async def advance(self) -> None:
        self._cancel_scheduled_advance()
        await self._apply(self.machine.advance())

    async def retreat(self) -> None:
        self._cancel_scheduled_advance()
        await self._apply(self.machine.retreat())

    async def jump_to(self, unit_index: int) -> None:
        self._cancel_scheduled_advance()
        await self._apply(self.machine.jump_to(unit_index))

    async def toggle_bookmark(self) -> None:
        await self._apply(self.machine.toggle_bookmark())

    async def toggle_pause(self) -> None:
        await self._apply(self.machine.toggle_pause())

    async def start_retry(self) -> None:
        self._cancel_scheduled_advance()
        await self._settle_pending_seal()
        await self._apply(self.machine.start_retry())
        self._publish("retry_started", {"units": len(self.machine.units), "questions": len(self.machine.questions)})

    async def restart(self) -> None:
        self._cancel_scheduled_advance()
        await self._settle_pending_seal()
        await self._apply(self.machine.restart_from_scratch())
        self._publish("session_restarted", {"reason": "learner_request"})

    # -- effects ------------------------------------------------------------

    async def _apply(self, effects: list[Effect]) -> None:
        for effect in effects:
            if effect is Effect.SAVE:
                self._spawn(self.sync.save(self.state, epoch=self.sync.epoch))
            elif effect is Effect.SCHEDULE_ADVANCE:
                self._schedule_advance()
            elif effect is Effect.SEAL:
                await self.sync.seal(self.state, self.state.final_grade or 0)
            elif effect is Effect.DISCARD_RECORD:
                await self.sync.discard()
            elif effect is Effect.START_CLOCK:
                self.clock.start()
            elif effect is Effect.STOP_CLOCK:
                self.clock.stop()
        if self.machine.phase is SessionPhase.COMPLETED and Effect.STOP_CLOCK in effects:
            self._cancel_scheduled_advance()
            self._publish(
                "session_completed",
                {
                    "final_grade": self.state.final_grade,
                    "running_score": self.state.running_score,
                    "retry_mode": self.state.retry_mode,
                },
            )
            if self._on_completed is not None and not self.state.retry_mode:
                await self._on_completed()

    def _on_tick(self) -> None:
        effects = self.machine.tick()
        if effects:
            # The clock task is stopped by these effects; run them outside it.
            self._spawn(self._apply(effects))

    def _on_autosave(self) -> None:
        state = self.state
        if self.sync.pending_grade is not None:
            self._retry_pending_seal()
        elif self.machine.phase is SessionPhase.ACTIVE and state.questions_answered > 0 and not state.retry_mode:
            self._spawn(self.sync.save(state, epoch=self.sync.epoch))

    def _retry_pending_seal(self) -> None:
        if self.sync.pending_grade is None or self.state.retry_mode:
            return
        if self._seal_retry is not None and not self._seal_retry.done():
            return
        self._seal_retry = self._spawn(self.sync.retry_seal(self.state))

    async def _settle_pending_seal(self) -> None:
        # The completed attempt must land before a new attempt discards in-progress rows.
        self._retry_pending_seal()
        if self._seal_retry is not None:
            await self._seal_retry

    def _schedule_advance(self) -> None:
        self._cancel_scheduled_advance()
        unit_id = self.machine.current_unit.id
        loop = asyncio.get_running_loop()
        self._advance_handle = loop.call_later(
            self.advance_delay_seconds,
            lambda: self._spawn(self._auto_advance(unit_id)),
        )

    async def _auto_advance(self, unit_id: str) -> None:
        self._advance_handle = None
        if self.machine.phase is not SessionPhase.ACTIVE or self.machine.current_unit.id != unit_id:
            return
        await self._apply(self.machine.advance())

    def _cancel_scheduled_advance(self) -> None:
        if self._advance_handle is not None:
            self._advance_handle.cancel()
            self._advance_handle = None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _publish(self, event_type: str, data: dict) -> None:
        self.events.publish(event_type, self.session_id, {"learner_id": self.learner_id, **data})


class SessionManager:
    """Creates, finds, rehydrates and tears down the sessions hosted by this process.

    Sessions nobody has touched for ``idle_seconds`` are closed by a background
    reaper. Their registry entries stay, so a late request rebuilds them.
    """

    def __init__(
        self,
        loader: QuestionBankLoader,
        store: ProgressStore,
        local_cache: LocalFallbackCache,
        registry: SessionRegistry,
        *,
        events: EventBus = event_bus,
        session_options: dict | None = None,
        idle_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.loader = loader
        self.store = store
        self.local_cache = local_cache
        self.registry = registry
        self.events = events
        self.session_options = session_options or {}
        self.idle_seconds = idle_seconds if idle_seconds is not None else settings.session_ttl_seconds
        self._clock = clock
        self._sessions: dict[str, QuizSession] = {}
        self._last_seen: dict[str, float] = {}
        self._rehydrating: dict[str, asyncio.Lock] = {}
        self.reaper = RecurringTask("session-reaper", settings.reaper_interval_seconds, self.reap_idle)

    def __len__(self) -> int:
        return len(self._sessions)

    async def start(self, learner_id: str, course_id: str, unit_filter: str | None = None) -> QuizSession:
        content = await self.loader.load(course_id, unit_filter)
        session = self._build(str(uuid.uuid4()), learner_id, content)
        await session.open()
        self._host(session)
        await self.registry.put(
            session.session_id,
            {"learner_id": learner_id, "course_id": course_id, "unit_filter": unit_filter},
        )
        logger.info("Started session %s for course %s", session.session_id, course_id)
        return session

    async def get(self, session_id: str, learner_id: str) -> QuizSession:
        session = self._sessions.get(session_id)
        if session is None:
            # One rebuild per id; concurrent callers wait for it and share the result.
            async with self._rehydrating.setdefault(session_id, asyncio.Lock()):
                session = self._sessions.get(session_id)
                if session is None:
                    session = await self._rehydrate(session_id)
                    self._host(session)
        if session.learner_id != learner_id:
            raise SessionNotFound("Session not found or expired", session_id=session_id)
        self._last_seen[session_id] = self._clock()
        await self.registry.touch(session_id)
        return session

    async def configure(self, session: QuizSession, quiz_settings: QuizSettings) -> None:
        await session.configure(quiz_settings)
        await self.registry.put(
            session.session_id,
            {
                "settings": {
                    "reveal_answers_immediately": quiz_settings.reveal_answers_immediately,
                    "time_limit_seconds": quiz_settings.time_limit_seconds,
                }
            },
        )

    async def close(self, session_id: str, learner_id: str) -> None:
        session = await self.get(session_id, learner_id)
        await session.close()
        self._evict(session_id)
        await self.registry.forget(session_id)

    async def close_all(self) -> None:
        """Process shutdown: flush every session but keep registry entries for rehydration."""
        self.reaper.stop()
        for session in list(self._sessions.values()):
            await session.close()
        self._sessions.clear()
        self._last_seen.clear()
        self._rehydrating.clear()

    async def reap_idle(self) -> list[str]:
        """Close sessions idle for longer than ``idle_seconds``; returns their ids."""
        cutoff = self._clock() - self.idle_seconds
        idle = [session_id for session_id, seen in self._last_seen.items() if seen <= cutoff]
        for session_id in idle:
            session = self._sessions.get(session_id)
            self._evict(session_id)
            if session is not None:
                await session.close()
        if idle:
            logger.info("Reaped %s idle session(s)", len(idle))
        self._rehydrating = {sid: lock for sid, lock in self._rehydrating.items() if lock.locked()}
        self.registry.purge_expired()
        return idle

    async def incomplete_for(self, learner_id: str, limit: int | None = None) -> list[PersistedRecord]:
        return await self.store.list_active_for_learner(learner_id, limit or settings.recent_incomplete_limit)

    async def completed_for(self, learner_id: str, course_id: str) -> PersistedRecord | None:
        return await self.store.find_latest_completed(learner_id, course_id)

    def _build(self, session_id: str, learner_id: str, content: CourseContent) -> QuizSession:
        sync = PersistenceSync(
            self.store,
            self.local_cache,
            learner_id=learner_id,
            course_id=content.course_id,
            session_id=session_id,
        )

        async def _mark_completed() -> None:
            await self.registry.put(session_id, {"completed": True})

        return QuizSession(
            session_id,
            learner_id,
            content,
            sync,
            events=self.events,
            on_completed=_mark_completed,
            **self.session_options,
        )

    async def _rehydrate(self, session_id: str) -> QuizSession:
        meta = await self.registry.get(session_id)
        if not meta or meta.get("completed"):
            raise SessionNotFound("Session not found or expired", session_id=session_id)
        content = await self.loader.load(meta["course_id"], meta.get("unit_filter"))
        session = self._build(session_id, meta["learner_id"], content)
        await session.open()
        try:
            stored_settings = meta.get("settings")
            if stored_settings is not None:
                await session.configure(QuizSettings(**stored_settings))
                if session.machine.phase is SessionPhase.AWAITING_RESTORE_DECISION:
                    await session.decide_restore(resume=True)
        except Exception:
            await session.close()
            raise
        logger.info("Rehydrated session %s (phase=%s)", session_id, session.machine.phase.value)
        return session

    def _host(self, session: QuizSession) -> None:
        self._sessions[session.session_id] = session
        self._last_seen[session.session_id] = self._clock()

    def _evict(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)
