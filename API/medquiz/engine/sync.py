"""Keep a session's progress durable across reloads, tab closes and restarts.

Three places hold progress: the live ``SessionState``, the remote
``quiz_progress`` row and the local fallback cache. Every remote write sends a
complete snapshot of the live state, mirrored first into the local cache when
the record id is known, so a write that never reaches the database still leaves
a recoverable copy behind. The local entry is dropped once the record is sealed
or the attempt is discarded.
"""
from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from medquiz.core import sync_metrics
from medquiz.core.logging import DOMAIN_PERSISTENCE, get_domain_logger
from medquiz.core.resilience import retry_with_backoff
from medquiz.engine.errors import ActiveRecordConflict, SealedRecordError
from medquiz.engine.scoring import evaluate_question
from medquiz.engine.states import SessionState
from medquiz.engine.store import PersistedRecord, ProgressPayload, ProgressStore
from medquiz.engine.types import AnswerableUnit, Outcome, QuestionItem
from medquiz.memory.local_cache import LocalFallbackCache

logger = get_domain_logger(__name__, DOMAIN_PERSISTENCE)

SEAL_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, ConnectionError, TimeoutError, OSError)


@dataclass(frozen=True)
class RestorePoint:
    record_id: str
    current_unit_index: int
    answers: dict[str, list[str]]
    running_score: float
    questions_answered: int
    incorrect_question_ids: frozenset[str]
    partially_correct_question_ids: frozenset[str]
    elapsed_seconds: int
    source: str = "remote"


class PersistenceSync:
    def __init__(
        self,
        store: ProgressStore,
        local_cache: LocalFallbackCache,
        *,
        learner_id: str,
        course_id: str,
        session_id: str = "",
    ):
        self._store = store
        self._local = local_cache
        self.learner_id = learner_id
        self.course_id = course_id
        self.session_id = session_id
        self.record_id: str | None = None
        self.sealed = False
        # Bumped whenever the attempt a write belongs to is sealed or thrown away.
        self.epoch = 0
        # Grade of a completed attempt whose seal has not reached the store yet.
        self.pending_grade: int | None = None
        self._lock = asyncio.Lock()

    # -- startup resolution ------------------------------------------------

    async def find_resumable(self) -> PersistedRecord | None:
        """The in-progress record worth offering to resume, if any.

        An in-progress record without answers is adopted silently so later
        writes update it instead of colliding with it.
        """
        record = await self._store.find_active(self.learner_id, self.course_id)
        if record is None:
            return None
        self.record_id = record.id
        local = self._local.read(record.id)
        if record.answers or record.questions_answered > 0 or (local and local.answers):
            return record
        return None

    async def find_completed(self) -> PersistedRecord | None:
        return await self._store.find_latest_completed(self.learner_id, self.course_id)

    async def load_restore_point(self) -> RestorePoint | None:
        record = await self._store.find_active(self.learner_id, self.course_id)
        if record is None:
            return None
        self.record_id = record.id
        try:
            await self._store.touch(record.id)
        except SQLAlchemyError as exc:
            logger.warning("Could not touch record %s on resume: %s", record.id, exc)

        answers = dict(record.answers or {})
        running_score = float(record.running_score or 0.0)
        questions_answered = int(record.questions_answered or 0)
        unit_index = int(record.current_unit_index or 0)
        elapsed = 0
        if record.created_at and record.updated_at:
            elapsed = max(0, int((record.updated_at - record.created_at).total_seconds()))
        source = "remote"

        local = self._local.read(record.id)
        if local is not None:
            elapsed = local.elapsed_seconds
            remote_stamp = record.updated_at
            if remote_stamp is None or (local.saved_at > remote_stamp and len(local.answers) >= len(answers)):
                # The last remote write never landed; the local mirror is ahead.
                answers = dict(local.answers)
                running_score = local.running_score
                questions_answered = local.questions_answered
                unit_index = local.current_unit_index
                source = "local"

        return RestorePoint(
            record_id=record.id,
            current_unit_index=unit_index,
            answers=answers,
            running_score=running_score,
            questions_answered=questions_answered,
            incorrect_question_ids=frozenset(record.incorrect_question_ids or ()),
            partially_correct_question_ids=frozenset(record.partially_correct_question_ids or ()),
            elapsed_seconds=elapsed,
            source=source,
        )

    # -- write paths --------------------------------------------------------

    async def save(self, state: SessionState, *, epoch: int | None = None) -> bool:
        """Best-effort snapshot write. Failures are logged and left for the next autosave.

        ``epoch`` is the value of :attr:`epoch` when the write was queued. A
        write queued before the attempt was discarded or sealed is dropped.
        """
        if state.retry_mode:
            return False
        async with self._lock:
            if epoch is not None and epoch != self.epoch:
                sync_metrics.record(sync_metrics.SAVE_SKIPPED_STALE)
                logger.info("Dropping save queued for a discarded attempt in session %s", self.session_id)
                return False
            if self.sealed:
                sync_metrics.record(sync_metrics.SAVE_SKIPPED_SEALED)
                logger.debug("Skipping save for sealed record %s", self.record_id)
                return False
            payload = _payload(state)
            self._mirror_locally(state)
            try:
                await self._write(payload)
            except SealedRecordError:
                self.sealed = True
                sync_metrics.record(sync_metrics.SAVE_SKIPPED_SEALED)
                logger.error("Refused to overwrite sealed record %s", self.record_id)
                return False
            except Exception as exc:
                sync_metrics.record(sync_metrics.SAVE_FAILED)
                logger.warning("Progress save failed for session %s, will retry on next autosave: %s", self.session_id, exc)
                return False
            self._mirror_locally(state)
            sync_metrics.record(sync_metrics.SAVE_OK)
            return True

    def flush_on_hide(self, state: SessionState) -> asyncio.Task | None:
        """Synchronous local mirror, then a fire-and-forget remote save.

        Never blocks: the caller may be tearing down.
        """
        if self.sealed or state.retry_mode or state.completed:
            return None
        if self.record_id:
            self._mirror_locally(state)
            sync_metrics.record(sync_metrics.LOCAL_FLUSH)
        if not self.record_id and state.questions_answered == 0:
            return None
        return asyncio.get_running_loop().create_task(self.save(state, epoch=self.epoch))

    async def seal(self, state: SessionState, final_grade: int) -> bool:
        """Write the completed attempt with its grade. A failed seal stays pending
        until :meth:`retry_seal` gets it through."""
        if state.retry_mode:
            return False
        async with self._lock:
            if self.sealed:
                logger.error("Record %s is already sealed; ignoring second seal", self.record_id)
                return False
            payload = _payload(state)
            payload.is_completed = True
            payload.final_grade = float(final_grade)
            try:
                await retry_with_backoff(
                    lambda: self._seal_once(payload),
                    max_retries=3,
                    retryable_errors=SEAL_RETRYABLE_ERRORS,
                )
            except SealedRecordError:
                logger.error("Record %s was sealed elsewhere", self.record_id)
            except Exception as exc:
                self.pending_grade = final_grade
                sync_metrics.record(sync_metrics.SEAL_FAILED)
                logger.warning("Sealing failed for session %s, will retry on next autosave: %s", self.session_id, exc)
                return False
            self.sealed = True
            self.pending_grade = None
            self.epoch += 1
            if self.record_id:
                self._local.clear(self.record_id)
            sync_metrics.record(sync_metrics.SEAL_OK)
            logger.info("Sealed record %s with final grade %s", self.record_id, final_grade)
            return True

    async def retry_seal(self, state: SessionState) -> bool:
        if self.pending_grade is None or self.sealed:
            return False
        sync_metrics.record(sync_metrics.SEAL_RETRIED)
        return await self.seal(state, self.pending_grade)

    async def discard(self) -> list[str]:
        """Delete the in-progress record(s) for this learner and course, remote and local."""
        async with self._lock:
            self.epoch += 1
            self.pending_grade = None
            try:
                removed = await self._store.delete_active(self.learner_id, self.course_id)
            except Exception as exc:
                # A stale row left behind is overwritten through conflict recovery.
                logger.warning("Could not delete in-progress record for session %s: %s", self.session_id, exc)
                removed = []
            for record_id in set(removed) | ({self.record_id} if self.record_id else set()):
                self._local.clear(record_id)
            self.record_id = None
            self.sealed = False
            return removed

    # -- internals ----------------------------------------------------------

    async def _write(self, payload: ProgressPayload) -> None:
        if self.record_id:
            if await self._store.update(self.record_id, payload):
                return
            logger.info("Record %s disappeared; creating a new one", self.record_id)
            self.record_id = None
        try:
            record = await self._store.insert(self.learner_id, self.course_id, payload)
        except ActiveRecordConflict:
            existing = await self._store.find_active(self.learner_id, self.course_id)
            if existing is None:
                raise
            self.record_id = existing.id
            sync_metrics.record(sync_metrics.CONFLICT_RECOVERED)
            logger.info("Adopted concurrently created record %s for session %s", existing.id, self.session_id)
            if not await self._store.update(existing.id, payload):
                raise
            return
        self.record_id = record.id

    async def _seal_once(self, payload: ProgressPayload) -> None:
        if self.record_id and await self._store.update(self.record_id, payload):
            return
        record = await self._store.insert(self.learner_id, self.course_id, payload)
        self.record_id = record.id

    def _mirror_locally(self, state: SessionState) -> None:
        if not self.record_id:
            return
        try:
            self._local.write(
                self.record_id,
                elapsed_seconds=state.elapsed_seconds,
                answers={qid: list(options) for qid, options in state.answers.items()},
                running_score=state.running_score,
                questions_answered=state.questions_answered,
                current_unit_index=state.unit_index,
            )
        except OSError as exc:
            logger.warning("Local fallback write failed for record %s: %s", self.record_id, exc)


def _payload(state: SessionState) -> ProgressPayload:
    return ProgressPayload(
        current_unit_index=state.unit_index,
        answers={qid: list(options) for qid, options in state.answers.items()},
        running_score=state.running_score,
        questions_answered=state.questions_answered,
        incorrect_question_ids=sorted(state.outcomes.incorrect),
        partially_correct_question_ids=sorted(state.outcomes.partial),
    )


def rebuild_state(
    point: RestorePoint,
    units: Sequence[AnswerableUnit],
    questions: Sequence[QuestionItem],
) -> SessionState:
    """Reconstruct session state from a restore point against the current content.

    Answers for questions that no longer exist are skipped. Correctness comes
    from the persisted incorrect/partial lists and is re-derived for the rest.
    """
    by_id = {question.id: question for question in questions}
    state = SessionState()
    for question_id, options in point.answers.items():
        question = by_id.get(question_id)
        if question is None or not isinstance(options, (list, tuple)):
            logger.warning("Skipping restored answer for unknown question %s", question_id)
            continue
        picked = [str(option) for option in options]
        state.answers[question_id] = picked
        if question_id in point.incorrect_question_ids:
            outcome = Outcome.INCORRECT
        elif question_id in point.partially_correct_question_ids:
            outcome = Outcome.PARTIAL
        else:
            outcome = evaluate_question(question.correct_option_ids, picked).outcome
        state.outcomes.add(question_id, outcome)

    state.answered_units = {
        unit.id for unit in units if unit.question_ids and all(qid in state.answers for qid in unit.question_ids)
    }
    state.running_score = point.running_score
    state.unit_index = min(max(0, point.current_unit_index), max(0, len(units) - 1))
    state.elapsed_seconds = max(0, point.elapsed_seconds)
    return state
