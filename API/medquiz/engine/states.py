from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from medquiz.engine.types import OutcomeSets


class SessionPhase(str, Enum):
    NOT_STARTED = "not_started"
    CONFIGURING_SETTINGS = "configuring_settings"
    AWAITING_RESTORE_DECISION = "awaiting_restore_decision"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class Effect(str, Enum):
    """Side effects a transition asks its host to carry out, in list order."""

    SAVE = "save"
    SCHEDULE_ADVANCE = "schedule_advance"
    SEAL = "seal"
    DISCARD_RECORD = "discard_record"
    START_CLOCK = "start_clock"
    STOP_CLOCK = "stop_clock"


@dataclass
class SessionState:
    phase: SessionPhase = SessionPhase.NOT_STARTED
    unit_index: int = 0
    # Transient picks for questions not yet submitted.
    selections: dict[str, set[str]] = field(default_factory=dict)
    # Submitted answers, append-only until a full reset.
    answers: dict[str, list[str]] = field(default_factory=dict)
    answered_units: set[str] = field(default_factory=set)
    outcomes: OutcomeSets = field(default_factory=OutcomeSets)
    bookmarked: set[str] = field(default_factory=set)
    elapsed_seconds: int = 0
    retry_mode: bool = False
    running_score: float = 0.0
    revealed: bool = False
    final_grade: int | None = None

    @property
    def paused(self) -> bool:
        return self.phase is SessionPhase.PAUSED

    @property
    def completed(self) -> bool:
        return self.phase is SessionPhase.COMPLETED

    @property
    def questions_answered(self) -> int:
        return len(self.answers)

    def progress_view(self) -> dict:
        """The fields a save/restore cycle must reproduce exactly."""
        return {
            "unit_index": self.unit_index,
            "answers": {qid: sorted(options) for qid, options in self.answers.items()},
            "answered_units": sorted(self.answered_units),
            "running_score": self.running_score,
            "correct": sorted(self.outcomes.correct),
            "partial": sorted(self.outcomes.partial),
            "incorrect": sorted(self.outcomes.incorrect),
        }
