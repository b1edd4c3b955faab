from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from wizard_validation import StepValidation, ValidationRegistry

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    NOT_VISITED = "not_visited"
    INCOMPLETE = "incomplete"
    HAS_ERRORS = "has_errors"
    COMPLETE = "complete"


class ProgressStateError(ValueError):
    pass


@dataclass(frozen=True)
class StepConfig:
    id: str
    title: str


@dataclass(frozen=True)
class SubmissionResult:
    ok: bool
    incomplete_steps: Tuple[Tuple[int, str], ...] = ()

    @property
    def message(self) -> str:
        if self.ok:
            return "All steps complete."
        names = ", ".join(title for _, title in self.incomplete_steps)
        return f"Cannot submit: complete these steps first: {names}"


@dataclass(frozen=True)
class ProgressSummary:
    completed: int
    visited: int
    total: int
    has_errors: bool
    percentage: int
    is_complete: bool


@dataclass
class ProgressState:
    current_step: int = 0
    statuses: Dict[int, StepStatus] = field(default_factory=dict)
    last_validity: Dict[int, bool] = field(default_factory=dict)
    last_saved_at: Optional[datetime] = None
    last_modified_step: Optional[int] = None
    last_modified_at: Optional[datetime] = None

    @property
    def can_proceed(self) -> bool:
        return self.last_validity.get(self.current_step, False)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressStateMachine:
    """
    Per-session step progress for a multi-step builder.

    Holds no validation rules of its own: `validate_step` asks the injected registry and records the
    outcome. Navigation is never gated; completeness is reconciled only at `check_submission`.
    """

    def __init__(self, total_steps: int, registry: ValidationRegistry, *, state: Optional[ProgressState] = None) -> None:
        if total_steps <= 0:
            raise ProgressStateError("total_steps must be a positive integer")
        self.total_steps = int(total_steps)
        self.registry = registry
        self.state = state if state is not None else ProgressState()
        self._normalize()

    def _normalize(self) -> None:
        st = self.state
        st.current_step = max(0, min(int(st.current_step), self.total_steps - 1))
        st.statuses = {
            i: StepStatus(st.statuses.get(i, StepStatus.NOT_VISITED)) for i in range(self.total_steps)
        }
        st.last_validity = {int(k): bool(v) for k, v in st.last_validity.items() if 0 <= int(k) < self.total_steps}
        # A complete status without a passing validation on record cannot be trusted after a restore.
        for i, status in st.statuses.items():
            if status == StepStatus.COMPLETE and not st.last_validity.get(i, False):
                st.statuses[i] = StepStatus.INCOMPLETE

    def _check_index(self, step: int) -> int:
        if not isinstance(step, int) or isinstance(step, bool) or not 0 <= step < self.total_steps:
            raise ProgressStateError(f"Step index {step!r} out of range [0, {self.total_steps})")
        return step

    @property
    def current_step(self) -> int:
        return self.state.current_step

    @property
    def can_proceed(self) -> bool:
        return self.state.can_proceed

    def set_current_step(self, step: int) -> None:
        self._check_index(step)
        self.state.current_step = step
        if self.state.statuses[step] == StepStatus.NOT_VISITED:
            self.state.statuses[step] = StepStatus.INCOMPLETE

    def validate_step(self, step: int, data: Mapping[str, Any]) -> StepValidation:
        """
        Validate `step` against `data` as passed now and record the outcome.

        Pass -> complete, fail -> has_errors. Validator faults arrive here as ordinary failures.
        """
        self._check_index(step)
        result = self.registry.validate(step, data)
        self.state.last_validity[step] = result.is_valid
        self.state.statuses[step] = StepStatus.COMPLETE if result.is_valid else StepStatus.HAS_ERRORS
        if result.fault:
            logger.warning("Step %s marked has_errors after a validator fault", step)
        return result

    def mark_step_complete(self, step: int) -> None:
        self._check_index(step)
        if not self.state.last_validity.get(step, False):
            raise ProgressStateError(f"Step {step} has no passing validation on record; validate it before marking complete")
        self.state.statuses[step] = StepStatus.COMPLETE

    def mark_step_incomplete(self, step: int) -> None:
        self._check_index(step)
        self.state.statuses[step] = StepStatus.INCOMPLETE

    def update_step_status(self, step: int, status: StepStatus) -> None:
        self._check_index(step)
        status = StepStatus(status)
        if status == StepStatus.COMPLETE:
            self.mark_step_complete(step)
            return
        self.state.statuses[step] = status
        if status == StepStatus.HAS_ERRORS:
            self.state.last_validity[step] = False

    def reset_step_status(self, step: int) -> None:
        self._check_index(step)
        self.state.statuses[step] = StepStatus.NOT_VISITED
        self.state.last_validity.pop(step, None)

    def note_modified(self, step: int, *, at: Optional[datetime] = None) -> None:
        """
        Record an edit to `step`. The data changed, so the previous validation outcome no longer applies.
        """
        self._check_index(step)
        self.state.last_modified_step = step
        self.state.last_modified_at = at or _utcnow()
        self.state.last_validity.pop(step, None)
        if self.state.statuses[step] in (StepStatus.NOT_VISITED, StepStatus.COMPLETE):
            self.state.statuses[step] = StepStatus.INCOMPLETE

    def record_saved(self, at: Optional[datetime] = None) -> None:
        self.state.last_saved_at = at or _utcnow()

    def get_step_status(self, step: int) -> StepStatus:
        self._check_index(step)
        return self.state.statuses[step]

    def get_all_steps_status(self) -> Dict[int, StepStatus]:
        return dict(self.state.statuses)

    def completed_steps(self) -> List[int]:
        return [i for i, s in self.state.statuses.items() if s == StepStatus.COMPLETE]

    def get_progress_percentage(self) -> int:
        return _round_half_up(len(self.completed_steps()) / self.total_steps * 100)

    def get_progress_summary(self) -> ProgressSummary:
        completed = len(self.completed_steps())
        visited = sum(1 for s in self.state.statuses.values() if s != StepStatus.NOT_VISITED)
        return ProgressSummary(
            completed=completed,
            visited=visited,
            total=self.total_steps,
            has_errors=any(s == StepStatus.HAS_ERRORS for s in self.state.statuses.values()),
            percentage=self.get_progress_percentage(),
            is_complete=completed == self.total_steps,
        )

    def next_incomplete_step(self, after: Optional[int] = None) -> Optional[int]:
        """
        First step after `after` (default: current) that is not complete, wrapping around.
        Returns None when every step is complete.
        """
        start = self.current_step if after is None else self._check_index(after)
        for offset in range(1, self.total_steps + 1):
            idx = (start + offset) % self.total_steps
            if self.state.statuses[idx] != StepStatus.COMPLETE:
                return idx
        return None

    def check_submission(self, steps: Sequence[StepConfig]) -> SubmissionResult:
        if len(steps) != self.total_steps:
            raise ProgressStateError(f"Expected {self.total_steps} step configs, got {len(steps)}")
        incomplete = tuple(
            (i, steps[i].title) for i in range(self.total_steps) if self.state.statuses[i] != StepStatus.COMPLETE
        )
        result = SubmissionResult(ok=not incomplete, incomplete_steps=incomplete)
        if not result.ok:
            logger.info("Submission refused; incomplete steps: %s", [title for _, title in incomplete])
        return result

    def clear(self) -> None:
        self.state = ProgressState()
        self._normalize()

    def to_dict(self) -> Dict[str, Any]:
        st = self.state
        return {
            "currentStep": st.current_step,
            "statuses": {str(i): s.value for i, s in st.statuses.items()},
            "lastValidity": {str(i): v for i, v in st.last_validity.items()},
            "canProceed": st.can_proceed,
            "lastSavedAt": st.last_saved_at.isoformat() if st.last_saved_at else None,
            "lastModifiedStep": st.last_modified_step,
            "lastModifiedAt": st.last_modified_at.isoformat() if st.last_modified_at else None,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], total_steps: int, registry: ValidationRegistry) -> "ProgressStateMachine":
        return cls(total_steps, registry, state=cls.state_from_dict(raw))

    @staticmethod
    def state_from_dict(raw: Mapping[str, Any]) -> ProgressState:
        """
        Inverse of `to_dict`. Unknown or malformed entries are dropped rather than rejected, so an
        older draft still resumes.
        """
        statuses: Dict[int, StepStatus] = {}
        for k, v in dict(raw.get("statuses") or {}).items():
            try:
                statuses[int(k)] = StepStatus(v)
            except (TypeError, ValueError):
                continue
        validity: Dict[int, bool] = {}
        for k, v in dict(raw.get("lastValidity") or {}).items():
            try:
                validity[int(k)] = bool(v)
            except (TypeError, ValueError):
                continue
        modified_step = raw.get("lastModifiedStep")
        return ProgressState(
            current_step=int(raw.get("currentStep") or 0),
            statuses=statuses,
            last_validity=validity,
            last_saved_at=_parse_ts(raw.get("lastSavedAt")),
            last_modified_step=int(modified_step) if isinstance(modified_step, int) else None,
            last_modified_at=_parse_ts(raw.get("lastModifiedAt")),
        )


def _parse_ts(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
