from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from builder_config import BuilderConfig
from draft_persistence import (
    DebouncedDraftWriter,
    DraftPersistenceError,
    DraftSnapshot,
    DraftStore,
    InMemoryDraftStore,
    to_jsonable,
)
from pricing_engine import PricingBreakdown, addons_total, compute_pricing_breakdown, rental_days, to_money
from wizard_commands import AGREEMENT, CommandError, apply_command
from wizard_progress import ProgressStateMachine, StepConfig, StepStatus, SubmissionResult
from wizard_validation import StepValidation, ValidationRegistry, agreement_registry, parse_datetime

logger = logging.getLogger(__name__)

AGREEMENT_STEPS: Tuple[StepConfig, ...] = (
    StepConfig("source", "Source"),
    StepConfig("terms", "Terms"),
    StepConfig("inspection", "Inspection"),
    StepConfig("pricing", "Pricing"),
    StepConfig("addons", "Add-ons"),
    StepConfig("billing", "Billing"),
    StepConfig("documents", "Documents"),
    StepConfig("signature", "Signature"),
    StepConfig("review", "Review"),
)

PRICING_STEP = 3
REVIEW_STEP = len(AGREEMENT_STEPS) - 1


def initial_wizard_data() -> Dict[str, Any]:
    return {
        "source": None,
        "source_id": None,
        "step1": {"cross_border_allowed": False, "cross_border_countries": []},
        "step2": {"photos": {"exterior": [], "interior": []}, "damage_markers": [], "inspection_checklist": {}},
        "step3": {"insurance_package": "basic", "maintenance_included": False},
        "step4": {"selected_addons": []},
        "step5": {},
        "step6": {"documents": []},
        "step7": {"terms_accepted": False},
        "step8": {"review_completed": False, "distribution_methods": {}},
    }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pricing_inputs(data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Everything the step-3 breakdown depends on. The breakdown itself is excluded.
    """
    step1 = data.get("step1") or {}
    step3 = dict(data.get("step3") or {})
    step3.pop("pricing_breakdown", None)
    step4 = data.get("step4") or {}
    return {
        "pickup_at": step1.get("pickup_at"),
        "dropoff_at": step1.get("dropoff_at"),
        "pricing": step3,
        "addons": step4.get("selected_addons") or [],
    }


def pricing_inputs_hash(data: Mapping[str, Any]) -> str:
    canonical = json.dumps(to_jsonable(pricing_inputs(data)), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def breakdown_for(data: Mapping[str, Any]) -> Optional[PricingBreakdown]:
    """
    Step-3 breakdown for `data`, or None while there is no usable rate or a pricing input is not a number.
    """
    inputs = pricing_inputs(data)
    pricing = inputs["pricing"]
    override = pricing.get("rate_override") if isinstance(pricing.get("rate_override"), Mapping) else {}
    try:
        has_rate = to_money(pricing.get("base_rate")) > 0 or to_money(override.get("amount")) > 0
        if not has_rate:
            return None
        days = rental_days(parse_datetime(inputs["pickup_at"]), parse_datetime(inputs["dropoff_at"]))
        addons = [a for a in inputs["addons"] if isinstance(a, Mapping)]
        return compute_pricing_breakdown(pricing, addons_total=addons_total(addons), days=days)
    except (ArithmeticError, ValueError, TypeError):
        logger.warning("Pricing breakdown skipped: non-numeric pricing input", exc_info=True)
        return None


@dataclass(frozen=True)
class NavigationResult:
    moved: bool
    current_step: int
    validation: Optional[StepValidation] = None


class AgreementWizardSession:
    """
    One agreement being built by one operator.

    Owns the single in-memory copy of the wizard data and its progress machine. Every edit goes
    through `dispatch`, which applies a typed command, revalidates the touched step against the new
    data, refreshes the pricing breakdown only when a pricing input actually changed, and schedules a
    debounced draft save.
    """

    def __init__(
        self,
        store: Optional[DraftStore] = None,
        *,
        config: Optional[BuilderConfig] = None,
        registry: Optional[ValidationRegistry] = None,
        writer: Optional[DebouncedDraftWriter] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or BuilderConfig()
        self.store = store if store is not None else InMemoryDraftStore()
        self.registry = registry or agreement_registry()
        self.writer = writer or DebouncedDraftWriter(self.store, self.config.autosave_delay_seconds)
        self.storage_key = self.config.agreement_storage_key
        self.clock = clock
        self.progress = ProgressStateMachine(len(AGREEMENT_STEPS), self.registry)
        self.data: Dict[str, Any] = initial_wizard_data()
        self.validations: Dict[int, StepValidation] = {}
        self.submitted_at: Optional[datetime] = None
        self._pricing_hash: Optional[str] = None
        self.progress.set_current_step(0)

    @property
    def steps(self) -> Tuple[StepConfig, ...]:
        return AGREEMENT_STEPS

    @property
    def current_step(self) -> int:
        return self.progress.current_step

    @property
    def can_proceed(self) -> bool:
        return self.progress.can_proceed

    @property
    def breakdown(self) -> Mapping[str, Any]:
        return (self.data.get("step3") or {}).get("pricing_breakdown") or {}

    @property
    def last_saved_at(self) -> Optional[datetime]:
        return self.writer.saved_at.get(self.storage_key) or self.progress.state.last_saved_at

    # -- editing -------------------------------------------------------------

    def dispatch(self, command: object) -> StepValidation:
        if getattr(command, "builder", None) != AGREEMENT:
            raise CommandError(f"{type(command).__name__} is not an agreement wizard command")
        outcome = apply_command(self.data, command)
        step = outcome.step_index
        if not outcome.changed:
            return self.validations.get(step) or self._validate(step)

        self.data = outcome.data
        self.progress.note_modified(step, at=self.clock())
        logger.debug("Step %s changed: %s", step, ", ".join(outcome.changed_paths))

        if self.recompute_pricing() and step != PRICING_STEP:
            self._revalidate_if_visited(PRICING_STEP)
        result = self._validate(step)
        if step != REVIEW_STEP:
            self._revalidate_if_visited(REVIEW_STEP)
        self._autosave()
        return result

    def recompute_pricing(self, *, force: bool = False) -> bool:
        """
        Refresh `step3.pricing_breakdown` when its inputs' hash moved. Returns True if it was rewritten.
        """
        current = pricing_inputs_hash(self.data)
        if not force and current == self._pricing_hash:
            return False
        self._pricing_hash = current
        breakdown = breakdown_for(self.data)
        step3 = dict(self.data.get("step3") or {})
        new_value = breakdown.as_dict() if breakdown is not None else {}
        if step3.get("pricing_breakdown") == new_value:
            return False
        step3["pricing_breakdown"] = new_value
        self.data = {**self.data, "step3": step3}
        return True

    def _validate(self, step: int) -> StepValidation:
        result = self.progress.validate_step(step, self.data)
        self.validations[step] = result
        return result

    def _revalidate_if_visited(self, step: int) -> None:
        if self.progress.get_step_status(step) != StepStatus.NOT_VISITED:
            self._validate(step)

    def validate_current(self) -> StepValidation:
        return self._validate(self.current_step)

    # -- navigation ----------------------------------------------------------

    def go_to(self, step: int) -> NavigationResult:
        self.progress.set_current_step(step)
        self._autosave()
        return NavigationResult(moved=True, current_step=self.current_step, validation=self.validations.get(step))

    def next(self) -> NavigationResult:
        """
        Validate the current step and advance only if it passes. Jumping with `go_to` is never gated.
        """
        result = self._validate(self.current_step)
        if not result.is_valid or self.current_step >= REVIEW_STEP:
            return NavigationResult(moved=False, current_step=self.current_step, validation=result)
        self.progress.set_current_step(self.current_step + 1)
        self._autosave()
        return NavigationResult(moved=True, current_step=self.current_step, validation=result)

    def previous(self) -> NavigationResult:
        if self.current_step == 0:
            return NavigationResult(moved=False, current_step=0)
        self.progress.set_current_step(self.current_step - 1)
        self._autosave()
        return NavigationResult(moved=True, current_step=self.current_step)

    def next_incomplete(self) -> Optional[int]:
        return self.progress.next_incomplete_step()

    # -- submission ----------------------------------------------------------

    def submit(self) -> SubmissionResult:
        """
        Revalidate every step against the data as it is now, then apply the all-steps-complete gate.
        On success the draft is flushed and removed.
        """
        self.recompute_pricing()
        for step in range(len(AGREEMENT_STEPS)):
            self._validate(step)
        result = self.progress.check_submission(AGREEMENT_STEPS)
        if not result.ok:
            return result
        self.submitted_at = self.clock()
        self.writer.discard(self.storage_key)
        logger.info("Agreement submitted at %s", self.submitted_at.isoformat())
        return result

    @property
    def submitted(self) -> bool:
        return self.submitted_at is not None

    def errors_by_step(self) -> Dict[int, List[str]]:
        return {i: list(v.errors) for i, v in sorted(self.validations.items()) if v.errors}

    # -- drafts --------------------------------------------------------------

    def snapshot(self) -> DraftSnapshot:
        return DraftSnapshot(wizard_data=self.data, progress=self.progress.to_dict())

    def _autosave(self) -> None:
        if self.submitted:
            return
        self.writer.schedule(self.storage_key, self.snapshot())

    def save_now(self) -> None:
        """
        Persist immediately. I/O failures propagate; in-memory state is left as it was.
        """
        previous = self.progress.state.last_saved_at
        self.progress.record_saved(self.clock())
        self.writer.schedule(self.storage_key, self.snapshot())
        try:
            self.writer.flush()
        except (DraftPersistenceError, OSError):
            self.progress.state.last_saved_at = previous
            raise

    def has_draft(self) -> bool:
        return self.store.load(self.storage_key) is not None

    def resume(self) -> bool:
        snapshot = self.store.load(self.storage_key)
        if snapshot is None:
            return False
        data = initial_wizard_data()
        data.update(dict(snapshot.wizard_data))
        self.data = data
        self.progress = ProgressStateMachine.from_dict(snapshot.progress, len(AGREEMENT_STEPS), self.registry)
        self.validations = {}
        self._pricing_hash = pricing_inputs_hash(self.data)
        logger.info("Resumed agreement draft at step %s", self.current_step)
        return True

    def discard_draft(self) -> None:
        self.writer.discard(self.storage_key)
        self.data = initial_wizard_data()
        self.progress = ProgressStateMachine(len(AGREEMENT_STEPS), self.registry)
        self.progress.set_current_step(0)
        self.validations = {}
        self.submitted_at = None
        self._pricing_hash = None

    def close(self) -> None:
        self.writer.close()
