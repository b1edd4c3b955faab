from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from builder_config import BuilderConfig
from draft_persistence import (
    DebouncedDraftWriter,
    DraftPersistenceError,
    DraftSnapshot,
    DraftStore,
    InMemoryDraftStore,
    to_jsonable,
)
from pricing_engine import (
    DateRange,
    DriverAssignment,
    DriverInput,
    DriverRole,
    LineDiscount,
    PricedLine,
    PriceSource,
    PricingError,
    RateContext,
    ReservationSummary,
    StalenessTracker,
    assign_drivers,
    build_priced_line,
    override_line_price,
    rate_context_hash,
    reprice,
    stale_lines,
    summarize_reservation,
    to_money,
)
from wizard_commands import RESERVATION, CommandError, apply_command
from wizard_progress import ProgressStateMachine, StepConfig, StepStatus, SubmissionResult
from wizard_validation import StepValidation, ValidationRegistry, parse_datetime, reservation_registry

logger = logging.getLogger(__name__)

RESERVATION_SECTIONS: Tuple[StepConfig, ...] = (
    StepConfig("general", "General"),
    StepConfig("rate_taxes", "Rate & Taxes"),
    StepConfig("vehicles_drivers", "Vehicles & Drivers"),
    StepConfig("lines", "Reservation Lines"),
    StepConfig("billing", "Billing"),
    StepConfig("adjustments", "Adjustments & Deposits"),
    StepConfig("notes", "Notes"),
)

RATE_SECTION = 1
PREFILL_SECTION = 2
LINES_SECTION = 3

UNREADABLE_RATES_ERROR = "Rates must be valid numbers before lines can be priced"


def initial_reservation_data() -> Dict[str, Any]:
    return {
        "general": {"currency_code": "AED"},
        "rate_taxes": {},
        "prefill": {"drivers": []},
        "billing": {"billing_type": "same"},
        "adjustments": {"selected_misc_charges": []},
        "notes": {},
    }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_date(value: object) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_datetime(value)
    return parsed.date() if parsed is not None else None


# ---------------------------------------------------------------------------
# Line codec (drafts store lines as plain JSON)
# ---------------------------------------------------------------------------


def priced_line_to_dict(line: PricedLine) -> Dict[str, Any]:
    return to_jsonable(line)


def priced_line_from_dict(raw: Mapping[str, Any]) -> PricedLine:
    dr = raw.get("date_range")
    date_range = None
    if isinstance(dr, Mapping):
        start, end = parse_datetime(dr.get("start")), parse_datetime(dr.get("end"))
        if start is None or end is None:
            raise PricingError(f"Line {raw.get('id')!r} has an unreadable date range")
        date_range = DateRange(start, end)
    drivers = tuple(
        DriverAssignment(
            driver_id=str(d.get("driver_id")),
            role=DriverRole(d.get("role") or DriverRole.ADDITIONAL.value),
            additional_driver_fee=to_money(d.get("additional_driver_fee")),
            underage_fee=to_money(d.get("underage_fee")),
        )
        for d in raw.get("drivers") or []
    )
    discounts = tuple(
        LineDiscount(discount_id=str(d.get("discount_id")), amount=to_money(d.get("amount"))) for d in raw.get("discounts") or []
    )
    return PricedLine(
        id=str(raw["id"]),
        line_no=int(raw.get("line_no") or 0),
        vehicle_class_id=str(raw.get("vehicle_class_id") or ""),
        vehicle_id=str(raw.get("vehicle_id") or ""),
        date_range=date_range,
        out_location_id=str(raw.get("out_location_id") or ""),
        in_location_id=str(raw.get("in_location_id") or ""),
        base_price=to_money(raw.get("base_price")),
        tax_value=to_money(raw.get("tax_value")),
        line_total=to_money(raw.get("line_total")),
        price_source=PriceSource(raw.get("price_source") or PriceSource.PRICELIST.value),
        rate_context_hash_at_pricing=str(raw.get("rate_context_hash_at_pricing") or ""),
        drivers=drivers,
        discounts=discounts,
    )


def _driver_inputs(raw_drivers: Sequence[object]) -> List[DriverInput]:
    out: List[DriverInput] = []
    for d in raw_drivers:
        if not isinstance(d, Mapping) or not d.get("driver_id"):
            continue
        role = DriverRole.PRIMARY if d.get("role") == DriverRole.PRIMARY.value else DriverRole.ADDITIONAL
        out.append(DriverInput(driver_id=str(d["driver_id"]), role=role, date_of_birth=_as_date(d.get("date_of_birth"))))
    return out


@dataclass(frozen=True)
class AddLineResult:
    line: Optional[PricedLine]
    errors: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.line is not None


@dataclass(frozen=True)
class RepriceResult:
    lines: Tuple[PricedLine, ...]
    errors: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


class ReservationBuilderSession:
    """
    Reservation form with accordion sections and a list of priced lines.

    Lines are priced once, when added, against the rate context of that moment. Changing the rate
    context afterwards only raises the stale-pricing flag; totals move when the operator reprices.
    """

    def __init__(
        self,
        store: Optional[DraftStore] = None,
        *,
        config: Optional[BuilderConfig] = None,
        registry: Optional[ValidationRegistry] = None,
        writer: Optional[DebouncedDraftWriter] = None,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.config = config or BuilderConfig()
        self.store = store if store is not None else InMemoryDraftStore()
        self.registry = registry or reservation_registry()
        self.writer = writer or DebouncedDraftWriter(self.store, self.config.autosave_delay_seconds)
        self.storage_key = self.config.reservation_storage_key
        self.clock = clock
        self.id_factory = id_factory
        self.progress = ProgressStateMachine(len(RESERVATION_SECTIONS), self.registry)
        self.data: Dict[str, Any] = initial_reservation_data()
        self.lines: Tuple[PricedLine, ...] = ()
        self.tracker = StalenessTracker()
        self.tracker.observe(self.rate_context(), 0)
        self.validations: Dict[int, StepValidation] = {}
        self.submitted_at: Optional[datetime] = None

    @property
    def sections(self) -> Tuple[StepConfig, ...]:
        return RESERVATION_SECTIONS

    def rate_context(self) -> RateContext:
        return RateContext.from_mapping(self.data.get("rate_taxes") or {})

    def _readable_rate_context(self) -> Optional[RateContext]:
        try:
            return self.rate_context()
        except (ArithmeticError, ValueError):
            # The rate section's own validation reports the bad value.
            return None

    def validation_data(self) -> Dict[str, Any]:
        ctx = self._readable_rate_context()
        return {
            **self.data,
            "lines": [priced_line_to_dict(line) for line in self.lines],
            "rate_context_hash": rate_context_hash(ctx) if ctx is not None else None,
        }

    def _validate(self, section: int) -> StepValidation:
        result = self.progress.validate_step(section, self.validation_data())
        self.validations[section] = result
        return result

    def validate_section(self, section: int) -> StepValidation:
        return self._validate(section)

    def open_section(self, section: int) -> None:
        self.progress.set_current_step(section)

    # -- editing -------------------------------------------------------------

    def dispatch(self, command: object) -> StepValidation:
        if getattr(command, "builder", None) != RESERVATION:
            raise CommandError(f"{type(command).__name__} is not a reservation builder command")
        outcome = apply_command(self.data, command)
        section = outcome.step_index
        if outcome.changed:
            self.data = outcome.data
            self.progress.note_modified(section, at=self.clock())
        ctx = self._readable_rate_context()
        if ctx is not None and self.tracker.observe(ctx, len(self.lines)):
            self._revalidate_if_visited(LINES_SECTION)
        if not outcome.changed:
            return self.validations.get(section) or self._validate(section)
        result = self._validate(section)
        self._autosave()
        return result

    def _revalidate_if_visited(self, section: int) -> None:
        if self.progress.get_step_status(section) != StepStatus.NOT_VISITED:
            self._validate(section)

    def _after_lines_changed(self) -> None:
        self.progress.note_modified(LINES_SECTION, at=self.clock())
        self._validate(LINES_SECTION)
        self._autosave()

    def add_line(self, discounts: Sequence[LineDiscount] = ()) -> AddLineResult:
        """
        Price the current prefill into a new line. An incomplete prefill adds nothing and returns its errors.
        """
        check = self._validate(PREFILL_SECTION)
        if not check.is_valid:
            return AddLineResult(line=None, errors=check.errors)
        ctx = self._readable_rate_context()
        if ctx is None:
            return AddLineResult(line=None, errors=(UNREADABLE_RATES_ERROR,))
        prefill = self.data.get("prefill") or {}
        date_range = DateRange(parse_datetime(prefill["check_out_at"]), parse_datetime(prefill["check_in_at"]))
        drivers = assign_drivers(
            _driver_inputs(prefill.get("drivers") or []),
            as_of=self.clock().date(),
            additional_driver_fee=self.config.additional_driver_fee,
            underage_fee=self.config.underage_driver_fee,
        )
        line = build_priced_line(
            line_id=self.id_factory(),
            line_no=len(self.lines) + 1,
            vehicle_class_id=str(prefill["vehicle_class_id"]),
            vehicle_id=str(prefill["vehicle_id"]),
            date_range=date_range,
            out_location_id=str(prefill["check_out_location_id"]),
            in_location_id=str(prefill["check_in_location_id"]),
            rate_context=ctx,
            fallback_rates=self.config.fallback_rates,
            drivers=drivers,
            discounts=discounts,
        )
        self.lines = self.lines + (line,)
        logger.debug("Added line %s (%s %s)", line.line_no, line.price_source.value, line.line_total)
        self._after_lines_changed()
        return AddLineResult(line=line)

    def _find(self, line_id: str) -> PricedLine:
        for line in self.lines:
            if line.id == line_id:
                return line
        raise KeyError(line_id)

    def remove_line(self, line_id: str) -> None:
        self._find(line_id)
        kept = [line for line in self.lines if line.id != line_id]
        self.lines = tuple(replace(line, line_no=i) for i, line in enumerate(kept, start=1))
        if not self.lines:
            self.tracker.acknowledge()
        self._after_lines_changed()

    def duplicate_line(self, line_id: str) -> PricedLine:
        source = self._find(line_id)
        copy = replace(source, id=self.id_factory(), line_no=len(self.lines) + 1)
        self.lines = self.lines + (copy,)
        self._after_lines_changed()
        return copy

    def override_line_price(self, line_id: str, net_price: object) -> PricedLine:
        updated = override_line_price(self._find(line_id), net_price)
        self.lines = tuple(updated if line.id == line_id else line for line in self.lines)
        self._after_lines_changed()
        return updated

    # -- pricing -------------------------------------------------------------

    @property
    def stale_pricing(self) -> bool:
        return self.tracker.stale

    def stale_line_ids(self) -> List[str]:
        ctx = self._readable_rate_context()
        if ctx is None:
            return []
        return [line.id for line in stale_lines(self.lines, ctx)]

    def reprice_lines(self) -> RepriceResult:
        """
        Re-derive every dated line from the current rate context. Unreadable rates leave the lines
        and the stale flag as they are and come back as errors.
        """
        ctx = self._readable_rate_context()
        if ctx is None:
            logger.info("Reprice skipped: rate context has non-numeric values")
            return RepriceResult(lines=self.lines, errors=(UNREADABLE_RATES_ERROR,))
        self.lines = reprice(self.lines, ctx, self.config.fallback_rates)
        self.tracker.acknowledge()
        logger.info("Repriced %d reservation line(s)", len(self.lines))
        self._after_lines_changed()
        return RepriceResult(lines=self.lines)

    def dismiss_stale_pricing(self) -> None:
        self.tracker.acknowledge()

    def summary(self) -> ReservationSummary:
        rates = self.data.get("rate_taxes") or {}
        adjustments = self.data.get("adjustments") or {}
        return summarize_reservation(
            self.lines,
            selected_misc_charges=adjustments.get("selected_misc_charges") or (),
            promotion_code=str(rates.get("promotion_code") or ""),
            promotion_discount=rates.get("promotion_discount"),
            pre_adjustment=adjustments.get("pre_adjustment"),
            advance_payment=adjustments.get("advance_payment"),
            security_deposit_paid=adjustments.get("security_deposit_paid"),
            cancellation_charges=adjustments.get("cancellation_charges"),
        )

    # -- submission ----------------------------------------------------------

    def submit(self) -> SubmissionResult:
        for section in range(len(RESERVATION_SECTIONS)):
            self._validate(section)
        result = self.progress.check_submission(RESERVATION_SECTIONS)
        if result.ok:
            self.submitted_at = self.clock()
            self.writer.discard(self.storage_key)
            logger.info("Reservation submitted with %d line(s)", len(self.lines))
        return result

    # -- drafts --------------------------------------------------------------

    def snapshot(self) -> DraftSnapshot:
        wizard_data = {**self.data, "lines": [priced_line_to_dict(line) for line in self.lines]}
        return DraftSnapshot(wizard_data=wizard_data, progress=self.progress.to_dict())

    def _autosave(self) -> None:
        if self.submitted_at is None:
            self.writer.schedule(self.storage_key, self.snapshot())

    def save_now(self) -> None:
        previous = self.progress.state.last_saved_at
        self.progress.record_saved(self.clock())
        self.writer.schedule(self.storage_key, self.snapshot())
        try:
            self.writer.flush()
        except (DraftPersistenceError, OSError):
            self.progress.state.last_saved_at = previous
            raise

    def resume(self) -> bool:
        snapshot = self.store.load(self.storage_key)
        if snapshot is None:
            return False
        raw = dict(snapshot.wizard_data)
        raw_lines = raw.pop("lines", None) or []
        lines = tuple(priced_line_from_dict(r) for r in raw_lines if isinstance(r, Mapping))
        data = initial_reservation_data()
        data.update(raw)
        self.data = data
        self.lines = lines
        self.progress = ProgressStateMachine.from_dict(snapshot.progress, len(RESERVATION_SECTIONS), self.registry)
        self.validations = {}
        self.tracker = StalenessTracker()
        ctx = self._readable_rate_context()
        if ctx is not None:
            self.tracker.observe(ctx, 0)
        self.tracker.stale = bool(self.stale_line_ids())
        return True

    def discard_draft(self) -> None:
        self.writer.discard(self.storage_key)
        self.data = initial_reservation_data()
        self.lines = ()
        self.progress = ProgressStateMachine(len(RESERVATION_SECTIONS), self.registry)
        self.tracker = StalenessTracker()
        self.tracker.observe(self.rate_context(), 0)
        self.validations = {}
        self.submitted_at = None

    def close(self) -> None:
        self.writer.close()
