from __future__ import annotations

# Each command is bound to one agreement step or reservation section. Its fields map onto dotted
# paths in the wizard data through field metadata; a field left at UNSET is not touched.

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union


class _Unset:
    _instance = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

AGREEMENT = "agreement"
RESERVATION = "reservation"


# Field types. None is a real value (clears the field); UNSET leaves it alone.
Text = Optional[str]
Flag = Optional[bool]
Count = Optional[int]
Amount = Optional[Union[Decimal, int, float, str]]
When = Optional[datetime]
Day = Optional[Union[date, str]]
Record = Optional[Mapping[str, Any]]
Records = Optional[Sequence[Mapping[str, Any]]]


class CommandError(ValueError):
    pass


def _at(path: str) -> Any:
    return field(default=UNSET, metadata={"path": path})


@dataclass(frozen=True)
class CommandOutcome:
    data: Dict[str, Any]
    step_index: int
    changed_paths: Tuple[str, ...]

    @property
    def changed(self) -> bool:
        return bool(self.changed_paths)


# ---------------------------------------------------------------------------
# Agreement wizard
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SelectSource:
    builder: ClassVar[str] = AGREEMENT
    step_index: ClassVar[int] = 0

    source: Text = _at("source")
    source_id: Text = _at("source_id")


@dataclass(frozen=True)
class UpdateAgreementTerms:
    builder: ClassVar[str] = AGREEMENT
    step_index: ClassVar[int] = 1

    customer_id: Text = _at("step1.customer_id")
    vehicle_id: Text = _at("step1.vehicle_id")
    agreement_type: Text = _at("step1.agreement_type")
    rental_purpose: Text = _at("step1.rental_purpose")
    pickup_location_id: Text = _at("step1.pickup_location_id")
    dropoff_location_id: Text = _at("step1.dropoff_location_id")
    pickup_at: When = _at("step1.pickup_at")
    dropoff_at: When = _at("step1.dropoff_at")
    mileage_package: Text = _at("step1.mileage_package")
    included_km: Count = _at("step1.included_km")
    excess_km_rate: Amount = _at("step1.excess_km_rate")
    cross_border_allowed: Flag = _at("step1.cross_border_allowed")
    cross_border_countries: Optional[Sequence[str]] = _at("step1.cross_border_countries")
    special_instructions: Text = _at("step1.special_instructions")


@dataclass(frozen=True)
class RecordInspection:
    builder: ClassVar[str] = AGREEMENT
    step_index: ClassVar[int] = 2

    pre_handover_checklist: Optional[Mapping[str, bool]] = _at("step2.pre_handover_checklist")
    fuel_level: Optional[float] = _at("step2.fuel_level")
    odometer_reading: Count = _at("step2.odometer_reading")
    odometer_photo: Text = _at("step2.odometer_photo")
    fuel_gauge_photo: Text = _at("step2.fuel_gauge_photo")
    photos: Optional[Mapping[str, Sequence[str]]] = _at("step2.photos")
    inspection_checklist: Optional[Mapping[str, Any]] = _at("step2.inspection_checklist")
    damage_markers: Records = _at("step2.damage_markers")
    inspector_notes: Text = _at("step2.inspector_notes")


@dataclass(frozen=True)
class ConfigurePricing:
    builder: ClassVar[str] = AGREEMENT
    step_index: ClassVar[int] = 3

    base_rate: Amount = _at("step3.base_rate")
    insurance_package: Text = _at("step3.insurance_package")
    excess_amount: Amount = _at("step3.excess_amount")
    rate_override: Record = _at("step3.rate_override")
    maintenance_included: Flag = _at("step3.maintenance_included")
    maintenance_cost: Amount = _at("step3.maintenance_cost")
    discount_amount: Amount = _at("step3.discount_amount")
    discount_reason: Text = _at("step3.discount_reason")


@dataclass(frozen=True)
class SetAddons:
    builder: ClassVar[str] = AGREEMENT
    step_index: ClassVar[int] = 4

    selected_addons: Records = _at("step4.selected_addons")


@dataclass(frozen=True)
class ConfigureBilling:
    builder: ClassVar[str] = AGREEMENT
    step_index: ClassVar[int] = 5

    billing_type: Text = _at("step5.billing_type")
    billing_info: Record = _at("step5.billing_info")
    payment_method: Text = _at("step5.payment_method")
    payment_schedule: Text = _at("step5.payment_schedule")
    advance_payment: Record = _at("step5.advance_payment")
    security_deposit: Record = _at("step5.security_deposit")


@dataclass(frozen=True)
class UpdateDocuments:
    builder: ClassVar[str] = AGREEMENT
    step_index: ClassVar[int] = 6

    documents: Records = _at("step6.documents")
    emirates_id_verified: Flag = _at("step6.emirates_id_verified")
    license_verified: Flag = _at("step6.license_verified")
    black_points_checked: Flag = _at("step6.black_points_checked")
    black_points_count: Count = _at("step6.black_points_count")
    eligibility_status: Text = _at("step6.eligibility_status")


@dataclass(frozen=True)
class SignAgreement:
    builder: ClassVar[str] = AGREEMENT
    step_index: ClassVar[int] = 7

    terms_accepted: Flag = _at("step7.terms_accepted")
    key_terms_acknowledged: Optional[Mapping[str, bool]] = _at("step7.key_terms_acknowledged")
    customer_signature: Record = _at("step7.customer_signature")
    customer_declarations: Optional[Mapping[str, bool]] = _at("step7.customer_declarations")


@dataclass(frozen=True)
class CompleteReview:
    builder: ClassVar[str] = AGREEMENT
    step_index: ClassVar[int] = 8

    review_completed: Flag = _at("step8.review_completed")
    distribution_methods: Optional[Mapping[str, bool]] = _at("step8.distribution_methods")


# ---------------------------------------------------------------------------
# Reservation builder
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpdateReservationGeneral:
    builder: ClassVar[str] = RESERVATION
    step_index: ClassVar[int] = 0

    entry_date: Day = _at("general.entry_date")
    reservation_method_id: Text = _at("general.reservation_method_id")
    currency_code: Text = _at("general.currency_code")
    reservation_type_id: Text = _at("general.reservation_type_id")
    business_unit_id: Text = _at("general.business_unit_id")
    customer_id: Text = _at("general.customer_id")
    payment_terms_id: Text = _at("general.payment_terms_id")
    validity_date_to: Day = _at("general.validity_date_to")
    discount_type_id: Text = _at("general.discount_type_id")
    discount_value: Amount = _at("general.discount_value")
    reference_no: Text = _at("general.reference_no")


@dataclass(frozen=True)
class UpdateRateContext:
    builder: ClassVar[str] = RESERVATION
    step_index: ClassVar[int] = 1

    price_list_id: Text = _at("rate_taxes.price_list_id")
    promotion_code: Text = _at("rate_taxes.promotion_code")
    promotion_discount: Amount = _at("rate_taxes.promotion_discount")
    hourly_rate: Amount = _at("rate_taxes.hourly_rate")
    daily_rate: Amount = _at("rate_taxes.daily_rate")
    weekly_rate: Amount = _at("rate_taxes.weekly_rate")
    monthly_rate: Amount = _at("rate_taxes.monthly_rate")
    kilometer_charge: Amount = _at("rate_taxes.kilometer_charge")
    daily_kilometer_allowed: Count = _at("rate_taxes.daily_kilometer_allowed")


@dataclass(frozen=True)
class UpdateLinePrefill:
    builder: ClassVar[str] = RESERVATION
    step_index: ClassVar[int] = 2

    vehicle_class_id: Text = _at("prefill.vehicle_class_id")
    vehicle_id: Text = _at("prefill.vehicle_id")
    check_out_at: When = _at("prefill.check_out_at")
    check_in_at: When = _at("prefill.check_in_at")
    check_out_location_id: Text = _at("prefill.check_out_location_id")
    check_in_location_id: Text = _at("prefill.check_in_location_id")
    drivers: Records = _at("prefill.drivers")


@dataclass(frozen=True)
class UpdateReservationBilling:
    builder: ClassVar[str] = RESERVATION
    step_index: ClassVar[int] = 4

    billing_type: Text = _at("billing.billing_type")
    customer_name: Text = _at("billing.customer_name")
    email: Text = _at("billing.email")
    phone: Text = _at("billing.phone")
    address: Text = _at("billing.address")


@dataclass(frozen=True)
class UpdateAdjustments:
    builder: ClassVar[str] = RESERVATION
    step_index: ClassVar[int] = 5

    selected_misc_charges: Optional[Sequence[str]] = _at("adjustments.selected_misc_charges")
    pre_adjustment: Amount = _at("adjustments.pre_adjustment")
    advance_payment: Amount = _at("adjustments.advance_payment")
    payment_method_id: Text = _at("adjustments.payment_method_id")
    security_deposit_paid: Amount = _at("adjustments.security_deposit_paid")
    cancellation_charges: Amount = _at("adjustments.cancellation_charges")


@dataclass(frozen=True)
class UpdateNotes:
    builder: ClassVar[str] = RESERVATION
    step_index: ClassVar[int] = 6

    internal_notes: Text = _at("notes.internal_notes")
    customer_notes: Text = _at("notes.customer_notes")


AGREEMENT_COMMANDS: Tuple[type, ...] = (
    SelectSource,
    UpdateAgreementTerms,
    RecordInspection,
    ConfigurePricing,
    SetAddons,
    ConfigureBilling,
    UpdateDocuments,
    SignAgreement,
    CompleteReview,
)

RESERVATION_COMMANDS: Tuple[type, ...] = (
    UpdateReservationGeneral,
    UpdateRateContext,
    UpdateLinePrefill,
    UpdateReservationBilling,
    UpdateAdjustments,
    UpdateNotes,
)


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------

_MISSING = object()


def command_updates(command: object) -> Iterator[Tuple[str, Any]]:
    if not is_dataclass(command) or isinstance(command, type) or not hasattr(command, "step_index"):
        raise CommandError(f"Not a wizard command: {command!r}")
    for f in fields(command):
        value = getattr(command, f.name)
        if value is UNSET:
            continue
        yield f.metadata["path"], value


def get_path(data: Mapping[str, Any], path: str, default: Any = None) -> Any:
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return default
        node = node[part]
    return node


def _freeze_input(value: Any) -> Any:
    # Callers keep their own list/dict objects; store copies so later edits on their side don't leak in.
    if isinstance(value, Mapping):
        return {k: _freeze_input(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_freeze_input(v) for v in value]
    return value


def _set_path(data: Mapping[str, Any], parts: Sequence[str], value: Any) -> Dict[str, Any]:
    out = dict(data)
    head = parts[0]
    if len(parts) == 1:
        out[head] = value
        return out
    child = out.get(head)
    out[head] = _set_path(child if isinstance(child, Mapping) else {}, parts[1:], value)
    return out


def apply_command(data: Mapping[str, Any], command: object) -> CommandOutcome:
    """
    Apply `command` to `data` and return the new data with the paths that actually changed.

    Untouched branches are shared with the input; touched branches are copied.
    """
    out: Mapping[str, Any] = data
    changed: List[str] = []
    for path, value in command_updates(command):
        value = _freeze_input(value)
        if get_path(out, path, _MISSING) == value:
            continue
        out = _set_path(out, path.split("."), value)
        changed.append(path)
    return CommandOutcome(data=dict(out), step_index=int(getattr(command, "step_index")), changed_paths=tuple(changed))
