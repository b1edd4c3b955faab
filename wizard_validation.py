from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepValidation:
    is_valid: bool
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    # True when the validator itself raised and the result was synthesized.
    fault: bool = False


Validator = Callable[[Mapping[str, Any]], StepValidation]

INVALID_STEP_ERROR = "Invalid step"
INTERNAL_ERROR = "Internal validation error: please review this step and try again"


class ValidationRegistry:
    """
    Maps a step index to its rule set.

    `validate` never raises: unknown steps fail closed and a validator that blows up is
    converted into a single generic error (and logged) so callers can always act on the result.
    """

    def __init__(self, validators: Mapping[int, Validator], *, names: Optional[Mapping[int, str]] = None) -> None:
        self._validators: Dict[int, Validator] = dict(validators)
        self._names: Dict[int, str] = dict(names or {})

    @property
    def step_indices(self) -> Tuple[int, ...]:
        return tuple(sorted(self._validators))

    def name_for(self, step: int) -> str:
        return self._names.get(step, f"Step {step}")

    def validate(self, step: int, data: Mapping[str, Any]) -> StepValidation:
        validator = self._validators.get(step)
        if validator is None:
            return StepValidation(is_valid=False, errors=(INVALID_STEP_ERROR,))
        try:
            result = validator(data)
        except Exception:
            logger.exception("Validator for step %s (%s) raised", step, self.name_for(step))
            return StepValidation(is_valid=False, errors=(INTERNAL_ERROR,), fault=True)
        # Recompute is_valid from errors so a sloppy validator can't report valid-with-errors.
        return StepValidation(
            is_valid=len(result.errors) == 0,
            errors=tuple(result.errors),
            warnings=tuple(result.warnings),
            fault=result.fault,
        )


def _result(errors: List[str], warnings: List[str]) -> StepValidation:
    return StepValidation(is_valid=len(errors) == 0, errors=tuple(errors), warnings=tuple(warnings))


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key) if isinstance(data, Mapping) else None
    return value if isinstance(value, Mapping) else {}


def _list(value: object) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _number(value: object) -> Optional[Decimal]:
    """
    Coerce form input (int/float/Decimal/numeric str) to Decimal. Returns None when absent, unparseable or not finite.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, (int, float)):
        d = Decimal(str(value))
    elif isinstance(value, str) and value.strip():
        try:
            d = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None
    # "nan" and "inf" parse but cannot be compared with amounts.
    return d if d.is_finite() else None


def parse_datetime(value: object) -> Optional[datetime]:
    """
    Accept datetimes, dates, or ISO strings (drafts restore dates as strings).
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def _after(later: Optional[datetime], earlier: Optional[datetime]) -> bool:
    if later is None or earlier is None:
        return True
    # Mixed naive/aware values come from hand-edited drafts; compare on the naive wall clock.
    if (later.tzinfo is None) != (earlier.tzinfo is None):
        later = later.replace(tzinfo=None)
        earlier = earlier.replace(tzinfo=None)
    return later > earlier


# ---------------------------------------------------------------------------
# Agreement wizard (9 steps)
# ---------------------------------------------------------------------------

AGREEMENT_STEP_NAMES: Dict[int, str] = {
    0: "Source Selection",
    1: "Agreement Terms",
    2: "Inspection",
    3: "Pricing",
    4: "Add-ons",
    5: "Billing & Payment",
    6: "Documents",
    7: "Terms & Signature",
    8: "Final Review",
}

INSPECTION_POINTS = 23


def validate_source(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    source = data.get("source")
    if not source:
        errors.append("Please select an agreement source")
    elif source != "direct" and not data.get("source_id"):
        errors.append("Please select a reservation or booking to convert")
    return _result(errors, [])


def validate_terms(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    warnings: List[str] = []
    step1 = _section(data, "step1")

    for key, message in (
        ("customer_id", "Please select a customer"),
        ("agreement_type", "Please select an agreement type"),
        ("rental_purpose", "Please select rental purpose"),
        ("pickup_location_id", "Please select pickup location"),
        ("dropoff_location_id", "Please select drop-off location"),
    ):
        if not step1.get(key):
            errors.append(message)

    pickup = parse_datetime(step1.get("pickup_at"))
    dropoff = parse_datetime(step1.get("dropoff_at"))
    if pickup is None:
        errors.append("Please select pickup date and time")
    if dropoff is None:
        errors.append("Please select drop-off date and time")
    if not _after(dropoff, pickup):
        errors.append("Drop-off date must be after pickup date")

    mileage = step1.get("mileage_package")
    if not mileage:
        errors.append("Please select a mileage package")
    elif mileage == "limited":
        if not _number(step1.get("included_km")):
            errors.append("Please specify included kilometers")
        if not _number(step1.get("excess_km_rate")):
            errors.append("Please specify excess km rate")

    if step1.get("cross_border_allowed") and not _list(step1.get("cross_border_countries")):
        warnings.append("Cross-border allowed but no countries specified")

    return _result(errors, warnings)


def validate_inspection(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    warnings: List[str] = []
    step2 = _section(data, "step2")

    checklist = _section(step2, "pre_handover_checklist")
    handover_keys = ("vehicle_cleaned", "vehicle_fueled", "documents_ready", "keys_available", "warning_lights_ok")
    if not all(checklist.get(k) for k in handover_keys):
        warnings.append("Pre-handover checklist not fully completed")

    fuel = _number(step2.get("fuel_level"))
    if fuel is None or fuel < 0 or fuel > 1:
        errors.append("Please set fuel level (0-100%)")

    odometer = _number(step2.get("odometer_reading"))
    if odometer is None or odometer <= 0:
        errors.append("Please enter a valid odometer reading")

    if not step2.get("odometer_photo"):
        warnings.append("Odometer photo not captured")
    if not step2.get("fuel_gauge_photo"):
        warnings.append("Fuel gauge photo not captured")

    photos = _section(step2, "photos")
    exterior = len(_list(photos.get("exterior")))
    interior = len(_list(photos.get("interior")))
    if exterior < 4:
        warnings.append(f"Only {exterior} exterior photos captured (recommended: 8)")
    if interior < 2:
        warnings.append(f"Only {interior} interior photos captured (recommended: 4)")

    completed_checks = sum(1 for v in _section(step2, "inspection_checklist").values() if v)
    if completed_checks < INSPECTION_POINTS:
        warnings.append(f"{completed_checks}/{INSPECTION_POINTS} inspection points completed")

    for idx, marker in enumerate(_list(step2.get("damage_markers")), start=1):
        if not isinstance(marker, Mapping) or not _list(marker.get("photos")):
            warnings.append(f"Damage marker #{idx} has no photos")

    return _result(errors, warnings)


def validate_pricing(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    warnings: List[str] = []
    step3 = _section(data, "step3")

    base_rate = _number(step3.get("base_rate"))
    if base_rate is None or base_rate <= 0:
        errors.append("Base rate must be greater than 0")
    if not step3.get("insurance_package"):
        errors.append("Please select an insurance package")
    excess = _number(step3.get("excess_amount"))
    if excess is None or excess <= 0:
        errors.append("Please set insurance excess amount")

    override = _section(step3, "rate_override")
    if override:
        if not override.get("reason"):
            errors.append("Rate override requires a reason")
        amount = _number(override.get("amount"))
        if amount is not None and base_rate:
            if abs(amount - base_rate) / base_rate > Decimal("0.2"):
                warnings.append("Rate override is more than 20% - approval may be required")

    breakdown = _section(step3, "pricing_breakdown")
    total = _number(breakdown.get("total"))
    if total is None or total <= 0:
        errors.append("Pricing breakdown is incomplete")

    discount = _number(step3.get("discount_amount"))
    if discount is not None and discount > 0:
        if not step3.get("discount_reason"):
            warnings.append("Discount applied without reason")
        subtotal = _number(breakdown.get("subtotal")) or Decimal("0")
        if discount > subtotal * Decimal("0.3"):
            warnings.append("Discount exceeds 30% - approval may be required")

    return _result(errors, warnings)


def validate_addons(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    step4 = _section(data, "step4")
    for addon in _list(step4.get("selected_addons")):
        if not isinstance(addon, Mapping):
            continue
        name = str(addon.get("name") or "Add-on")
        quantity = _number(addon.get("quantity"))
        if quantity is None or quantity <= 0:
            errors.append(f"{name}: Quantity must be greater than 0")
        total = _number(addon.get("total"))
        if total is not None and total < 0:
            errors.append(f"{name}: Total amount cannot be negative")
    return _result(errors, [])


def validate_billing(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    warnings: List[str] = []
    step5 = _section(data, "step5")

    billing_type = step5.get("billing_type")
    if not billing_type:
        errors.append("Please select billing type")
    info = _section(step5, "billing_info")
    if billing_type and billing_type != "same" and info:
        for key, label in (("name", "Billing name"), ("email", "Billing email"), ("phone", "Billing phone"), ("address", "Billing address")):
            if not info.get(key):
                errors.append(f"{label} is required")
        if billing_type == "corporate" and not info.get("tax_reg_no"):
            warnings.append("Tax registration number (TRN) recommended for corporate billing")

    if not step5.get("payment_method"):
        errors.append("Please select a payment method")
    schedule = step5.get("payment_schedule")
    if not schedule:
        errors.append("Please select payment schedule")

    advance = _section(step5, "advance_payment")
    if schedule == "upfront" and advance.get("status") != "completed":
        errors.append("Advance payment must be completed for upfront payment schedule")

    deposit = _section(step5, "security_deposit")
    if not deposit.get("method"):
        errors.append("Please select security deposit method")
    if deposit.get("status") not in {"authorized", "collected"}:
        warnings.append("Security deposit not yet authorized or collected")

    return _result(errors, warnings)


def validate_documents(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    warnings: List[str] = []
    step6 = _section(data, "step6")

    verified = {
        d.get("type")
        for d in _list(step6.get("documents"))
        if isinstance(d, Mapping) and d.get("verification_status") == "verified"
    }
    if "emirates_id" not in verified:
        errors.append("Emirates ID must be uploaded and verified")
    if "passport" not in verified:
        errors.append("Passport must be uploaded and verified")
    if "license" not in verified:
        errors.append("Driving license must be uploaded and verified")

    if not step6.get("emirates_id_verified"):
        warnings.append("Emirates ID verification pending")
    if not step6.get("license_verified"):
        warnings.append("License verification pending")
    if not step6.get("black_points_checked"):
        warnings.append("Black points check not performed")
    points = _number(step6.get("black_points_count"))
    if points is not None and points > 0:
        warnings.append(f"Driver has {points} black points")

    eligibility = step6.get("eligibility_status")
    if eligibility == "ineligible":
        errors.append("Driver is not eligible to rent a vehicle")
    elif eligibility == "review_required":
        warnings.append("Driver eligibility requires manual review")

    return _result(errors, warnings)


def validate_signature(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    step7 = _section(data, "step7")

    if not step7.get("terms_accepted"):
        errors.append("You must accept the terms and conditions")

    key_terms = _section(step7, "key_terms_acknowledged")
    for key, label in (
        ("fuel_policy", "the fuel policy"),
        ("insurance_coverage", "the insurance coverage"),
        ("tolls_fines_liability", "tolls/fines liability"),
        ("return_policy", "the return policy"),
        ("damage_liability", "damage liability"),
    ):
        if not key_terms.get(key):
            errors.append(f"Please acknowledge {label}")

    signature = _section(step7, "customer_signature")
    if not signature:
        errors.append("Customer signature is required")
    elif not signature.get("signer_name"):
        errors.append("Signer name is required")

    declarations = _section(step7, "customer_declarations")
    for key, label in (
        ("vehicle_condition_confirmed", "Please confirm vehicle condition"),
        ("keys_documents_received", "Please confirm keys and documents received"),
        ("terms_understood", "Please confirm terms understood"),
    ):
        if not declarations.get(key):
            errors.append(label)

    return _result(errors, [])


def validate_final_review(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    step8 = _section(data, "step8")

    if not step8.get("review_completed"):
        errors.append("Please complete the final review")
    distribution = _section(step8, "distribution_methods")
    if not any(distribution.get(k) for k in ("email", "sms", "whatsapp", "print")):
        errors.append("Please select at least one distribution method")

    for step, validator in enumerate(_AGREEMENT_VALIDATORS[:8]):
        if not validator(data).is_valid:
            errors.append(f"Step {step} ({AGREEMENT_STEP_NAMES[step]}) has errors")

    return _result(errors, [])


_AGREEMENT_VALIDATORS: Tuple[Validator, ...] = (
    validate_source,
    validate_terms,
    validate_inspection,
    validate_pricing,
    validate_addons,
    validate_billing,
    validate_documents,
    validate_signature,
)


def agreement_registry() -> ValidationRegistry:
    validators: Dict[int, Validator] = dict(enumerate(_AGREEMENT_VALIDATORS))
    validators[8] = validate_final_review
    return ValidationRegistry(validators, names=AGREEMENT_STEP_NAMES)


# ---------------------------------------------------------------------------
# Reservation builder (accordion sections)
# ---------------------------------------------------------------------------

RESERVATION_SECTION_NAMES: Dict[int, str] = {
    0: "General",
    1: "Rate & Taxes",
    2: "Vehicles & Drivers",
    3: "Reservation Lines",
    4: "Billing",
    5: "Adjustments & Deposits",
    6: "Notes",
}


def validate_reservation_general(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    general = _section(data, "general")
    for key, message in (
        ("entry_date", "Entry date is required"),
        ("reservation_method_id", "Reservation method is required"),
        ("currency_code", "Currency is required"),
        ("reservation_type_id", "Reservation type is required"),
        ("business_unit_id", "Business unit is required"),
        ("customer_id", "Customer is required"),
        ("payment_terms_id", "Payment terms is required"),
    ):
        if not general.get(key):
            errors.append(message)

    entry = parse_datetime(general.get("entry_date"))
    validity_to = parse_datetime(general.get("validity_date_to"))
    if entry is not None and validity_to is not None and validity_to < entry:
        errors.append("Validity date must be after entry date")

    if general.get("discount_type_id") == "percentage" and general.get("discount_value") not in (None, ""):
        pct = _number(general.get("discount_value"))
        if pct is None or pct < 0 or pct > 100:
            errors.append("Discount percentage must be between 0 and 100")

    return _result(errors, [])


_RATE_FIELDS = ("hourly_rate", "daily_rate", "weekly_rate", "monthly_rate", "kilometer_charge")


def validate_rate_taxes(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    warnings: List[str] = []
    rates = _section(data, "rate_taxes")

    has_panel_rate = False
    for key in _RATE_FIELDS:
        raw = rates.get(key)
        value = _number(raw)
        label = key.replace("_", " ").capitalize()
        if value is None:
            if raw not in (None, ""):
                errors.append(f"{label} must be a number")
            continue
        if value < 0:
            errors.append(f"{label} cannot be negative")
        elif value > 0 and key != "kilometer_charge":
            has_panel_rate = True
    if not rates.get("price_list_id") and not has_panel_rate:
        errors.append("Please select a price list or enter at least one rate")
    if rates.get("promotion_code") and not rates.get("price_list_id"):
        warnings.append("Promotion code entered without a price list")
    return _result(errors, warnings)


def validate_vehicles_drivers(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    warnings: List[str] = []
    prefill = _section(data, "prefill")

    for key, message in (
        ("vehicle_class_id", "Please select a vehicle class"),
        ("vehicle_id", "Please select a vehicle"),
        ("check_out_location_id", "Please select check-out location"),
        ("check_in_location_id", "Please select check-in location"),
    ):
        if not prefill.get(key):
            errors.append(message)

    check_out = parse_datetime(prefill.get("check_out_at"))
    check_in = parse_datetime(prefill.get("check_in_at"))
    if check_out is None:
        errors.append("Please select check-out date and time")
    if check_in is None:
        errors.append("Please select check-in date and time")
    if not _after(check_in, check_out):
        errors.append("Check-in date must be after check-out date")

    drivers = [d for d in _list(prefill.get("drivers")) if isinstance(d, Mapping)]
    primaries = sum(1 for d in drivers if d.get("role") == "PRIMARY")
    if drivers and primaries != 1:
        warnings.append("Exactly one primary driver is expected")

    return _result(errors, warnings)


def validate_reservation_lines(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    warnings: List[str] = []
    lines = _list(data.get("lines"))
    if not lines:
        errors.append("Please add at least one reservation line")
    current_hash = data.get("rate_context_hash")
    stale = [
        line for line in lines
        if isinstance(line, Mapping) and current_hash and line.get("rate_context_hash_at_pricing") != current_hash
    ]
    if stale:
        warnings.append(f"{len(stale)} line(s) were priced with different rates; reprice to refresh totals")
    return _result(errors, warnings)


def validate_reservation_billing(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    billing = _section(data, "billing")
    if not billing.get("billing_type"):
        errors.append("Please select billing type")
    elif billing.get("billing_type") == "other":
        for key, label in (
            ("customer_name", "Billing customer name"),
            ("email", "Billing email"),
            ("phone", "Billing phone"),
            ("address", "Billing address"),
        ):
            if not billing.get(key):
                errors.append(f"{label} is required")
    return _result(errors, [])


def validate_adjustments(data: Mapping[str, Any]) -> StepValidation:
    errors: List[str] = []
    adjustments = _section(data, "adjustments")
    for key, label in (
        ("advance_payment", "Advance payment"),
        ("security_deposit_paid", "Security deposit"),
        ("cancellation_charges", "Cancellation charges"),
    ):
        raw = adjustments.get(key)
        value = _number(raw)
        if value is None and raw not in (None, ""):
            errors.append(f"{label} must be a number")
        elif value is not None and value < 0:
            errors.append(f"{label} cannot be negative")
    advance = _number(adjustments.get("advance_payment"))
    if advance and not adjustments.get("payment_method_id"):
        errors.append("Please select a payment method for the advance payment")
    return _result(errors, [])


def validate_notes(data: Mapping[str, Any]) -> StepValidation:
    return StepValidation(is_valid=True)


def reservation_registry() -> ValidationRegistry:
    validators: Dict[int, Validator] = {
        0: validate_reservation_general,
        1: validate_rate_taxes,
        2: validate_vehicles_drivers,
        3: validate_reservation_lines,
        4: validate_reservation_billing,
        5: validate_adjustments,
        6: validate_notes,
    }
    return ValidationRegistry(validators, names=RESERVATION_SECTION_NAMES)
