from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Reservation lines carry a flat 10% tax; the agreement breakdown uses UAE VAT.
LINE_TAX_RATE = Decimal("0.10")
AGREEMENT_VAT_RATE = Decimal("0.05")

ADDITIONAL_DRIVER_FEE = Decimal("15.00")
UNDERAGE_DRIVER_FEE = Decimal("20.00")
UNDERAGE_LIMIT_YEARS = 25

MONTHLY_THRESHOLD_DAYS = 28
WEEKLY_THRESHOLD_DAYS = 7

COMPREHENSIVE_INSURANCE_PER_DAY = Decimal("50")
BASIC_INSURANCE_PER_DAY = Decimal("25")


class PricingError(ValueError):
    pass


class PriceSource(str, Enum):
    PANEL = "panel"
    PRICELIST = "pricelist"


class RateTier(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class DriverRole(str, Enum):
    PRIMARY = "PRIMARY"
    ADDITIONAL = "ADDITIONAL"


_TIER_LENGTH = {
    RateTier.HOURLY: timedelta(hours=1),
    RateTier.DAILY: timedelta(days=1),
    RateTier.WEEKLY: timedelta(days=7),
    RateTier.MONTHLY: timedelta(days=30),
}


def to_money(value: object) -> Decimal:
    """
    Normalize a rate/amount to a cent-quantized Decimal. None and "" count as zero.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, (int, float, str)):
        d = Decimal(str(value))
    else:
        raise PricingError(f"Not a monetary value: {value!r}")
    if not d.is_finite():
        raise PricingError(f"Not a monetary value: {value!r}")
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RateContext:
    price_list_id: str = ""
    promotion_code: str = ""
    hourly_rate: Decimal = ZERO
    daily_rate: Decimal = ZERO
    weekly_rate: Decimal = ZERO
    monthly_rate: Decimal = ZERO
    kilometer_charge: Decimal = ZERO
    daily_kilometer_allowed: int = 0

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> "RateContext":
        return cls(
            price_list_id=str(raw.get("price_list_id") or ""),
            promotion_code=str(raw.get("promotion_code") or ""),
            hourly_rate=to_money(raw.get("hourly_rate")),
            daily_rate=to_money(raw.get("daily_rate")),
            weekly_rate=to_money(raw.get("weekly_rate")),
            monthly_rate=to_money(raw.get("monthly_rate")),
            kilometer_charge=to_money(raw.get("kilometer_charge")),
            daily_kilometer_allowed=int(raw.get("daily_kilometer_allowed") or 0),
        )

    def rate_for(self, tier: RateTier) -> Decimal:
        return to_money(getattr(self, f"{tier.value}_rate"))


@dataclass(frozen=True)
class FallbackRates:
    hourly: Decimal = Decimal("25.00")
    daily: Decimal = Decimal("50.00")
    weekly: Decimal = Decimal("300.00")
    monthly: Decimal = Decimal("1200.00")

    def rate_for(self, tier: RateTier) -> Decimal:
        return to_money(getattr(self, tier.value))


NO_FALLBACK_RATES = FallbackRates(hourly=ZERO, daily=ZERO, weekly=ZERO, monthly=ZERO)


def rate_context_hash(ctx: RateContext) -> str:
    """
    Structural hash over every RateContext field. A change here is the only staleness trigger.
    """
    payload = {}
    for f in fields(ctx):
        value = getattr(ctx, f.name)
        payload[f.name] = str(to_money(value)) if isinstance(value, (Decimal, float)) else value
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def wall_clock_pair(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    """
    Make two datetimes comparable. A naive value paired with an aware one is read on the wall clock,
    so both lose their offset; pairs that already agree are returned as they are.
    """
    if (start.tzinfo is None) != (end.tzinfo is None):
        return start.replace(tzinfo=None), end.replace(tzinfo=None)
    return start, end


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not isinstance(self.start, datetime) or not isinstance(self.end, datetime):
            raise PricingError("DateRange requires datetime start and end")
        start, end = wall_clock_pair(self.start, self.end)
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)
        if self.end <= self.start:
            raise PricingError(f"Return must be after pickup (got {self.start.isoformat()} -> {self.end.isoformat()})")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class LinePrice:
    line_net_price: Decimal
    source: PriceSource
    tier: RateTier
    units: int


def _units(duration: timedelta, tier: RateTier) -> int:
    # Integer microsecond math; float division would misround exact multiples.
    length = _TIER_LENGTH[tier]
    total = duration // timedelta(microseconds=1)
    unit = length // timedelta(microseconds=1)
    return max(1, -(-total // unit))


def _candidate_tiers(duration: timedelta) -> Tuple[RateTier, ...]:
    if duration < timedelta(hours=24):
        return (RateTier.HOURLY, RateTier.DAILY)
    if duration >= timedelta(days=MONTHLY_THRESHOLD_DAYS):
        return (RateTier.MONTHLY, RateTier.WEEKLY, RateTier.DAILY)
    if duration >= timedelta(days=WEEKLY_THRESHOLD_DAYS):
        return (RateTier.WEEKLY, RateTier.DAILY)
    return (RateTier.DAILY,)


def _resolve_rate(tier: RateTier, ctx: RateContext, fallback: FallbackRates) -> Optional[Tuple[Decimal, PriceSource]]:
    panel = ctx.rate_for(tier)
    if panel > 0:
        return panel, PriceSource.PANEL
    listed = fallback.rate_for(tier)
    if listed > 0:
        return listed, PriceSource.PRICELIST
    return None


def price_line(rate_context: RateContext, start: datetime, end: datetime, fallback_rates: FallbackRates) -> LinePrice:
    """
    Price a rental period.

    Picks the coarsest tier the duration qualifies for (hourly only under 24h), walking down to
    finer tiers when a tier has no rate on either the panel or the price list. Partial units are
    rounded up: 25 hours on a daily tier bills 2 days.
    """
    start, end = wall_clock_pair(start, end)
    if end <= start:
        raise PricingError(f"Return must be after pickup (got {start.isoformat()} -> {end.isoformat()})")
    duration = end - start

    for tier in _candidate_tiers(duration):
        resolved = _resolve_rate(tier, rate_context, fallback_rates)
        if resolved is None:
            continue
        rate, source = resolved
        units = _units(duration, tier)
        return LinePrice(
            line_net_price=(rate * units).quantize(CENT, rounding=ROUND_HALF_UP),
            source=source,
            tier=tier,
            units=units,
        )

    return LinePrice(
        line_net_price=ZERO,
        source=PriceSource.PRICELIST,
        tier=RateTier.DAILY,
        units=_units(duration, RateTier.DAILY),
    )


@dataclass(frozen=True)
class DriverAssignment:
    driver_id: str
    role: DriverRole
    additional_driver_fee: Decimal = ZERO
    underage_fee: Decimal = ZERO

    @property
    def total_fees(self) -> Decimal:
        return to_money(self.additional_driver_fee) + to_money(self.underage_fee)


@dataclass(frozen=True)
class LineDiscount:
    discount_id: str
    amount: Decimal


@dataclass(frozen=True)
class PricedLine:
    id: str
    line_no: int
    vehicle_class_id: str
    vehicle_id: str
    date_range: Optional[DateRange]
    out_location_id: str
    in_location_id: str
    base_price: Decimal
    tax_value: Decimal
    line_total: Decimal
    price_source: PriceSource
    rate_context_hash_at_pricing: str
    drivers: Tuple[DriverAssignment, ...] = ()
    discounts: Tuple[LineDiscount, ...] = ()

    @property
    def discount_total(self) -> Decimal:
        return sum((to_money(d.amount) for d in self.discounts), ZERO)


def age_on(date_of_birth: date, as_of: date) -> int:
    years = as_of.year - date_of_birth.year
    if (as_of.month, as_of.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


@dataclass(frozen=True)
class DriverInput:
    driver_id: str
    role: DriverRole = DriverRole.ADDITIONAL
    date_of_birth: Optional[date] = None


def assign_drivers(
    drivers: Sequence[DriverInput],
    *,
    as_of: date,
    additional_driver_fee: Decimal = ADDITIONAL_DRIVER_FEE,
    underage_fee: Decimal = UNDERAGE_DRIVER_FEE,
) -> Tuple[DriverAssignment, ...]:
    """
    Fix per-driver fees at line-creation time. Age is evaluated on `as_of`, so repricing later
    never changes a driver's underage status.
    """
    out: List[DriverAssignment] = []
    for d in drivers:
        addl = to_money(additional_driver_fee) if d.role != DriverRole.PRIMARY else ZERO
        under = ZERO
        if d.date_of_birth is not None and age_on(d.date_of_birth, as_of) < UNDERAGE_LIMIT_YEARS:
            under = to_money(underage_fee)
        out.append(DriverAssignment(driver_id=d.driver_id, role=d.role, additional_driver_fee=addl, underage_fee=under))
    return tuple(out)


def _totals(base_price: Decimal, discounts: Iterable[LineDiscount]) -> Tuple[Decimal, Decimal]:
    discount = sum((to_money(d.amount) for d in discounts), ZERO)
    taxable = max(ZERO, to_money(base_price) - discount)
    tax = (taxable * LINE_TAX_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    return tax, taxable + tax


def build_priced_line(
    *,
    line_id: str,
    line_no: int,
    vehicle_class_id: str,
    vehicle_id: str,
    date_range: DateRange,
    out_location_id: str,
    in_location_id: str,
    rate_context: RateContext,
    fallback_rates: FallbackRates,
    drivers: Sequence[DriverAssignment] = (),
    discounts: Sequence[LineDiscount] = (),
) -> PricedLine:
    priced = price_line(rate_context, date_range.start, date_range.end, fallback_rates)
    base = priced.line_net_price + sum((d.total_fees for d in drivers), ZERO)
    tax, total = _totals(base, discounts)
    return PricedLine(
        id=line_id,
        line_no=line_no,
        vehicle_class_id=vehicle_class_id,
        vehicle_id=vehicle_id,
        date_range=date_range,
        out_location_id=out_location_id,
        in_location_id=in_location_id,
        base_price=base,
        tax_value=tax,
        line_total=total,
        price_source=priced.source,
        rate_context_hash_at_pricing=rate_context_hash(rate_context),
        drivers=tuple(drivers),
        discounts=tuple(discounts),
    )


def reprice(
    existing_lines: Sequence[PricedLine],
    rate_context: RateContext,
    fallback_rates: FallbackRates,
) -> Tuple[PricedLine, ...]:
    """
    Re-derive every dated line from scratch against `rate_context`.

    Identity, drivers (with their stored fees) and discounts are kept; every derived pricing field
    is overwritten. Lines without a date range pass through untouched.
    """
    ctx_hash = rate_context_hash(rate_context)
    out: List[PricedLine] = []
    for line in existing_lines:
        if line.date_range is None:
            out.append(line)
            continue
        priced = price_line(rate_context, line.date_range.start, line.date_range.end, fallback_rates)
        base = priced.line_net_price + sum((d.total_fees for d in line.drivers), ZERO)
        tax, total = _totals(base, line.discounts)
        out.append(
            replace(
                line,
                base_price=base,
                tax_value=tax,
                line_total=total,
                price_source=priced.source,
                rate_context_hash_at_pricing=ctx_hash,
            )
        )
    return tuple(out)


def override_line_price(line: PricedLine, net_price: object) -> PricedLine:
    """
    Manual price edit on a single line: keeps the pricing provenance, recomputes tax and total.
    """
    base = to_money(net_price)
    if base < 0:
        raise PricingError("Line price cannot be negative")
    tax, total = _totals(base, line.discounts)
    return replace(line, base_price=base, tax_value=tax, line_total=total)


def stale_lines(lines: Sequence[PricedLine], rate_context: RateContext) -> Tuple[PricedLine, ...]:
    current = rate_context_hash(rate_context)
    return tuple(line for line in lines if line.date_range is not None and line.rate_context_hash_at_pricing != current)


@dataclass
class StalenessTracker:
    """
    Remembers the last RateContext hash seen and raises an advisory flag when it moves while
    priced lines exist. The flag is cleared only by `acknowledge()` (reprice or dismiss).
    """

    last_hash: Optional[str] = None
    stale: bool = False

    def observe(self, rate_context: RateContext, line_count: int) -> bool:
        current = rate_context_hash(rate_context)
        fired = self.last_hash is not None and current != self.last_hash and line_count > 0
        self.last_hash = current
        if fired:
            self.stale = True
            logger.info("Rate context changed with %d priced line(s); pricing is stale", line_count)
        return fired

    def acknowledge(self) -> None:
        self.stale = False


# ---------------------------------------------------------------------------
# Agreement pricing breakdown (wizard step 3)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PricingBreakdown:
    base_rate: Decimal
    insurance: Decimal
    maintenance: Decimal
    addons: Decimal
    subtotal: Decimal
    discount: Decimal
    taxable_amount: Decimal
    vat: Decimal
    total: Decimal

    def as_dict(self) -> dict[str, str]:
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}


def rental_days(start: Optional[datetime], end: Optional[datetime]) -> int:
    if start is None or end is None:
        return 1
    start, end = wall_clock_pair(start, end)
    if end <= start:
        return 1
    return _units(end - start, RateTier.DAILY)


def compute_pricing_breakdown(pricing: Mapping[str, object], *, addons_total: object = ZERO, days: int = 1) -> PricingBreakdown:
    """
    Agreement totals: (rate x days) + insurance + maintenance + add-ons - discount, plus 5% VAT.

    `addons_total` is passed in explicitly so the breakdown never shows a stale add-ons figure.
    """
    days = max(1, int(days))
    override = pricing.get("rate_override")
    if isinstance(override, Mapping) and override.get("amount") not in (None, ""):
        daily_rate = to_money(override.get("amount"))
    else:
        daily_rate = to_money(pricing.get("base_rate"))
    per_day_insurance = (
        COMPREHENSIVE_INSURANCE_PER_DAY if pricing.get("insurance_package") == "comprehensive" else BASIC_INSURANCE_PER_DAY
    )
    maintenance_per_day = to_money(pricing.get("maintenance_cost")) if pricing.get("maintenance_included") else ZERO

    base = (daily_rate * days).quantize(CENT)
    insurance = to_money(per_day_insurance * days)
    maintenance = (maintenance_per_day * days).quantize(CENT)
    addons = to_money(addons_total)
    subtotal = base + insurance + maintenance + addons
    discount = to_money(pricing.get("discount_amount"))
    taxable = max(ZERO, subtotal - discount)
    vat = (taxable * AGREEMENT_VAT_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    return PricingBreakdown(
        base_rate=base,
        insurance=insurance,
        maintenance=maintenance,
        addons=addons,
        subtotal=subtotal,
        discount=discount,
        taxable_amount=taxable,
        vat=vat,
        total=taxable + vat,
    )


def addons_total(addons: Sequence[Mapping[str, object]]) -> Decimal:
    total = ZERO
    for addon in addons:
        if "total" in addon and addon.get("total") not in (None, ""):
            total += to_money(addon.get("total"))
        else:
            total += to_money(addon.get("unit_price")) * int(addon.get("quantity") or 0)
    return total.quantize(CENT)


# ---------------------------------------------------------------------------
# Reservation summary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MiscCharge:
    charge_id: str
    amount: Decimal
    taxable: bool


DEFAULT_MISC_CHARGES: Tuple[MiscCharge, ...] = (
    MiscCharge("insurance", Decimal("750.00"), True),
    MiscCharge("gps", Decimal("450.00"), True),
    MiscCharge("cleaning", Decimal("900.00"), False),
    MiscCharge("fuel", Decimal("1500.00"), True),
    MiscCharge("delivery", Decimal("600.00"), False),
)


@dataclass(frozen=True)
class ReservationSummary:
    base_rate: Decimal
    promotion: Decimal
    final_base_rate: Decimal
    misc_taxable: Decimal
    misc_non_taxable: Decimal
    pre_adjustment: Decimal
    subtotal: Decimal
    tax_total: Decimal
    estimated_total: Decimal
    grand_total: Decimal
    advance_paid: Decimal
    security_deposit_paid: Decimal
    balance_due: Decimal
    notes: Tuple[str, ...] = field(default=())


def summarize_reservation(
    lines: Sequence[PricedLine],
    *,
    selected_misc_charges: Sequence[str] = (),
    misc_charges: Sequence[MiscCharge] = DEFAULT_MISC_CHARGES,
    promotion_code: str = "",
    promotion_discount: object = ZERO,
    pre_adjustment: object = ZERO,
    advance_payment: object = ZERO,
    security_deposit_paid: object = ZERO,
    cancellation_charges: object = ZERO,
) -> ReservationSummary:
    lines_net = sum((to_money(line.base_price) - line.discount_total for line in lines), ZERO)
    tax_on_lines = sum((to_money(line.tax_value) for line in lines), ZERO)

    selected = set(selected_misc_charges)
    chosen = [c for c in misc_charges if c.charge_id in selected]
    misc_taxable = sum((to_money(c.amount) for c in chosen if c.taxable), ZERO)
    misc_non_taxable = sum((to_money(c.amount) for c in chosen if not c.taxable), ZERO)

    notes: List[str] = []
    # Misc charges borrow the effective line tax rate; with no lines fall back to the flat line rate.
    avg_rate = (tax_on_lines / lines_net) if lines_net > 0 else LINE_TAX_RATE
    tax_on_misc = (misc_taxable * avg_rate).quantize(CENT, rounding=ROUND_HALF_UP)

    promotion = -to_money(promotion_discount) if promotion_code else ZERO
    if promotion_discount and not promotion_code:
        notes.append("Promotion discount ignored: no promotion code entered.")
    final_base = lines_net + promotion
    pre_adj = to_money(pre_adjustment)
    subtotal = final_base + misc_taxable + misc_non_taxable + pre_adj
    tax_total = tax_on_lines + tax_on_misc
    estimated = subtotal + tax_total
    grand = estimated + to_money(cancellation_charges)
    advance = to_money(advance_payment)
    deposit = to_money(security_deposit_paid)
    balance = max(ZERO, grand - advance - deposit)

    return ReservationSummary(
        base_rate=lines_net,
        promotion=promotion,
        final_base_rate=final_base,
        misc_taxable=misc_taxable,
        misc_non_taxable=misc_non_taxable,
        pre_adjustment=pre_adj,
        subtotal=subtotal,
        tax_total=tax_total,
        estimated_total=estimated,
        grand_total=grand,
        advance_paid=advance,
        security_deposit_paid=deposit,
        balance_due=balance,
        notes=tuple(notes),
    )


def money_str(amount: Decimal) -> str:
    return f"{to_money(amount):,.2f}"
