from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import Iterable, Literal, Mapping, Union

logger = logging.getLogger(__name__)

DiscountType = Literal["percentage", "fixed"]
Number = Union[int, float, str, Decimal]

_CENT = Decimal("0.01")
_ZERO = Decimal("0")
_SECONDS_PER_DAY = 24 * 60 * 60


def _d(x: Number) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


@dataclass(frozen=True)
class PaymentLimit:
    min: Decimal
    max: Decimal


_EXCHANGE_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.85"),
    "SGD": Decimal("1.35"),
    "THB": Decimal("32.5"),
}

# Card-processor charge limits, in major units of each currency.
_PAYMENT_LIMITS: dict[str, PaymentLimit] = {
    "USD": PaymentLimit(min=Decimal("0.50"), max=Decimal("999999.99")),
    "EUR": PaymentLimit(min=Decimal("0.50"), max=Decimal("999999.99")),
    "SGD": PaymentLimit(min=Decimal("0.50"), max=Decimal("999999.99")),
    "THB": PaymentLimit(min=Decimal("20"), max=Decimal("999999.99")),
}

_CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "SGD": "S$",
    "THB": "฿",
}


@dataclass(frozen=True)
class PricingConfig:
    """
    Static pricing configuration.

    Rates are reference values, not live FX. Amounts in the engine are in the
    reference currency (rate 1) until the final conversion step.
    """

    tax_rate: Decimal = Decimal("0.095")
    gratuity_rate: Decimal = Decimal("0.12")
    exchange_rates: Mapping[str, Decimal] = field(default_factory=lambda: dict(_EXCHANGE_RATES))
    payment_limits: Mapping[str, PaymentLimit] = field(default_factory=lambda: dict(_PAYMENT_LIMITS))

    def __post_init__(self) -> None:
        # Read-only views over private copies; one caller cannot change rates for another.
        object.__setattr__(self, "exchange_rates", MappingProxyType(dict(self.exchange_rates)))
        object.__setattr__(self, "payment_limits", MappingProxyType(dict(self.payment_limits)))


DEFAULT_CONFIG = PricingConfig()


@dataclass(frozen=True)
class AgeRequirements:
    seniors: int | None = None  # minimum senior count
    children: int | None = None  # maximum child count


@dataclass(frozen=True)
class PromotionConditions:
    """
    Eligibility predicates for a promotion. All of them must hold.

    A field left unset (None, 0 or empty) imposes no constraint.
    """

    min_guests: int | None = None
    max_guests: int | None = None
    min_booking_amount: Decimal | None = None
    max_booking_amount: Decimal | None = None
    # Days before departure: early booking needs at least this many,
    # last minute at most this many.
    early_booking_days: int | None = None
    last_minute_days: int | None = None
    group_size: int | None = None
    cruise_lines: tuple[str, ...] | None = None
    destinations: tuple[str, ...] | None = None
    cabin_types: tuple[str, ...] | None = None
    age_requirements: AgeRequirements | None = None
    coupon_code: str | None = None


@dataclass(frozen=True)
class PromotionRule:
    id: str
    name: str
    description: str
    discount_type: DiscountType
    discount_value: Decimal
    valid_from: datetime
    valid_to: datetime
    conditions: PromotionConditions = field(default_factory=PromotionConditions)
    max_discount: Decimal | None = None  # cap, percentage rules only
    is_active: bool = True
    is_combinable: bool = False
    priority: int = 1  # higher first
    max_uses: int | None = None
    current_uses: int = 0


@dataclass(frozen=True)
class BookingData:
    guest_count: int
    adult_count: int = 0
    child_count: int = 0
    senior_count: int = 0
    cruise_line: str | None = None
    destination: str | None = None
    cabin_type: str | None = None
    departure_date: date | datetime | str | None = None
    coupon_code: str | None = None


@dataclass(frozen=True)
class Extra:
    price: Decimal
    quantity: int


@dataclass(frozen=True)
class AppliedPromotion:
    id: str
    name: str
    discount_type: DiscountType
    discount_value: Decimal
    discount_amount: Decimal


@dataclass(frozen=True)
class PricingBreakdown:
    base_cruise_fare: Decimal
    cabin_upgrade: Decimal
    extras_total: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    gratuity_amount: Decimal
    discount_amount: Decimal
    final_total: Decimal
    currency: str
    applied_promotions: tuple[AppliedPromotion, ...]


@dataclass(frozen=True)
class PaymentValidation:
    valid: bool
    error: str | None = None


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _as_datetime(value: date | datetime | str) -> datetime:
    """
    Departure dates arrive as dates, datetimes or ISO strings.
    A bare date means midnight UTC of that day.
    """
    if isinstance(value, str):
        s = value.strip()
        if len(s) == 10:
            return datetime.combine(date.fromisoformat(s), time.min, tzinfo=timezone.utc)
        return _utc(datetime.fromisoformat(s.replace("Z", "+00:00")))
    if isinstance(value, datetime):
        return _utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def days_until_departure(departure: date | datetime | str, now: datetime) -> int:
    delta = _as_datetime(departure) - _utc(now)
    return math.ceil(delta.total_seconds() / _SECONDS_PER_DAY)


def _norm_code(code: str | None) -> str:
    return (code or "").strip().upper()


def ineligibility_reasons(
    promotion: PromotionRule,
    booking: BookingData,
    subtotal: Number,
    *,
    now: datetime | None = None,
) -> list[str]:
    """Every reason `promotion` does not apply to `booking`; empty when eligible."""
    now = _utc(now or datetime.now(tz=timezone.utc))
    amount = _d(subtotal)
    reasons: list[str] = []

    if not promotion.is_active:
        reasons.append("Promotion is not active")
    if now < _utc(promotion.valid_from):
        reasons.append(f"Promotion starts {promotion.valid_from.isoformat()}")
    if now > _utc(promotion.valid_to):
        reasons.append(f"Promotion ended {promotion.valid_to.isoformat()}")
    if promotion.max_uses is not None and promotion.current_uses >= promotion.max_uses:
        reasons.append("Promotion has reached its redemption limit")

    c = promotion.conditions

    if c.min_guests and booking.guest_count < c.min_guests:
        reasons.append(f"Minimum {c.min_guests} guests required. Current booking: {booking.guest_count} guests")
    if c.max_guests and booking.guest_count > c.max_guests:
        reasons.append(f"Maximum {c.max_guests} guests allowed. Current booking: {booking.guest_count} guests")

    if c.min_booking_amount and amount < c.min_booking_amount:
        reasons.append(f"Minimum booking amount of {c.min_booking_amount} required. Current booking: {amount:.2f}")
    if c.max_booking_amount and amount > c.max_booking_amount:
        reasons.append(f"Maximum booking amount of {c.max_booking_amount} allowed. Current booking: {amount:.2f}")

    if c.early_booking_days or c.last_minute_days:
        if booking.departure_date is None:
            reasons.append("Departure date is required for this promotion")
        else:
            days = days_until_departure(booking.departure_date, now)
            if c.early_booking_days and days < c.early_booking_days:
                reasons.append(
                    f"Requires booking at least {c.early_booking_days} days in advance. Current: {days} days until departure"
                )
            if c.last_minute_days and days > c.last_minute_days:
                reasons.append(
                    f"Requires booking within {c.last_minute_days} days of departure. Current: {days} days until departure"
                )

    if c.group_size and booking.guest_count < c.group_size:
        reasons.append(f"Group of at least {c.group_size} guests required")

    if c.cruise_lines and booking.cruise_line not in c.cruise_lines:
        reasons.append(f"Only valid for {', '.join(c.cruise_lines)} cruise lines")
    if c.destinations and booking.destination not in c.destinations:
        reasons.append(f"Only valid for {', '.join(c.destinations)} destinations")
    if c.cabin_types and booking.cabin_type not in c.cabin_types:
        reasons.append(f"Only valid for {', '.join(c.cabin_types)} cabins")

    age = c.age_requirements
    if age:
        if age.seniors and booking.senior_count < age.seniors:
            reasons.append(f"At least {age.seniors} senior guests required")
        if age.children and booking.child_count > age.children:
            reasons.append(f"At most {age.children} children allowed")

    if c.coupon_code and _norm_code(c.coupon_code) != _norm_code(booking.coupon_code):
        reasons.append("Invalid or missing coupon code")

    return reasons


def eligible_promotions(
    promotions: Iterable[PromotionRule],
    booking: BookingData,
    subtotal: Number,
    *,
    now: datetime | None = None,
) -> list[PromotionRule]:
    # Checked against the pre-tax subtotal: eligibility is about cruise spend.
    now = now or datetime.now(tz=timezone.utc)
    return [p for p in promotions if not ineligibility_reasons(p, booking, subtotal, now=now)]


def apply_discounts(
    promotions: Iterable[PromotionRule],
    total_amount: Number,
) -> tuple[Decimal, list[AppliedPromotion]]:
    """
    Apply already-eligible promotions to `total_amount`, highest priority first.

    - percentage rules discount the amount still remaining, capped at max_discount
    - fixed rules never take the remaining amount below zero
    - a non-combinable rule that grants a discount is the last one applied
    """
    # sorted() is stable, so equal priorities keep catalog order.
    ordered = sorted(promotions, key=lambda p: p.priority, reverse=True)

    applied: list[AppliedPromotion] = []
    total_discount = _ZERO
    remaining = _d(total_amount)

    for promo in ordered:
        value = _d(promo.discount_value)
        if promo.discount_type == "percentage":
            discount = remaining * value / 100
            if promo.max_discount and discount > promo.max_discount:
                discount = _d(promo.max_discount)
        else:
            discount = min(value, remaining)

        if discount <= 0:
            continue

        applied.append(
            AppliedPromotion(
                id=promo.id,
                name=promo.name,
                discount_type=promo.discount_type,
                discount_value=value,
                discount_amount=discount,
            )
        )
        total_discount += discount

        if not promo.is_combinable:
            break
        remaining -= discount

    return total_discount, applied


def _exchange_rate(currency: str, config: PricingConfig) -> Decimal:
    rate = config.exchange_rates.get(_norm_code(currency))
    if rate is None:
        logger.warning("No exchange rate for %s; pricing in reference currency", currency)
        return Decimal("1")
    return rate


def _round_money(amount: Decimal) -> Decimal:
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def convert_amount(amount: Number, currency: str, *, config: PricingConfig = DEFAULT_CONFIG) -> Decimal:
    """Reference-currency amount -> `currency`, rounded half-up to cents."""
    return _round_money(_d(amount) * _exchange_rate(currency, config))


def supported_currencies(config: PricingConfig = DEFAULT_CONFIG) -> list[str]:
    return list(config.exchange_rates.keys())


def calculate_pricing(
    base_price: Number,
    cabin_multiplier: Number,
    guest_count: int,
    extras: Iterable[Extra],
    promotions: Iterable[PromotionRule],
    booking: BookingData,
    target_currency: str = "USD",
    *,
    now: datetime | None = None,
    config: PricingConfig = DEFAULT_CONFIG,
) -> PricingBreakdown:
    base = _d(base_price)
    guests = _d(guest_count)

    base_cruise_fare = base * guests
    # Negative when the cabin is priced below the base fare; not clamped.
    cabin_upgrade = base * (_d(cabin_multiplier) - 1) * guests
    extras_total = sum((_d(e.price) * e.quantity for e in extras), _ZERO)
    subtotal = base_cruise_fare + cabin_upgrade + extras_total

    tax_amount = subtotal * config.tax_rate
    gratuity_amount = subtotal * config.gratuity_rate
    total_before_discounts = subtotal + tax_amount + gratuity_amount

    eligible = eligible_promotions(promotions, booking, subtotal, now=now)
    discount_amount, applied = apply_discounts(eligible, total_before_discounts)

    final_total = max(_ZERO, total_before_discounts - discount_amount)

    currency = _norm_code(target_currency) or "USD"
    rate = _exchange_rate(currency, config)

    def conv(x: Decimal) -> Decimal:
        return _round_money(x * rate)

    return PricingBreakdown(
        base_cruise_fare=conv(base_cruise_fare),
        cabin_upgrade=conv(cabin_upgrade),
        extras_total=conv(extras_total),
        subtotal=conv(subtotal),
        tax_amount=conv(tax_amount),
        gratuity_amount=conv(gratuity_amount),
        discount_amount=conv(discount_amount),
        final_total=conv(final_total),
        currency=currency,
        # Each converted on its own; the sum may drift from discount_amount by a cent.
        applied_promotions=tuple(
            AppliedPromotion(
                id=a.id,
                name=a.name,
                discount_type=a.discount_type,
                discount_value=a.discount_value,
                discount_amount=conv(a.discount_amount),
            )
            for a in applied
        ),
    )


def validate_payment_amount(
    amount: Number,
    currency: str,
    *,
    config: PricingConfig = DEFAULT_CONFIG,
) -> PaymentValidation:
    """Check a charge against the card processor's per-currency limits. Advisory only."""
    code = _norm_code(currency)
    limit = config.payment_limits.get(code)
    if limit is None:
        return PaymentValidation(valid=False, error=f"Unsupported currency: {currency}")

    value = _d(amount)
    if value < limit.min:
        return PaymentValidation(valid=False, error=f"Amount too small. Minimum {code} {limit.min}")
    if value > limit.max:
        return PaymentValidation(valid=False, error=f"Amount too large. Maximum {code} {limit.max}")
    return PaymentValidation(valid=True)


def to_minor_units(amount: Number) -> int:
    """Major units -> smallest currency unit (cents), as payment intents expect."""
    return int((_d(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def validate_charge_minor_units(
    amount_minor: int,
    currency: str,
    *,
    config: PricingConfig = DEFAULT_CONFIG,
) -> PaymentValidation:
    # Same limit table as validate_payment_amount, read in minor units.
    return validate_payment_amount(Decimal(int(amount_minor)) / 100, currency, config=config)


def format_money(amount: Number, currency: str) -> str:
    code = _norm_code(currency)
    value = _d(amount)
    symbol = _CURRENCY_SYMBOLS.get(code)
    sign = "-" if value < 0 else ""
    body = f"{abs(value):,.2f}"
    if symbol is None:
        return f"{sign}{code} {body}"
    return f"{sign}{symbol}{body}"


def format_discount_text(promotion: PromotionRule) -> str:
    value = _d(promotion.discount_value).normalize()
    text = f"{value:f}"
    if promotion.discount_type == "percentage":
        return f"{text}% OFF"
    return f"${text} OFF"
