from __future__ import annotations

import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import domain, persistence

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD").strip().upper() or "USD"

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Cruise Pricing & Promotions Service",
    version="0.1.0",
    description="Checkout price breakdowns, stackable promotions, and payment amount checks.",
)

_PROMOTIONS: dict[str, domain.PromotionRule] | None = None  # id -> rule, catalog order


def _catalog() -> dict[str, domain.PromotionRule]:
    global _PROMOTIONS
    if _PROMOTIONS is None:
        _PROMOTIONS = {p.id: p for p in persistence.load_promotions()}
        logger.info("Loaded %d promotions from %s", len(_PROMOTIONS), persistence.DATA_FILE)
    return _PROMOTIONS


def _normalize_currency(code: str | None, *, field: str = "currency") -> str:
    c = (code or "").strip().upper()
    if len(c) != 3 or not c.isalpha():
        raise HTTPException(status_code=400, detail=f"{field} must be a 3-letter ISO currency code")
    return c


def _money(x: Decimal) -> float:
    return float(x)


class AgeRequirementsIn(BaseModel):
    seniors: int | None = Field(default=None, ge=0, description="Minimum senior count")
    children: int | None = Field(default=None, ge=0, description="Maximum child count")


class ConditionsIn(BaseModel):
    min_guests: int | None = Field(default=None, ge=0)
    max_guests: int | None = Field(default=None, ge=0)
    min_booking_amount: Decimal | None = Field(default=None, ge=0)
    max_booking_amount: Decimal | None = Field(default=None, ge=0)
    early_booking_days: int | None = Field(default=None, ge=0, description="Book at least this many days before departure")
    last_minute_days: int | None = Field(default=None, ge=0, description="Book at most this many days before departure")
    group_size: int | None = Field(default=None, ge=0)
    cruise_lines: list[str] | None = None
    destinations: list[str] | None = None
    cabin_types: list[str] | None = None
    age_requirements: AgeRequirementsIn | None = None
    coupon_code: str | None = None


class PromotionIn(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    discount_type: str = Field(description="percentage|fixed")
    discount_value: Decimal = Field(ge=0)
    max_discount: Decimal | None = Field(default=None, ge=0, description="Cap for percentage discounts")
    conditions: ConditionsIn = Field(default_factory=ConditionsIn)
    valid_from: datetime
    valid_to: datetime
    is_active: bool = True
    is_combinable: bool = False
    priority: int = 1
    max_uses: int | None = Field(default=None, ge=0)
    current_uses: int = Field(default=0, ge=0)


class PromotionOut(BaseModel):
    id: str
    name: str
    description: str
    discount_type: str
    discount_value: float
    discount_text: str
    max_discount: float | None
    valid_from: str
    valid_to: str
    is_combinable: bool
    priority: int


class ExtraIn(BaseModel):
    price: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=0)


class BookingIn(BaseModel):
    guest_count: int | None = Field(default=None, ge=1, description="Defaults to the quoted guest_count")
    adult_count: int = Field(default=0, ge=0)
    child_count: int = Field(default=0, ge=0)
    senior_count: int = Field(default=0, ge=0)
    cruise_line: str | None = None
    destination: str | None = None
    cabin_type: str | None = None
    departure_date: date | datetime | None = None
    coupon_code: str | None = None


class QuoteIn(BaseModel):
    base_price: Decimal = Field(ge=0)
    cabin_multiplier: Decimal = Field(default=Decimal("1"), gt=0)
    guest_count: int = Field(ge=1)
    extras: list[ExtraIn] = Field(default_factory=list)
    booking: BookingIn = Field(default_factory=BookingIn)
    currency: str | None = Field(default=None, description="ISO currency (default from DEFAULT_CURRENCY)")
    promotion_ids: list[str] | None = Field(default=None, description="Restrict to these catalog promotions")
    promotions: list[PromotionIn] | None = Field(default=None, description="Inline promotions instead of the catalog")


class AppliedPromotionOut(BaseModel):
    id: str
    name: str
    discount_type: str
    discount_value: float
    discount_amount: float


class PaymentValidationOut(BaseModel):
    valid: bool
    error: str | None = None


class QuoteOut(BaseModel):
    currency: str
    base_cruise_fare: float
    cabin_upgrade: float
    extras_total: float
    subtotal: float
    tax_amount: float
    gratuity_amount: float
    discount_amount: float
    final_total: float
    applied_promotions: list[AppliedPromotionOut]
    payment: PaymentValidationOut


class EligibilityIn(BaseModel):
    subtotal: Decimal = Field(ge=0)
    booking: BookingIn


class EligibilityOut(BaseModel):
    promotion_id: str
    eligible: bool
    reasons: list[str]


class PaymentCheckIn(BaseModel):
    currency: str
    amount: Decimal | None = Field(default=None, description="Amount in major units")
    amount_minor: int | None = Field(default=None, description="Amount in smallest currency unit (cents)")


def _rule_from_payload(payload: PromotionIn) -> domain.PromotionRule:
    try:
        return persistence.promotion_from_row(payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _booking_from_payload(payload: BookingIn, guest_count: int) -> domain.BookingData:
    return domain.BookingData(
        guest_count=payload.guest_count or guest_count,
        adult_count=payload.adult_count,
        child_count=payload.child_count,
        senior_count=payload.senior_count,
        cruise_line=payload.cruise_line,
        destination=payload.destination,
        cabin_type=payload.cabin_type,
        departure_date=payload.departure_date,
        coupon_code=payload.coupon_code,
    )


def _promotion_out(p: domain.PromotionRule) -> PromotionOut:
    return PromotionOut(
        id=p.id,
        name=p.name,
        description=p.description,
        discount_type=p.discount_type,
        discount_value=float(p.discount_value),
        discount_text=domain.format_discount_text(p),
        max_discount=float(p.max_discount) if p.max_discount is not None else None,
        valid_from=p.valid_from.isoformat(),
        valid_to=p.valid_to.isoformat(),
        is_combinable=p.is_combinable,
        priority=p.priority,
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/currencies")
def list_currencies():
    rates = domain.DEFAULT_CONFIG.exchange_rates
    return [{"code": c, "rate": float(rates[c])} for c in domain.supported_currencies()]


@app.get("/promotions", response_model=list[PromotionOut])
def list_promotions():
    now = datetime.now(tz=timezone.utc)
    rows = [
        p
        for p in _catalog().values()
        if p.is_active and p.valid_from <= now <= p.valid_to
    ]
    rows = sorted(rows, key=lambda p: p.priority, reverse=True)
    return [_promotion_out(p) for p in rows]


@app.post("/promotions", response_model=PromotionOut)
def upsert_promotion(payload: PromotionIn):
    rule = _rule_from_payload(payload)
    if rule.valid_to < rule.valid_from:
        raise HTTPException(status_code=400, detail="valid_to must not be before valid_from")
    catalog = _catalog()
    catalog[rule.id] = rule
    persistence.save_promotions(catalog.values())
    return _promotion_out(rule)


@app.post("/promotions/{promotion_id}/check", response_model=EligibilityOut)
def check_promotion(promotion_id: str, payload: EligibilityIn):
    promo = _catalog().get(promotion_id)
    if promo is None:
        raise HTTPException(status_code=404, detail="Promotion not found")
    if payload.booking.guest_count is None:
        raise HTTPException(status_code=400, detail="booking.guest_count is required")
    booking = _booking_from_payload(payload.booking, guest_count=payload.booking.guest_count)
    reasons = domain.ineligibility_reasons(promo, booking, payload.subtotal)
    return EligibilityOut(promotion_id=promo.id, eligible=not reasons, reasons=reasons)


@app.post("/pricing/quote", response_model=QuoteOut)
def create_quote(payload: QuoteIn):
    cur = _normalize_currency(payload.currency or DEFAULT_CURRENCY)

    if payload.promotions is not None:
        promotions = [_rule_from_payload(p) for p in payload.promotions]
    else:
        catalog = _catalog()
        if payload.promotion_ids is None:
            promotions = list(catalog.values())
        else:
            missing = [pid for pid in payload.promotion_ids if pid not in catalog]
            if missing:
                raise HTTPException(status_code=404, detail=f"Unknown promotion(s): {', '.join(missing)}")
            promotions = [catalog[pid] for pid in payload.promotion_ids]

    breakdown = domain.calculate_pricing(
        payload.base_price,
        payload.cabin_multiplier,
        payload.guest_count,
        [domain.Extra(price=e.price, quantity=e.quantity) for e in payload.extras],
        promotions,
        _booking_from_payload(payload.booking, guest_count=payload.guest_count),
        cur,
    )
    payment = domain.validate_payment_amount(breakdown.final_total, breakdown.currency)

    return QuoteOut(
        currency=breakdown.currency,
        base_cruise_fare=_money(breakdown.base_cruise_fare),
        cabin_upgrade=_money(breakdown.cabin_upgrade),
        extras_total=_money(breakdown.extras_total),
        subtotal=_money(breakdown.subtotal),
        tax_amount=_money(breakdown.tax_amount),
        gratuity_amount=_money(breakdown.gratuity_amount),
        discount_amount=_money(breakdown.discount_amount),
        final_total=_money(breakdown.final_total),
        applied_promotions=[
            AppliedPromotionOut(
                id=a.id,
                name=a.name,
                discount_type=a.discount_type,
                discount_value=float(a.discount_value),
                discount_amount=_money(a.discount_amount),
            )
            for a in breakdown.applied_promotions
        ],
        payment=PaymentValidationOut(valid=payment.valid, error=payment.error),
    )


@app.post("/payments/validate", response_model=PaymentValidationOut)
def validate_payment(payload: PaymentCheckIn):
    cur = _normalize_currency(payload.currency)
    if payload.amount_minor is not None:
        res = domain.validate_charge_minor_units(payload.amount_minor, cur)
    elif payload.amount is not None:
        res = domain.validate_payment_amount(payload.amount, cur)
    else:
        raise HTTPException(status_code=400, detail="amount or amount_minor is required")
    return PaymentValidationOut(valid=res.valid, error=res.error)
