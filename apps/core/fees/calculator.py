"""Money arithmetic for a single charge line.

Every monetary result is quantized to cents with the rounding mode named by
``settings.BILLING_ROUNDING`` (``ROUND_HALF_UP`` unless configured).
"""
from __future__ import annotations

import decimal
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured, ValidationError

from .models import LineItem


CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')


def rounding_mode() -> str:
    name = getattr(settings, 'BILLING_ROUNDING', 'ROUND_HALF_UP')
    if not name.startswith('ROUND_') or not hasattr(decimal, name):
        raise ImproperlyConfigured(f'BILLING_ROUNDING must name a decimal rounding mode, got {name!r}.')
    return getattr(decimal, name)


def to_decimal(value) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value or '0'))
    except decimal.InvalidOperation as exc:
        raise ValidationError('Invalid amount: %(value)s', params={'value': value}) from exc
    if not result.is_finite():
        raise ValidationError('Invalid amount: %(value)s', params={'value': value})
    return result


def quantize(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=rounding_mode())


def floor_at_zero(value: Decimal) -> Decimal:
    return value if value > 0 else ZERO


def outstanding(initial, collected) -> Decimal:
    return floor_at_zero(quantize(to_decimal(initial) - to_decimal(collected)))


def discount_amount(base_amount, discount) -> Decimal:
    if discount is None:
        return ZERO
    base_amount = to_decimal(base_amount)
    fixed = to_decimal(discount.fixed_amount)
    percentage = to_decimal(discount.percentage)
    return quantize(fixed + percentage / HUNDRED * base_amount)


def surcharge_percentage(thresholds, day: int):
    """Percentage of the greatest threshold day not after ``day``.

    ``thresholds`` is an iterable of ``(day_from, percentage)`` pairs in any
    order. Returns ``None`` when no threshold applies yet.
    """
    selected = None
    selected_day = None
    for day_from, percentage in thresholds:
        if day_from <= day and (selected_day is None or day_from > selected_day):
            selected_day = day_from
            selected = to_decimal(percentage)
    return selected


def surcharge_amount(base_amount, surcharge, reference_date: date | None) -> Decimal:
    if surcharge is None or reference_date is None:
        return ZERO
    percentage = surcharge_percentage(surcharge.threshold_pairs(), reference_date.day)
    if percentage is None:
        return ZERO
    base_amount = to_decimal(base_amount)
    fixed = to_decimal(surcharge.fixed_amount)
    return quantize(fixed + percentage / HUNDRED * base_amount)


@dataclass(frozen=True)
class LineItemAmounts:
    base: Decimal
    discount: Decimal
    surcharge: Decimal
    initial: Decimal
    pending: Decimal
    collected: Decimal = ZERO

    @property
    def settled(self) -> bool:
        return self.pending == 0


def compute_line_item(kind, base_amount, discount=None, surcharge=None, reference_date=None) -> LineItemAmounts:
    """Derive the amounts of a freshly created line.

    Enrollment fees are billed at face value: discounts and surcharges are
    ignored for them.
    """
    if kind not in dict(LineItem.KIND_CHOICES):
        raise ValidationError('Unknown line item kind: %(kind)s', params={'kind': kind})

    base = quantize(base_amount)
    if base < 0:
        raise ValidationError('Base amount cannot be negative.')

    if kind == LineItem.KIND_ENROLLMENT_FEE:
        discount = surcharge = None

    discount_value = discount_amount(base, discount)
    surcharge_value = surcharge_amount(base, surcharge, reference_date)
    initial = floor_at_zero(quantize(base - discount_value + surcharge_value))
    return LineItemAmounts(
        base=base,
        discount=discount_value,
        surcharge=surcharge_value,
        initial=initial,
        pending=initial,
    )
