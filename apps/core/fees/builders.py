from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction

from .calculator import compute_line_item, outstanding, quantize, to_decimal
from .exceptions import AlreadyBilled
from .generators import ensure_enrollment_fee_not_billed, resolve_enrollment_fee_amount
from .models import LineItem


@dataclass
class LineItemRequest:
    """A charge to attach to a payment, tagged with its kind up front."""

    kind: str
    description: str
    base_amount: Decimal
    quantity: int = 1
    discount: Any = None
    surcharge: Any = None
    monthly_fee: Any = None
    enrollment_fee: Any = None
    stock_item: Any = None
    concept: Any = None
    discipline: Any = None

    @classmethod
    def for_monthly_fee(cls, monthly_fee):
        enrollment = monthly_fee.enrollment
        return cls(
            kind=LineItem.KIND_MONTHLY_FEE,
            description=monthly_fee.description,
            base_amount=monthly_fee.base_amount,
            discount=enrollment.discount,
            surcharge=enrollment.discipline.default_surcharge,
            monthly_fee=monthly_fee,
        )

    @classmethod
    def for_drop_in(cls, discipline, *, quantity=1):
        return cls(
            kind=LineItem.KIND_MONTHLY_FEE,
            description=f"{discipline.name} - DROP-IN",
            base_amount=to_decimal(discipline.drop_in_price) * quantity,
            quantity=quantity,
            discipline=discipline,
        )

    @classmethod
    def for_trial(cls, discipline):
        if discipline.trial_price is None:
            raise ValidationError('%(discipline)s has no trial class price.', params={'discipline': discipline.name})
        return cls(
            kind=LineItem.KIND_MONTHLY_FEE,
            description=f"{discipline.name} - TRIAL",
            base_amount=discipline.trial_price,
            discipline=discipline,
        )

    @classmethod
    def for_enrollment_fee(cls, enrollment_fee, *, amount=None, catalog=None):
        if amount is None:
            amount = resolve_enrollment_fee_amount(
                student=enrollment_fee.student,
                year=enrollment_fee.year,
                catalog=catalog,
            )
        return cls(
            kind=LineItem.KIND_ENROLLMENT_FEE,
            description=enrollment_fee.description,
            base_amount=amount,
            enrollment_fee=enrollment_fee,
        )

    @classmethod
    def for_stock_item(cls, stock_item, *, quantity=1):
        return cls(
            kind=LineItem.KIND_INVENTORY,
            description=stock_item.name,
            base_amount=to_decimal(stock_item.price) * quantity,
            quantity=quantity,
            stock_item=stock_item,
        )

    @classmethod
    def for_concept(cls, *, description=None, amount=None, concept=None, quantity=1):
        if concept is None and not description:
            raise ValidationError('Concept lines need a catalog concept or a description.')
        if amount is None:
            if concept is None:
                raise ValidationError('Free-text concept lines need an amount.')
            amount = to_decimal(concept.price) * quantity
        return cls(
            kind=LineItem.KIND_CONCEPT,
            description=(description or concept.description).strip().upper(),
            base_amount=amount,
            quantity=quantity,
            concept=concept,
        )

    def validate(self):
        if self.quantity is None or self.quantity < 1:
            raise ValidationError('Quantity must be at least 1.')
        if to_decimal(self.base_amount) < 0:
            raise ValidationError('Base amount cannot be negative.')
        if not (self.description or '').strip():
            raise ValidationError('Line item description is required.')


def _check_not_billed(*, payment, request):
    if request.monthly_fee is not None:
        if LineItem.objects.live().filter(monthly_fee=request.monthly_fee).exists():
            raise AlreadyBilled(
                '%(description)s is already billed.',
                params={'description': request.monthly_fee.description},
            )
        if request.monthly_fee.enrollment.student_id != payment.student_id:
            raise ValidationError('Monthly fee belongs to another student.')

    if request.enrollment_fee is not None:
        fee = request.enrollment_fee
        if fee.student_id != payment.student_id:
            raise ValidationError('Enrollment fee belongs to another student.')
        if fee.is_paid:
            raise AlreadyBilled('%(description)s is already paid.', params={'description': fee.description})
        ensure_enrollment_fee_not_billed(student=payment.student, year=fee.year)


def _insert_line_item(**fields):
    try:
        with transaction.atomic():
            return LineItem.objects.create(**fields)
    except IntegrityError as exc:
        raise AlreadyBilled(
            '%(description)s is already billed.',
            params={'description': fields['description']},
        ) from exc


def build_line_item(*, payment, request: LineItemRequest, reference_date) -> LineItem:
    request.validate()
    _check_not_billed(payment=payment, request=request)

    amounts = compute_line_item(
        request.kind,
        request.base_amount,
        discount=request.discount,
        surcharge=request.surcharge,
        reference_date=reference_date,
    )
    priced_by_rules = request.kind != LineItem.KIND_ENROLLMENT_FEE
    return _insert_line_item(
        payment=payment,
        kind=request.kind,
        description=request.description.strip(),
        quantity=request.quantity,
        base_amount=amounts.base,
        discount=request.discount if priced_by_rules else None,
        discount_amount=amounts.discount,
        surcharge=request.surcharge if priced_by_rules else None,
        surcharge_amount=amounts.surcharge,
        initial_amount=amounts.initial,
        collected_amount=amounts.collected,
        pending_amount=amounts.pending,
        is_settled=amounts.settled,
        settled_on=reference_date if amounts.settled else None,
        monthly_fee=request.monthly_fee,
        enrollment_fee=request.enrollment_fee,
        stock_item=request.stock_item,
        concept=request.concept,
        discipline=request.discipline,
    )


def carry_over_line_item(source: LineItem, *, payment) -> LineItem:
    """Re-home the unpaid balance of ``source`` into ``payment``.

    The source line is retired first so the clone can take over its
    obligation without tripping the one-live-line constraint.
    """
    if not source.is_live or source.is_settled:
        raise ValidationError('Only live unsettled line items can be carried over.')

    source.is_carried_over = True
    source.save_versioned(update_fields=['is_carried_over'])

    carried_collected = quantize(source.carried_collected + source.collected_amount)
    return _insert_line_item(
        payment=payment,
        kind=source.kind,
        description=source.description,
        quantity=source.quantity,
        base_amount=source.base_amount,
        discount=source.discount,
        discount_amount=source.discount_amount,
        surcharge=source.surcharge,
        surcharge_amount=source.surcharge_amount,
        initial_amount=source.initial_amount,
        carried_collected=carried_collected,
        pending_amount=outstanding(source.initial_amount, carried_collected),
        carried_from=source,
        monthly_fee=source.monthly_fee,
        enrollment_fee=source.enrollment_fee,
        stock_item=source.stock_item,
        concept=source.concept,
        discipline=source.discipline,
    )
