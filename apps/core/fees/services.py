from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F

from apps.core.students.models import Student
from apps.core.utils.periods import resolve_clock

from . import events
from .builders import LineItemRequest, build_line_item, carry_over_line_item
from .calculator import ZERO, floor_at_zero, quantize, surcharge_amount, to_decimal
from .exceptions import NotFound, OptimisticLockConflict, OverCollection
from .generators import generate_enrollment_fees_for_year, generate_monthly_fees_for_period
from .models import LineItem, MonthlyFee, Payment, ProcessRun
from .queries import payment_breakdown
from .reconciliation import apply_collection, refresh_line_item_balance
from .totals import recalculate_payment_totals

logger = logging.getLogger(__name__)


def _payment_due_days() -> int:
    return int(getattr(settings, 'BILLING_PAYMENT_DUE_DAYS', 10))


def _infer_payment_kind(requests, carried_lines):
    if carried_lines and not requests:
        return Payment.KIND_CARRY_OVER_SUMMARY
    subscription_kinds = {LineItem.KIND_MONTHLY_FEE, LineItem.KIND_ENROLLMENT_FEE}
    if any(request.kind in subscription_kinds for request in requests):
        return Payment.KIND_SUBSCRIPTION
    return Payment.KIND_GENERAL


def _finalize_on_commit(payment: Payment):
    def _send():
        events.payment_finalized.send(sender=Payment, payment=payment, breakdown=payment_breakdown(payment))

    transaction.on_commit(_send)


def _lock_payment(payment: Payment) -> Payment:
    current = Payment.objects.select_for_update().filter(pk=payment.pk).values('version', 'state').first()
    if current is None:
        raise NotFound('Payment %(pk)s does not exist.', params={'pk': payment.pk})
    if current['version'] != payment.version:
        raise OptimisticLockConflict(
            'Payment %(pk)s was modified concurrently. Retry the operation.',
            params={'pk': payment.pk},
        )
    return payment


@transaction.atomic
def open_payment(
    *,
    student: Student,
    requests=(),
    payment_date=None,
    due_date=None,
    kind=None,
    payment_method=None,
    notes='',
    clock=None,
) -> Payment:
    """Open a new payment for ``student``.

    Unsettled lines of the student's active payment are carried into the new
    one and the old payment becomes historical. Requested charges are then
    priced and attached, and totals are recomputed from the lines.
    Without an explicit ``payment_method`` the previous payment's method is
    kept.
    """
    clock = resolve_clock(clock)
    requests = list(requests)
    payment_date = payment_date or clock.today()
    due_date = due_date or payment_date + timedelta(days=_payment_due_days())
    if due_date < payment_date:
        raise ValidationError('Due date cannot be before payment date.')
    if kind is not None and kind not in dict(Payment.KIND_CHOICES):
        raise ValidationError('Unknown payment kind: %(kind)s', params={'kind': kind})
    if payment_method is not None and not payment_method.is_active:
        raise ValidationError('Payment method %(method)s is inactive.', params={'method': payment_method.description})

    student = Student.objects.select_for_update().get(pk=student.pk)
    if not student.is_active:
        raise ValidationError('Cannot bill an inactive student.')

    previous = Payment.objects.select_for_update().active().filter(student=student).first()
    carried_sources = []
    if previous is not None:
        carried_sources = list(previous.line_items.live().unsettled().filter(pending_amount__gt=0).order_by('id'))
        previous.state = Payment.STATE_HISTORICAL
        previous.save_versioned(update_fields=['state'])

    if not requests and not carried_sources:
        raise ValidationError('Nothing to bill: no requested charges and no pending balance.')

    payment = Payment.objects.create(
        student=student,
        payment_date=payment_date,
        due_date=due_date,
        kind=kind or _infer_payment_kind(requests, carried_sources),
        state=Payment.STATE_ACTIVE,
        payment_method=payment_method or (previous.payment_method if previous else None),
        previous_payment=previous,
        notes=notes,
    )

    if carried_sources:
        carried = [carry_over_line_item(source, payment=payment) for source in carried_sources]
        logger.info(
            'Carried %s line items (%s pending) from payment %s to payment %s',
            len(carried),
            sum((line.pending_amount for line in carried), ZERO),
            previous.pk,
            payment.pk,
        )

    settled_on_creation = []
    for request in requests:
        line_item = build_line_item(payment=payment, request=request, reference_date=payment_date)
        if line_item.is_settled:
            settled_on_creation.append(line_item)

    for line_item in settled_on_creation:
        events.line_item_settled.send(sender=LineItem, line_item=line_item, settled_on=payment_date)

    recalculate_payment_totals(payment)
    logger.info(
        'Payment %s opened for student %s (%s): initial %s, pending %s',
        payment.pk,
        student.pk,
        payment.kind,
        payment.initial_total,
        payment.pending_total,
    )
    _finalize_on_commit(payment)
    return payment


@transaction.atomic
def collect_payment(*, payment: Payment, amounts, collected_on=None, clock=None, credit_excess=False) -> Payment:
    """Apply several collections to a payment at once.

    ``amounts`` maps line items (or their ids) to the amount collected on
    each. With ``credit_excess`` any amount above a line's pending balance is
    stored as student credit instead of being refused.
    """
    if payment.state != Payment.STATE_ACTIVE:
        raise ValidationError('Only active payments can receive collections.')
    _lock_payment(payment)

    collected_on = collected_on or resolve_clock(clock).today()
    lines = {line.pk: line for line in payment.line_items.all()}
    excess_total = ZERO
    for key, amount in dict(amounts).items():
        line_id = getattr(key, 'pk', key)
        line_item = lines.get(line_id)
        if line_item is None:
            raise NotFound(
                'Line item %(line)s does not belong to payment %(payment)s.',
                params={'line': line_id, 'payment': payment.pk},
            )
        amount = quantize(amount)
        if credit_excess and amount > line_item.pending_amount:
            excess_total += amount - line_item.pending_amount
            amount = line_item.pending_amount
        apply_collection(line_item, amount, collected_on=collected_on, recalculate=False)

    recalculate_payment_totals(payment)
    if excess_total > 0:
        record_student_credit(student=payment.student, amount=excess_total)

    logger.info('Collections applied to payment %s, %s pending', payment.pk, payment.pending_total)
    _finalize_on_commit(payment)
    return payment


@transaction.atomic
def annul_payment(*, payment: Payment, reason='') -> Payment:
    """Annul an active payment that has not collected anything yet.

    Its lines stop billing their obligations. When the payment had carried
    lines over, the payment they came from becomes active again.
    """
    if payment.state != Payment.STATE_ACTIVE:
        raise ValidationError('Only active payments can be annulled.')
    _lock_payment(payment)

    lines = list(payment.line_items.select_related('carried_from').order_by('id'))
    if any(line.collected_amount > 0 or line.is_settled for line in lines):
        raise ValidationError('Payments with collected or settled line items cannot be annulled.')

    payment.state = Payment.STATE_ANNULLED
    payment.annulment_reason = (reason or '').strip()
    payment.save_versioned(update_fields=['state', 'annulment_reason'])
    for line_item in lines:
        line_item.is_annulled = True
        line_item.save_versioned(update_fields=['is_annulled'])

    carried_sources = [line.carried_from for line in lines if line.carried_from_id]
    if carried_sources and payment.previous_payment_id:
        previous = Payment.objects.select_for_update().get(pk=payment.previous_payment_id)
        for source in carried_sources:
            source.is_carried_over = False
            source.save_versioned(update_fields=['is_carried_over'])
        previous.state = Payment.STATE_ACTIVE
        previous.save_versioned(update_fields=['state'])
        recalculate_payment_totals(previous)
        logger.info('Payment %s restored to active after annulment of payment %s', previous.pk, payment.pk)

    logger.info('Payment %s annulled: %s', payment.pk, payment.annulment_reason or 'no reason given')
    return payment


def _reprice_surcharge(line_item: LineItem, *, surcharge, amount, on_date):
    initial = floor_at_zero(quantize(line_item.base_amount - line_item.discount_amount + amount))
    if line_item.total_collected > initial:
        raise OverCollection(
            '%(description)s already collected %(collected)s, more than the repriced %(initial)s.',
            params={
                'description': line_item.description,
                'collected': line_item.total_collected,
                'initial': initial,
            },
        )

    line_item.surcharge = surcharge
    line_item.surcharge_amount = amount
    line_item.initial_amount = initial
    became_settled = refresh_line_item_balance(line_item, settled_on=on_date)
    line_item.save_versioned(
        update_fields=['surcharge', 'surcharge_amount', 'initial_amount', 'pending_amount', 'is_settled', 'settled_on']
    )
    if became_settled:
        events.line_item_settled.send(sender=LineItem, line_item=line_item, settled_on=on_date)


@transaction.atomic
def remove_surcharge(*, payment: Payment, clock=None) -> int:
    if payment.state != Payment.STATE_ACTIVE:
        raise ValidationError('Surcharges can only be removed from active payments.')
    _lock_payment(payment)

    today = resolve_clock(clock).today()
    lines = list(payment.line_items.live().unsettled().filter(surcharge_amount__gt=0))
    for line_item in lines:
        _reprice_surcharge(line_item, surcharge=None, amount=ZERO, on_date=today)

    if lines:
        recalculate_payment_totals(payment)
        logger.info('Surcharge removed from %s line items of payment %s', len(lines), payment.pk)
    return len(lines)


@transaction.atomic
def apply_surcharges(*, as_of=None, clock=None) -> int:
    """Raise the surcharge of unsettled lines to the rate in force on ``as_of``.

    Surcharges only grow: a line whose current surcharge is already at or
    above the rate for ``as_of`` is left alone.
    """
    as_of = as_of or resolve_clock(clock).today()
    lines = (
        LineItem.objects.live()
        .unsettled()
        .filter(payment__state=Payment.STATE_ACTIVE, surcharge__isnull=False)
        .select_related('payment', 'surcharge')
        .order_by('id')
    )

    payments = {}
    repriced = 0
    for line_item in lines:
        amount = surcharge_amount(line_item.base_amount, line_item.surcharge, as_of)
        if amount <= line_item.surcharge_amount:
            continue
        _reprice_surcharge(line_item, surcharge=line_item.surcharge, amount=amount, on_date=as_of)
        repriced += 1
        payments.setdefault(line_item.payment_id, line_item.payment)

    for payment in payments.values():
        recalculate_payment_totals(payment)

    record_process_run(ProcessRun.PROCESS_SURCHARGES, run_on=as_of)
    logger.info('Surcharges applied as of %s to %s line items in %s payments', as_of, repriced, len(payments))
    return repriced


@transaction.atomic
def record_student_credit(*, student: Student, amount) -> Student:
    amount = quantize(amount)
    if amount <= 0:
        raise ValidationError('Credit amount must be greater than zero.')

    Student.objects.filter(pk=student.pk).update(credit_balance=F('credit_balance') + amount)
    student.refresh_from_db(fields=['credit_balance'])
    logger.info('Credit of %s recorded for student %s (balance %s)', amount, student.pk, student.credit_balance)
    return student


@transaction.atomic
def apply_student_credit(*, line_item: LineItem, amount=None, collected_on=None, clock=None) -> Decimal:
    """Spend the student's credit balance on ``line_item``.

    Without ``amount`` as much credit as the line can absorb is used.
    """
    student = Student.objects.select_for_update().get(pk=line_item.payment.student_id)
    available = student.credit_balance
    if amount is None:
        amount = min(available, line_item.pending_amount)
    amount = quantize(to_decimal(amount))
    if amount < 0:
        raise ValidationError('Credit amount cannot be negative.')
    if amount > available:
        raise ValidationError(
            'Student credit %(available)s is lower than %(amount)s.',
            params={'available': available, 'amount': amount},
        )
    if amount == 0:
        return ZERO

    apply_collection(line_item, amount, collected_on=collected_on, clock=clock)
    Student.objects.filter(pk=student.pk).update(credit_balance=F('credit_balance') - amount)
    logger.info('Applied %s of credit from student %s to line item %s', amount, student.pk, line_item.pk)
    _finalize_on_commit(line_item.payment)
    return amount


def record_process_run(process, *, run_on, period=None) -> ProcessRun:
    run, _ = ProcessRun.objects.update_or_create(
        process=process,
        defaults={
            'last_run_on': run_on,
            'last_period_start': period.first_day if period else None,
        },
    )
    return run


@dataclass
class MonthlyBillingResult:
    period: object
    fees_generated: int = 0
    payments: list = field(default_factory=list)


def run_monthly_billing(*, clock=None, catalog=None) -> MonthlyBillingResult:
    """Generate the period's monthly fees and bill the ones not billed yet.

    In January the yearly enrollment fees are generated and billed as well.
    Each student is billed in its own transaction, so a run can be repeated
    safely: already-billed obligations are skipped.
    """
    clock = resolve_clock(clock)
    today = clock.today()
    period = clock.current_period()
    logger.info('Monthly billing run for %s started', period)

    fees = generate_monthly_fees_for_period(period=period)
    billed_fee_ids = set(
        LineItem.objects.live().filter(monthly_fee__in=fees).values_list('monthly_fee_id', flat=True)
    )

    students = {}
    requests = defaultdict(list)
    for fee in fees:
        if fee.pk in billed_fee_ids or fee.state == MonthlyFee.STATE_PAID:
            continue
        student = fee.enrollment.student
        students[student.pk] = student
        requests[student.pk].append(LineItemRequest.for_monthly_fee(fee))

    if period.month == 1:
        for enrollment_fee in generate_enrollment_fees_for_year(year=period.year):
            if enrollment_fee.is_paid or LineItem.objects.live().filter(enrollment_fee=enrollment_fee).exists():
                continue
            students[enrollment_fee.student_id] = enrollment_fee.student
            requests[enrollment_fee.student_id].append(
                LineItemRequest.for_enrollment_fee(enrollment_fee, catalog=catalog)
            )

    result = MonthlyBillingResult(period=period, fees_generated=len(fees))
    for student_id, student_requests in requests.items():
        result.payments.append(
            open_payment(
                student=students[student_id],
                requests=student_requests,
                payment_date=today,
                kind=Payment.KIND_SUBSCRIPTION,
                clock=clock,
            )
        )

    record_process_run(ProcessRun.PROCESS_MONTHLY_BILLING, run_on=today, period=period)
    logger.info(
        'Monthly billing run for %s finished: %s fees, %s payments opened',
        period,
        result.fees_generated,
        len(result.payments),
    )
    return result
