"""Read-only views over payments and line items for receipts and reports."""
from django.db.models import Sum

from .calculator import quantize
from .models import LineItem, MonthlyFee, Payment


def open_payment_for(student):
    return Payment.objects.active().filter(student=student).first()


def line_items_for_student(student, *, include_history=False):
    queryset = LineItem.objects.select_related('payment').filter(payment__student=student)
    if not include_history:
        queryset = queryset.live()
    return queryset.order_by('payment__payment_date', 'id')


def student_outstanding(student):
    """Sum of pending amounts over the student's live line items."""
    total = line_items_for_student(student).aggregate(total=Sum('pending_amount'))['total']
    return quantize(total)


def collections_by_payment_method(*, date_from, date_to):
    """Collected totals per payment method for payments dated in the range.

    Payments without a method are reported under ``None``.
    """
    rows = (
        Payment.objects.exclude(state=Payment.STATE_ANNULLED)
        .filter(payment_date__gte=date_from, payment_date__lte=date_to)
        .values('payment_method__description')
        .annotate(collected=Sum('collected_total'))
        .order_by('payment_method__description')
    )
    return {row['payment_method__description']: quantize(row['collected']) for row in rows}


def monthly_fees_for_period(period, *, state=None):
    queryset = MonthlyFee.objects.select_related('enrollment__student', 'enrollment__discipline').filter(
        period_start=period.first_day,
    )
    if state:
        queryset = queryset.filter(state=state)
    return queryset


def payment_breakdown(payment):
    return {
        'id': payment.pk,
        'student_id': payment.student_id,
        'student': str(payment.student),
        'payment_date': payment.payment_date,
        'due_date': payment.due_date,
        'kind': payment.kind,
        'state': payment.state,
        'payment_method': payment.payment_method.description if payment.payment_method_id else None,
        'totals': {
            'base': payment.base_total,
            'initial': payment.initial_total,
            'collected': payment.collected_total,
            'pending': payment.pending_total,
        },
        'line_items': [
            {
                'id': line.pk,
                'kind': line.kind,
                'description': line.description,
                'quantity': line.quantity,
                'base_amount': line.base_amount,
                'discount_amount': line.discount_amount,
                'surcharge_amount': line.surcharge_amount,
                'initial_amount': line.initial_amount,
                'collected_amount': line.collected_amount,
                'pending_amount': line.pending_amount,
                'status': line.status,
                'carried_over': line.is_carried_over,
            }
            for line in payment.line_items.order_by('id')
        ],
    }
