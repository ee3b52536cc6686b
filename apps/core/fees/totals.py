import logging

from django.db.models import Sum

from .calculator import quantize
from .models import Payment

logger = logging.getLogger(__name__)

TOTAL_FIELDS = {
    'base_total': 'base_amount',
    'initial_total': 'initial_amount',
    'collected_total': 'collected_amount',
    'pending_total': 'pending_amount',
}


def payment_line_sums(payment):
    aggregates = payment.line_items.aggregate(
        **{total_field: Sum(line_field) for total_field, line_field in TOTAL_FIELDS.items()}
    )
    return {name: quantize(value) for name, value in aggregates.items()}


def recalculate_payment_totals(payment: Payment) -> Payment:
    """Store the sums of the payment's line items on the payment.

    An active payment with nothing left to collect becomes historical.
    """
    previous = {name: getattr(payment, name) for name in (*TOTAL_FIELDS, 'state')}
    sums = payment_line_sums(payment)
    for name, value in sums.items():
        setattr(payment, name, value)

    update_fields = list(TOTAL_FIELDS)
    if payment.state == Payment.STATE_ACTIVE and payment.pending_total == 0:
        payment.state = Payment.STATE_HISTORICAL
        update_fields.append('state')
        logger.info('Payment %s fully collected, moved to historical', payment.pk)

    try:
        payment.save_versioned(update_fields=update_fields)
    except Exception:
        for name, value in previous.items():
            setattr(payment, name, value)
        raise
    return payment
