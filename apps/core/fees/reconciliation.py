"""Partial settlement of line items."""
import logging

from django.core.exceptions import ValidationError
from django.db import transaction

from apps.core.utils.periods import resolve_clock

from . import events
from .calculator import outstanding, quantize, to_decimal
from .exceptions import OverCollection
from .models import LineItem
from .totals import recalculate_payment_totals

logger = logging.getLogger(__name__)

_COLLECTION_FIELDS = ('collected_amount', 'pending_amount', 'is_settled', 'settled_on')


def refresh_line_item_balance(line_item: LineItem, *, settled_on):
    """Recompute pending and settled from the line's amounts.

    Returns True when the line became settled with this call.
    """
    was_settled = line_item.is_settled
    line_item.pending_amount = outstanding(line_item.initial_amount, line_item.total_collected)
    line_item.is_settled = line_item.pending_amount == 0
    if line_item.is_settled and not was_settled:
        line_item.settled_on = settled_on
        return True
    return False


def apply_collection(line_item: LineItem, amount, *, collected_on=None, clock=None, recalculate=True):
    """Apply a collected ``amount`` to ``line_item``.

    Zero is a no-op. Amounts above the pending balance raise
    :class:`OverCollection` without touching the line. When the line becomes
    settled, ``line_item_settled`` receivers run inside the same savepoint, so
    any of them raising (for example on missing stock) rolls the collection
    back.
    """
    amount = to_decimal(amount)
    if amount < 0:
        raise ValidationError('Collected amount cannot be negative.', code='negative_amount')
    amount = quantize(amount)
    if amount == 0:
        return line_item

    if not line_item.is_live:
        raise ValidationError('Line item %(pk)s is no longer collectable.', params={'pk': line_item.pk})
    if amount > line_item.pending_amount:
        raise OverCollection(
            'Cannot collect %(amount)s on %(description)s: only %(pending)s is pending.',
            params={
                'amount': amount,
                'description': line_item.description,
                'pending': line_item.pending_amount,
            },
        )

    collected_on = collected_on or resolve_clock(clock).today()
    snapshot = {name: getattr(line_item, name) for name in (*_COLLECTION_FIELDS, 'version')}
    try:
        with transaction.atomic():
            line_item.collected_amount = quantize(line_item.collected_amount + amount)
            became_settled = refresh_line_item_balance(line_item, settled_on=collected_on)
            line_item.save_versioned(update_fields=list(_COLLECTION_FIELDS))

            events.line_item_collected.send(
                sender=LineItem,
                line_item=line_item,
                amount=amount,
                collected_on=collected_on,
            )
            if became_settled:
                events.line_item_settled.send(sender=LineItem, line_item=line_item, settled_on=collected_on)

            if recalculate:
                recalculate_payment_totals(line_item.payment)
    except Exception:
        for name, value in snapshot.items():
            setattr(line_item, name, value)
        raise

    logger.info(
        'Collected %s on line item %s (%s pending%s)',
        amount,
        line_item.pk,
        line_item.pending_amount,
        ', settled' if line_item.is_settled else '',
    )
    return line_item
