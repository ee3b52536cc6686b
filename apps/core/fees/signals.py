import logging

from django.dispatch import receiver
from django.utils import timezone
from django.db.models import F

from apps.core.catalog.models import StockItem

from .calculator import quantize
from .events import line_item_collected, line_item_settled
from .exceptions import InsufficientStock, NotFound
from .models import EnrollmentFee, LineItem, MonthlyFee

logger = logging.getLogger(__name__)


@receiver(line_item_collected, sender=LineItem)
def track_monthly_fee_collection(sender, line_item: LineItem, amount, **kwargs):
    if line_item.monthly_fee_id is None:
        return

    fee = MonthlyFee.objects.select_for_update().get(pk=line_item.monthly_fee_id)
    fee.paid_amount = quantize(fee.paid_amount + amount)
    if fee.state == MonthlyFee.STATE_PENDING:
        fee.state = MonthlyFee.STATE_PARTIALLY_PAID
    fee.save(update_fields=['paid_amount', 'state'])


@receiver(line_item_settled, sender=LineItem)
def mark_monthly_fee_paid(sender, line_item: LineItem, settled_on, **kwargs):
    if line_item.monthly_fee_id is None:
        return

    MonthlyFee.objects.filter(pk=line_item.monthly_fee_id).update(
        state=MonthlyFee.STATE_PAID,
        paid_on=settled_on,
    )
    logger.info('Monthly fee %s paid on %s', line_item.monthly_fee_id, settled_on)


@receiver(line_item_settled, sender=LineItem)
def mark_enrollment_fee_paid(sender, line_item: LineItem, settled_on, **kwargs):
    if line_item.enrollment_fee_id is None:
        return

    EnrollmentFee.objects.filter(pk=line_item.enrollment_fee_id).update(is_paid=True, paid_on=settled_on)
    logger.info('Enrollment fee %s paid on %s', line_item.enrollment_fee_id, settled_on)


@receiver(line_item_settled, sender=LineItem)
def decrement_stock_on_settlement(sender, line_item: LineItem, **kwargs):
    if line_item.kind != LineItem.KIND_INVENTORY or line_item.stock_item_id is None:
        return

    updated = StockItem.objects.filter(
        pk=line_item.stock_item_id,
        quantity__gte=line_item.quantity,
    ).update(
        quantity=F('quantity') - line_item.quantity,
        updated_at=timezone.now(),
    )
    if updated:
        logger.info('Stock item %s decremented by %s', line_item.stock_item_id, line_item.quantity)
        return

    available = StockItem.objects.filter(pk=line_item.stock_item_id).values_list('quantity', flat=True).first()
    if available is None:
        raise NotFound('Stock item %(pk)s does not exist.', params={'pk': line_item.stock_item_id})
    logger.warning(
        'Settlement of line item %s refused: %s requested, %s on hand',
        line_item.pk,
        line_item.quantity,
        available,
    )
    raise InsufficientStock(
        'Only %(available)s of %(item)s on hand, %(requested)s requested.',
        params={'available': available, 'item': line_item.description, 'requested': line_item.quantity},
    )
