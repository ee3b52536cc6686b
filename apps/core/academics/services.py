import logging

from django.core.exceptions import ValidationError
from django.db import transaction

from .models import Enrollment

logger = logging.getLogger(__name__)


def get_active_enrollments(period):
    """Enrollments that are billable for ``period``.

    An enrollment counts when it is ACTIVE, its student is active and its
    date range overlaps the period.
    """
    return (
        Enrollment.objects.select_related('student', 'discipline', 'discount', 'discipline__default_surcharge')
        .filter(
            status=Enrollment.STATUS_ACTIVE,
            student__is_active=True,
            discipline__is_active=True,
            enrolled_on__lte=period.last_day,
        )
        .exclude(withdrawn_on__lt=period.first_day)
        .order_by('student_id', 'discipline__name', 'id')
    )


@transaction.atomic
def withdraw_enrollment(*, enrollment: Enrollment, withdrawn_on):
    if enrollment.status == Enrollment.STATUS_WITHDRAWN:
        raise ValidationError('Enrollment is already withdrawn.')
    if withdrawn_on < enrollment.enrolled_on:
        raise ValidationError('Withdrawal date cannot be before enrollment date.')

    enrollment.status = Enrollment.STATUS_WITHDRAWN
    enrollment.withdrawn_on = withdrawn_on
    enrollment.save(update_fields=['status', 'withdrawn_on'])
    logger.info('Enrollment %s withdrawn on %s', enrollment.pk, withdrawn_on)
    return enrollment
