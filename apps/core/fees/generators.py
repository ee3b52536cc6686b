"""Creation of monthly-fee and enrollment-fee obligations.

Both generators are idempotent per period: calling them again returns the
obligation that already exists.
"""
import logging

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Max

from apps.core.academics.models import Enrollment
from apps.core.academics.services import get_active_enrollments
from apps.core.catalog.services import resolve_catalog
from apps.core.students.models import Student

from .calculator import compute_line_item, quantize
from .exceptions import AlreadyBilled, DuplicateObligation, NotFound
from .models import EnrollmentFee, LineItem, MonthlyFee, enrollment_fee_description

logger = logging.getLogger(__name__)


def monthly_fee_description(enrollment, period):
    return f"{enrollment.discipline.name} - FEE - {period.label}"


def _create_monthly_fee(*, enrollment, period):
    existing = MonthlyFee.objects.filter(enrollment=enrollment, period_start=period.first_day).first()
    if existing:
        return existing, False

    if enrollment.status != Enrollment.STATUS_ACTIVE:
        raise ValidationError('Monthly fees can only be generated for active enrollments.')

    amounts = compute_line_item(
        LineItem.KIND_MONTHLY_FEE,
        enrollment.discipline.base_fee,
        discount=enrollment.discount,
    )
    try:
        with transaction.atomic():
            fee = MonthlyFee.objects.create(
                enrollment=enrollment,
                period_start=period.first_day,
                description=monthly_fee_description(enrollment, period),
                base_amount=amounts.base,
                total_amount=amounts.initial,
                state=MonthlyFee.STATE_PENDING,
            )
    except IntegrityError as exc:
        raise DuplicateObligation(
            'Monthly fee for enrollment %(enrollment)s in %(period)s already exists.',
            params={'enrollment': enrollment.pk, 'period': str(period)},
        ) from exc

    logger.info('Monthly fee %s created for enrollment %s (%s)', fee.pk, enrollment.pk, period)
    return fee, True


def generate_monthly_fee(*, enrollment, period) -> MonthlyFee:
    fee, _ = _create_monthly_fee(enrollment=enrollment, period=period)
    return fee


def get_or_generate_monthly_fee(*, enrollment, period) -> MonthlyFee:
    """Like :func:`generate_monthly_fee`, treating a concurrent insert as success."""
    try:
        return generate_monthly_fee(enrollment=enrollment, period=period)
    except DuplicateObligation:
        logger.info('Monthly fee for enrollment %s (%s) created concurrently, reusing it', enrollment.pk, period)
        return MonthlyFee.objects.get(enrollment=enrollment, period_start=period.first_day)


def generate_monthly_fees_for_period(*, period):
    fees = []
    created_count = 0
    for enrollment in get_active_enrollments(period):
        try:
            fee, created = _create_monthly_fee(enrollment=enrollment, period=period)
        except DuplicateObligation:
            fee, created = MonthlyFee.objects.get(enrollment=enrollment, period_start=period.first_day), False
        fees.append(fee)
        created_count += int(created)

    logger.info(
        'Monthly fee generation for %s: %s created, %s reused',
        period,
        created_count,
        len(fees) - created_count,
    )
    return fees


def generate_enrollment_fee(*, student, year) -> EnrollmentFee:
    existing = EnrollmentFee.objects.filter(student=student, year=year).first()
    if existing:
        return existing

    try:
        with transaction.atomic():
            fee = EnrollmentFee.objects.create(student=student, year=year, is_paid=False)
    except IntegrityError:
        logger.info('Enrollment fee %s for student %s created concurrently, reusing it', year, student.pk)
        return EnrollmentFee.objects.get(student=student, year=year)

    logger.info('Enrollment fee %s created for student %s', year, student.pk)
    return fee


def ensure_enrollment_fee_not_billed(*, student, year):
    description = enrollment_fee_description(year)
    already_billed = LineItem.objects.live().filter(
        payment__student=student,
        kind=LineItem.KIND_ENROLLMENT_FEE,
        description=description,
    ).exists()
    if already_billed:
        raise AlreadyBilled(
            '%(description)s is already billed for this student.',
            params={'description': description},
        )


def resolve_enrollment_fee_amount(*, student, year, catalog=None):
    """Price of the yearly enrollment fee for ``student``.

    The ``ENROLLMENT_FEE <year>`` catalog concept wins; otherwise the highest
    enrollment fee among the student's active disciplines is used.
    """
    concept = resolve_catalog(catalog).lookup_concept(enrollment_fee_description(year))
    if concept is not None:
        return quantize(concept.price)

    amount = Enrollment.objects.filter(
        student=student,
        status=Enrollment.STATUS_ACTIVE,
    ).aggregate(amount=Max('discipline__enrollment_fee'))['amount']
    if amount is None:
        raise NotFound(
            'No enrollment fee price found for %(description)s.',
            params={'description': enrollment_fee_description(year)},
        )
    return quantize(amount)


def generate_enrollment_fees_for_year(*, year):
    students = Student.objects.active().filter(enrollments__status=Enrollment.STATUS_ACTIVE).distinct()
    fees = [generate_enrollment_fee(student=student, year=year) for student in students]
    logger.info('Enrollment fee generation for %s: %s students', year, len(fees))
    return fees
