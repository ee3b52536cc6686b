"""Kind classification of free-text charge labels.

New charges are tagged with their kind when they are requested. This module
only serves imported legacy labels such as ``"BALLET - FEE - MARCH 2026"`` or
``"ENROLLMENT_FEE 2026"``, where the kind has to be guessed from the text.
"""
import calendar
import re

from django.core.exceptions import ValidationError

from apps.core.academics.models import Discipline, Enrollment
from apps.core.catalog.services import resolve_catalog
from apps.core.utils.periods import BillingPeriod

from .builders import LineItemRequest
from .calculator import to_decimal
from .exceptions import NotFound
from .generators import generate_enrollment_fee, get_or_generate_monthly_fee
from .models import LineItem

ENROLLMENT_FEE_PREFIX = 'ENROLLMENT_FEE'
MONTHLY_FEE_MARKERS = ('FEE', 'DROP-IN', 'TRIAL')

_YEAR_RE = re.compile(r'(\d{4})')
_MONTHS = {name.upper(): number for number, name in enumerate(calendar.month_name) if name}


def classify_legacy_label(label, *, catalog=None):
    """Guess the line item kind of a legacy label.

    Inventory names are checked before any text pattern, so an item called
    ``FEE-BAG`` stays an inventory line.
    """
    normalized = (label or '').strip().upper()
    if not normalized:
        raise ValidationError('Label is required.')

    if resolve_catalog(catalog).lookup_inventory_item(label.strip()) is not None:
        return LineItem.KIND_INVENTORY
    if normalized.startswith(ENROLLMENT_FEE_PREFIX):
        return LineItem.KIND_ENROLLMENT_FEE
    if any(marker in normalized for marker in MONTHLY_FEE_MARKERS):
        return LineItem.KIND_MONTHLY_FEE
    return LineItem.KIND_CONCEPT


def _parse_year(label):
    match = _YEAR_RE.search(label)
    if not match:
        raise ValidationError('No year found in %(label)s.', params={'label': label})
    return int(match.group(1))


def _parse_period(label):
    words = label.upper().replace('-', ' ').split()
    months = [_MONTHS[word] for word in words if word in _MONTHS]
    if not months:
        raise ValidationError('No billing period found in %(label)s.', params={'label': label})
    return BillingPeriod(_parse_year(label), months[-1])


def _discipline_from_label(label):
    name = label.split(' - ')[0].strip()
    discipline = Discipline.objects.filter(name__iexact=name).first()
    if discipline is None:
        raise NotFound('Discipline %(name)s does not exist.', params={'name': name})
    return discipline


def legacy_line_item_request(label, *, student, catalog=None, base_amount=None, quantity=1, period=None):
    """Turn a legacy label into a :class:`LineItemRequest`.

    Monthly-fee labels resolve (or generate) the student's obligation for the
    period named in the label unless ``period`` is given.
    """
    catalog = resolve_catalog(catalog)
    kind = classify_legacy_label(label, catalog=catalog)
    label = label.strip()
    normalized = label.upper()

    if kind == LineItem.KIND_INVENTORY:
        return LineItemRequest.for_stock_item(catalog.lookup_inventory_item(label), quantity=quantity)

    if kind == LineItem.KIND_ENROLLMENT_FEE:
        fee = generate_enrollment_fee(student=student, year=_parse_year(label))
        amount = to_decimal(base_amount) if base_amount is not None else None
        return LineItemRequest.for_enrollment_fee(fee, amount=amount, catalog=catalog)

    if kind == LineItem.KIND_MONTHLY_FEE:
        discipline = _discipline_from_label(label)
        if 'DROP-IN' in normalized:
            return LineItemRequest.for_drop_in(discipline, quantity=quantity)
        if 'TRIAL' in normalized:
            return LineItemRequest.for_trial(discipline)

        enrollment = Enrollment.objects.filter(
            student=student,
            discipline=discipline,
            status=Enrollment.STATUS_ACTIVE,
        ).first()
        if enrollment is None:
            raise NotFound(
                'Student is not enrolled in %(discipline)s.',
                params={'discipline': discipline.name},
            )
        fee = get_or_generate_monthly_fee(enrollment=enrollment, period=period or _parse_period(label))
        return LineItemRequest.for_monthly_fee(fee)

    concept = catalog.lookup_concept(label)
    if concept is None and base_amount is None:
        raise NotFound('Concept %(label)s does not exist and no amount was given.', params={'label': label})
    return LineItemRequest.for_concept(
        description=label,
        amount=to_decimal(base_amount) if base_amount is not None else None,
        concept=concept,
        quantity=quantity,
    )
