from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from apps.core.academics.models import Discipline, Enrollment
from apps.core.catalog.models import Concept, Discount, PaymentMethod, StockItem, Surcharge
from apps.core.students.models import Student
from apps.core.utils.periods import BillingPeriod

from .exceptions import OptimisticLockConflict


ZERO = Decimal('0.00')


class FinancialRecordModel(models.Model):
    """Versioned record that is never hard-deleted.

    Writes that must not overwrite a concurrent change go through
    :meth:`save_versioned`, which only updates the row when its version still
    matches the one loaded in memory.
    """

    version = models.PositiveIntegerField(default=0)

    class Meta:
        abstract = True

    def save_versioned(self, *, update_fields):
        if self.pk is None:
            raise ValidationError('Unsaved records cannot be updated with a version check.')

        values = {name: getattr(self, name) for name in update_fields}
        if any(field.name == 'updated_at' for field in self._meta.concrete_fields):
            values['updated_at'] = timezone.now()

        updated = type(self)._base_manager.filter(pk=self.pk, version=self.version).update(
            version=F('version') + 1,
            **values,
        )
        if not updated:
            raise OptimisticLockConflict(
                '%(model)s %(pk)s was modified concurrently. Retry the operation.',
                params={'model': self._meta.verbose_name.capitalize(), 'pk': self.pk},
            )
        self.version += 1
        if 'updated_at' in values:
            self.updated_at = values['updated_at']

    def delete(self, *args, **kwargs):
        raise ValidationError('Financial records cannot be deleted. Use annulment workflow.')


class EnrollmentFee(models.Model):
    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='enrollment_fees',
    )
    year = models.PositiveSmallIntegerField()
    is_paid = models.BooleanField(default=False)
    paid_on = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-year', 'student_id']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'year'],
                name='unique_enrollment_fee_per_student_year',
            ),
        ]

    @property
    def description(self):
        return enrollment_fee_description(self.year)

    def clean(self):
        super().clean()
        if self.is_paid and not self.paid_on:
            raise ValidationError({'paid_on': 'Paid enrollment fees need a payment date.'})

    def __str__(self):
        return f"{self.student} - {self.description}"


class MonthlyFee(models.Model):
    STATE_PENDING = 'PENDING'
    STATE_PARTIALLY_PAID = 'PARTIALLY_PAID'
    STATE_PAID = 'PAID'
    STATE_CHOICES = (
        (STATE_PENDING, 'Pending'),
        (STATE_PARTIALLY_PAID, 'Partially paid'),
        (STATE_PAID, 'Paid'),
    )

    enrollment = models.ForeignKey(
        Enrollment,
        on_delete=models.PROTECT,
        related_name='monthly_fees',
    )
    period_start = models.DateField()
    description = models.CharField(max_length=200)
    base_amount = models.DecimalField(max_digits=12, decimal_places=2)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default=STATE_PENDING)
    paid_on = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-period_start', 'enrollment_id']
        constraints = [
            models.UniqueConstraint(
                fields=['enrollment', 'period_start'],
                name='unique_monthly_fee_per_enrollment_period',
            ),
            models.CheckConstraint(
                condition=Q(base_amount__gte=0) & Q(total_amount__gte=0) & Q(paid_amount__gte=0),
                name='monthly_fee_amounts_non_negative',
            ),
        ]
        indexes = [
            models.Index(fields=['period_start', 'state']),
        ]

    @property
    def period(self):
        return BillingPeriod.from_date(self.period_start)

    def clean(self):
        super().clean()
        if self.period_start and self.period_start.day != 1:
            raise ValidationError({'period_start': 'Period start must be the first day of a month.'})
        if self.state == self.STATE_PAID and not self.paid_on:
            raise ValidationError({'paid_on': 'Paid monthly fees need a payment date.'})

    def __str__(self):
        return self.description


class PaymentQuerySet(models.QuerySet):
    def active(self):
        return self.filter(state=Payment.STATE_ACTIVE)


class Payment(FinancialRecordModel):
    STATE_ACTIVE = 'ACTIVE'
    STATE_HISTORICAL = 'HISTORICAL'
    STATE_ANNULLED = 'ANNULLED'
    STATE_CHOICES = (
        (STATE_ACTIVE, 'Active'),
        (STATE_HISTORICAL, 'Historical'),
        (STATE_ANNULLED, 'Annulled'),
    )

    KIND_SUBSCRIPTION = 'SUBSCRIPTION'
    KIND_GENERAL = 'GENERAL'
    KIND_CARRY_OVER_SUMMARY = 'CARRY_OVER_SUMMARY'
    KIND_CHOICES = (
        (KIND_SUBSCRIPTION, 'Subscription'),
        (KIND_GENERAL, 'General'),
        (KIND_CARRY_OVER_SUMMARY, 'Carry-over summary'),
    )

    objects = PaymentQuerySet.as_manager()

    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='payments',
    )
    payment_date = models.DateField()
    due_date = models.DateField()
    kind = models.CharField(max_length=20, choices=KIND_CHOICES, default=KIND_GENERAL)
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default=STATE_ACTIVE)
    payment_method = models.ForeignKey(
        PaymentMethod,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='payments',
    )
    base_total = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    initial_total = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    collected_total = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    pending_total = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    previous_payment = models.ForeignKey(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='next_payments',
    )
    annulment_reason = models.CharField(max_length=255, blank=True)
    notes = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-payment_date', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['student'],
                condition=Q(state='ACTIVE'),
                name='unique_active_payment_per_student',
            ),
            models.CheckConstraint(
                condition=(
                    Q(base_total__gte=0)
                    & Q(initial_total__gte=0)
                    & Q(collected_total__gte=0)
                    & Q(pending_total__gte=0)
                ),
                name='payment_totals_non_negative',
            ),
        ]
        indexes = [
            models.Index(fields=['student', 'state']),
            models.Index(fields=['payment_date']),
        ]

    def clean(self):
        super().clean()
        if self.payment_date and self.due_date and self.due_date < self.payment_date:
            raise ValidationError({'due_date': 'Due date cannot be before payment date.'})

    @property
    def is_active(self):
        return self.state == self.STATE_ACTIVE

    def __str__(self):
        return f"Payment #{self.pk} - {self.student} ({self.state})"


class LineItemQuerySet(models.QuerySet):
    def live(self):
        """Line items that still count as billing their obligation."""
        return self.filter(is_annulled=False, is_carried_over=False)

    def unsettled(self):
        return self.filter(is_settled=False)


class LineItem(FinancialRecordModel):
    KIND_MONTHLY_FEE = 'MONTHLY_FEE'
    KIND_ENROLLMENT_FEE = 'ENROLLMENT_FEE'
    KIND_INVENTORY = 'INVENTORY'
    KIND_CONCEPT = 'CONCEPT'
    KIND_CHOICES = (
        (KIND_MONTHLY_FEE, 'Monthly fee'),
        (KIND_ENROLLMENT_FEE, 'Enrollment fee'),
        (KIND_INVENTORY, 'Inventory item'),
        (KIND_CONCEPT, 'Concept'),
    )

    STATUS_PENDING = 'PENDING'
    STATUS_PARTIALLY_SETTLED = 'PARTIALLY_SETTLED'
    STATUS_SETTLED = 'SETTLED'

    objects = LineItemQuerySet.as_manager()

    payment = models.ForeignKey(
        Payment,
        on_delete=models.CASCADE,
        related_name='line_items',
    )
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    description = models.CharField(max_length=200)
    quantity = models.PositiveIntegerField(default=1)

    base_amount = models.DecimalField(max_digits=12, decimal_places=2)
    discount = models.ForeignKey(
        Discount,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='line_items',
    )
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    surcharge = models.ForeignKey(
        Surcharge,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='line_items',
    )
    surcharge_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    initial_amount = models.DecimalField(max_digits=12, decimal_places=2)
    carried_collected = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    collected_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    pending_amount = models.DecimalField(max_digits=12, decimal_places=2)

    is_settled = models.BooleanField(default=False)
    settled_on = models.DateField(null=True, blank=True)
    is_annulled = models.BooleanField(default=False)
    is_carried_over = models.BooleanField(default=False)
    carried_from = models.ForeignKey(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='carried_over_to',
    )

    monthly_fee = models.ForeignKey(
        MonthlyFee,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='line_items',
    )
    enrollment_fee = models.ForeignKey(
        EnrollmentFee,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='line_items',
    )
    stock_item = models.ForeignKey(
        StockItem,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='line_items',
    )
    concept = models.ForeignKey(
        Concept,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='line_items',
    )
    # Drop-in and trial classes bill the discipline directly.
    discipline = models.ForeignKey(
        Discipline,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='line_items',
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['id']
        constraints = [
            models.CheckConstraint(
                condition=(
                    (
                        Q(kind='MONTHLY_FEE')
                        & Q(enrollment_fee__isnull=True, stock_item__isnull=True, concept__isnull=True)
                        & (
                            Q(monthly_fee__isnull=False, discipline__isnull=True)
                            | Q(monthly_fee__isnull=True, discipline__isnull=False)
                        )
                    )
                    | Q(
                        kind='ENROLLMENT_FEE',
                        enrollment_fee__isnull=False,
                        monthly_fee__isnull=True,
                        stock_item__isnull=True,
                        concept__isnull=True,
                        discipline__isnull=True,
                    )
                    | Q(
                        kind='INVENTORY',
                        stock_item__isnull=False,
                        monthly_fee__isnull=True,
                        enrollment_fee__isnull=True,
                        concept__isnull=True,
                        discipline__isnull=True,
                    )
                    | Q(
                        kind='CONCEPT',
                        monthly_fee__isnull=True,
                        enrollment_fee__isnull=True,
                        stock_item__isnull=True,
                        discipline__isnull=True,
                    )
                ),
                name='line_item_reference_matches_kind',
            ),
            models.CheckConstraint(
                condition=(
                    Q(base_amount__gte=0)
                    & Q(discount_amount__gte=0)
                    & Q(surcharge_amount__gte=0)
                    & Q(initial_amount__gte=0)
                    & Q(carried_collected__gte=0)
                    & Q(collected_amount__gte=0)
                    & Q(pending_amount__gte=0)
                    & Q(quantity__gte=1)
                ),
                name='line_item_amounts_non_negative',
            ),
            models.UniqueConstraint(
                fields=['monthly_fee'],
                condition=Q(monthly_fee__isnull=False, is_annulled=False, is_carried_over=False),
                name='unique_live_line_item_per_monthly_fee',
            ),
            models.UniqueConstraint(
                fields=['enrollment_fee'],
                condition=Q(enrollment_fee__isnull=False, is_annulled=False, is_carried_over=False),
                name='unique_live_line_item_per_enrollment_fee',
            ),
        ]
        indexes = [
            models.Index(fields=['payment', 'is_settled']),
            models.Index(fields=['kind', 'description']),
        ]

    @property
    def total_collected(self):
        """Collected on this line plus what was collected before it was carried over."""
        return self.carried_collected + self.collected_amount

    @property
    def is_live(self):
        return not self.is_annulled and not self.is_carried_over

    @property
    def status(self):
        if self.is_settled:
            return self.STATUS_SETTLED
        if self.total_collected > 0:
            return self.STATUS_PARTIALLY_SETTLED
        return self.STATUS_PENDING

    def clean(self):
        super().clean()
        if self.quantity is None or self.quantity < 1:
            raise ValidationError({'quantity': 'Quantity must be at least 1.'})
        if self.is_settled != (self.pending_amount == 0):
            raise ValidationError('Settled flag must match a zero pending amount.')

    def __str__(self):
        return f"{self.description} ({self.pending_amount} pending)"


class ProcessRun(models.Model):
    PROCESS_MONTHLY_BILLING = 'MONTHLY_BILLING'
    PROCESS_ENROLLMENT_FEES = 'ENROLLMENT_FEES'
    PROCESS_SURCHARGES = 'SURCHARGES'
    PROCESS_CHOICES = (
        (PROCESS_MONTHLY_BILLING, 'Monthly billing'),
        (PROCESS_ENROLLMENT_FEES, 'Enrollment fees'),
        (PROCESS_SURCHARGES, 'Surcharges'),
    )

    process = models.CharField(max_length=30, choices=PROCESS_CHOICES, unique=True)
    last_run_on = models.DateField()
    last_period_start = models.DateField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['process']

    def __str__(self):
        return f"{self.get_process_display()} @ {self.last_run_on}"


def enrollment_fee_description(year):
    return f"ENROLLMENT_FEE {year}"
