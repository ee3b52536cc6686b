from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.catalog.models import Discount, Surcharge
from apps.core.students.models import Student
from apps.core.utils.managers import ActiveManager


class Discipline(models.Model):
    objects = ActiveManager()

    name = models.CharField(max_length=100, unique=True)
    base_fee = models.DecimalField(max_digits=12, decimal_places=2)
    enrollment_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    drop_in_price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    trial_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    default_surcharge = models.ForeignKey(
        Surcharge,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='disciplines',
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']
        constraints = [
            models.CheckConstraint(
                condition=Q(base_fee__gte=0) & Q(enrollment_fee__gte=0) & Q(drop_in_price__gte=0),
                name='discipline_prices_non_negative',
            ),
        ]

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip().upper()
        if not self.name:
            raise ValidationError({'name': 'Discipline name is required.'})
        for field_name in ('base_fee', 'enrollment_fee', 'drop_in_price', 'trial_price'):
            value = getattr(self, field_name)
            if value is not None and value < 0:
                raise ValidationError({field_name: 'Amount cannot be negative.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return self.name


class Enrollment(models.Model):
    STATUS_ACTIVE = 'ACTIVE'
    STATUS_WITHDRAWN = 'WITHDRAWN'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_WITHDRAWN, 'Withdrawn'),
    )

    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='enrollments',
    )
    discipline = models.ForeignKey(
        Discipline,
        on_delete=models.PROTECT,
        related_name='enrollments',
    )
    discount = models.ForeignKey(
        Discount,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='enrollments',
    )
    enrolled_on = models.DateField(default=timezone.localdate)
    withdrawn_on = models.DateField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['student_id', 'discipline__name', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'discipline'],
                condition=Q(status='ACTIVE'),
                name='unique_active_enrollment_per_discipline',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'enrolled_on']),
        ]

    def clean(self):
        super().clean()
        if self.withdrawn_on and self.enrolled_on and self.withdrawn_on < self.enrolled_on:
            raise ValidationError({'withdrawn_on': 'Withdrawal date cannot be before enrollment date.'})
        if self.status == self.STATUS_WITHDRAWN and not self.withdrawn_on:
            raise ValidationError({'withdrawn_on': 'Withdrawn enrollments need a withdrawal date.'})
        if self.status == self.STATUS_ACTIVE and self.student_id and self.discipline_id:
            duplicate = Enrollment.objects.filter(
                student_id=self.student_id,
                discipline_id=self.discipline_id,
                status=self.STATUS_ACTIVE,
            ).exclude(pk=self.pk)
            if duplicate.exists():
                raise ValidationError({'discipline': 'Student is already enrolled in this discipline.'})

    @property
    def is_active(self):
        return self.status == self.STATUS_ACTIVE

    def __str__(self):
        return f"{self.student} - {self.discipline}"
