from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.utils.managers import ActiveManager


class Student(models.Model):
    objects = ActiveManager()

    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, blank=True)
    document_number = models.CharField(max_length=30, blank=True)
    date_of_birth = models.DateField(null=True, blank=True)
    phone = models.CharField(max_length=30, blank=True)
    email = models.EmailField(blank=True)
    joined_on = models.DateField(default=timezone.localdate)
    left_on = models.DateField(null=True, blank=True)
    credit_balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    notes = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['last_name', 'first_name', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(credit_balance__gte=0),
                name='student_credit_balance_non_negative',
            ),
        ]
        indexes = [
            models.Index(fields=['is_active', 'last_name']),
        ]

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def clean(self):
        super().clean()
        if self.first_name:
            self.first_name = self.first_name.strip()
        if not self.first_name:
            raise ValidationError({'first_name': 'First name is required.'})
        if self.credit_balance is None or self.credit_balance < 0:
            raise ValidationError({'credit_balance': 'Credit balance cannot be negative.'})
        if self.left_on and self.joined_on and self.left_on < self.joined_on:
            raise ValidationError({'left_on': 'Leaving date cannot precede joining date.'})

    def delete(self, *args, **kwargs):
        if not self.is_active:
            return
        self.is_active = False
        self.left_on = self.left_on or timezone.localdate()
        self.save(update_fields=['is_active', 'left_on', 'updated_at'])

    def __str__(self):
        return self.full_name
