from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.db.models.functions import Lower

from apps.core.utils.managers import ActiveManager


class Discount(models.Model):
    objects = ActiveManager()

    description = models.CharField(max_length=120)
    percentage = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'))
    fixed_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    notes = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['description', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(percentage__gte=0) & Q(percentage__lte=100) & Q(fixed_amount__gte=0),
                name='discount_values_in_range',
            ),
        ]

    def clean(self):
        super().clean()
        if self.description:
            self.description = self.description.strip()
        if not self.description:
            raise ValidationError({'description': 'Discount description is required.'})
        if self.percentage is None or self.percentage < 0 or self.percentage > 100:
            raise ValidationError({'percentage': 'Percentage must be between 0 and 100.'})
        if self.fixed_amount is None or self.fixed_amount < 0:
            raise ValidationError({'fixed_amount': 'Fixed amount cannot be negative.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return self.description


class Surcharge(models.Model):
    objects = ActiveManager()

    description = models.CharField(max_length=120)
    fixed_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['description', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(fixed_amount__gte=0),
                name='surcharge_fixed_amount_non_negative',
            ),
        ]

    def threshold_pairs(self):
        """(day_from, percentage) pairs ordered by day."""
        return list(self.thresholds.order_by('day_from').values_list('day_from', 'percentage'))

    def clean(self):
        super().clean()
        if self.description:
            self.description = self.description.strip()
        if not self.description:
            raise ValidationError({'description': 'Surcharge description is required.'})
        if self.fixed_amount is None or self.fixed_amount < 0:
            raise ValidationError({'fixed_amount': 'Fixed amount cannot be negative.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return self.description


class SurchargeThreshold(models.Model):
    surcharge = models.ForeignKey(
        Surcharge,
        on_delete=models.CASCADE,
        related_name='thresholds',
    )
    day_from = models.PositiveSmallIntegerField()
    percentage = models.DecimalField(max_digits=5, decimal_places=2)

    class Meta:
        ordering = ['surcharge', 'day_from']
        constraints = [
            models.UniqueConstraint(
                fields=['surcharge', 'day_from'],
                name='unique_surcharge_threshold_day',
            ),
            models.CheckConstraint(
                condition=Q(day_from__gte=1) & Q(day_from__lte=31),
                name='surcharge_threshold_day_in_month',
            ),
            models.CheckConstraint(
                condition=Q(percentage__gte=0),
                name='surcharge_threshold_percentage_non_negative',
            ),
        ]

    def clean(self):
        super().clean()
        if self.day_from is None or not 1 <= self.day_from <= 31:
            raise ValidationError({'day_from': 'Day must be between 1 and 31.'})
        if self.percentage is None or self.percentage < 0:
            raise ValidationError({'percentage': 'Percentage cannot be negative.'})

    def __str__(self):
        return f"{self.surcharge.description}: day {self.day_from} -> {self.percentage}%"


class StockItem(models.Model):
    objects = ActiveManager()

    name = models.CharField(max_length=120)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField(default=0)
    barcode = models.CharField(max_length=60, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name', 'id']
        constraints = [
            models.UniqueConstraint(
                Lower('name'),
                name='unique_stock_item_name_ci',
            ),
            models.CheckConstraint(
                condition=Q(price__gte=0),
                name='stock_item_price_non_negative',
            ),
        ]

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if not self.name:
            raise ValidationError({'name': 'Item name is required.'})
        if self.price is None or self.price < 0:
            raise ValidationError({'price': 'Price cannot be negative.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active', 'updated_at'])

    def __str__(self):
        return self.name


class SubConcept(models.Model):
    description = models.CharField(max_length=120, unique=True)

    class Meta:
        ordering = ['description']

    def __str__(self):
        return self.description


class Concept(models.Model):
    objects = ActiveManager()

    description = models.CharField(max_length=160, unique=True)
    price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    sub_concept = models.ForeignKey(
        SubConcept,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='concepts',
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['description']

    def clean(self):
        super().clean()
        if self.description:
            self.description = self.description.strip().upper()
        if not self.description:
            raise ValidationError({'description': 'Concept description is required.'})
        if self.price is None or self.price < 0:
            raise ValidationError({'price': 'Price cannot be negative.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return self.description


class PaymentMethod(models.Model):
    objects = ActiveManager()

    description = models.CharField(max_length=60)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['description']
        constraints = [
            models.UniqueConstraint(
                Lower('description'),
                name='unique_payment_method_description_ci',
            ),
        ]

    def clean(self):
        super().clean()
        if self.description:
            self.description = self.description.strip().upper()
        if not self.description:
            raise ValidationError({'description': 'Payment method description is required.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return self.description
