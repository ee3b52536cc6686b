from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.test import TestCase

from .models import Concept, Discount, PaymentMethod, StockItem, Surcharge, SurchargeThreshold
from .services import ModelCatalog


class CatalogModelTests(TestCase):
    def test_discount_percentage_above_hundred_is_invalid(self):
        discount = Discount(description='Full scholarship+', percentage=Decimal('120.00'))
        with self.assertRaises(ValidationError):
            discount.full_clean()

    def test_stock_item_names_are_unique_ignoring_case(self):
        StockItem.objects.create(name='Ballet Shoes', price=Decimal('50.00'), quantity=3)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                StockItem.objects.create(name='BALLET SHOES', price=Decimal('55.00'), quantity=1)

    def test_payment_method_is_normalized_and_unique(self):
        method = PaymentMethod(description='  cash ')
        method.full_clean()
        method.save()

        self.assertEqual(method.description, 'CASH')
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                PaymentMethod.objects.create(description='Cash')

    def test_threshold_pairs_are_ordered_by_day(self):
        surcharge = Surcharge.objects.create(description='Late payment')
        SurchargeThreshold.objects.create(surcharge=surcharge, day_from=15, percentage=Decimal('20.00'))
        SurchargeThreshold.objects.create(surcharge=surcharge, day_from=1, percentage=Decimal('5.00'))
        SurchargeThreshold.objects.create(surcharge=surcharge, day_from=10, percentage=Decimal('10.00'))

        self.assertEqual(
            surcharge.threshold_pairs(),
            [(1, Decimal('5.00')), (10, Decimal('10.00')), (15, Decimal('20.00'))],
        )


class ModelCatalogTests(TestCase):
    def setUp(self):
        self.catalog = ModelCatalog()
        self.item = StockItem.objects.create(name='Leotard', price=Decimal('80.00'), quantity=4)
        self.concept = Concept.objects.create(description='COSTUME RENTAL', price=Decimal('30.00'))

    def test_inventory_lookup_is_case_insensitive(self):
        self.assertEqual(self.catalog.lookup_inventory_item('  leotard '), self.item)

    def test_inactive_items_are_not_found(self):
        self.item.delete()
        self.assertIsNone(self.catalog.lookup_inventory_item('Leotard'))

    def test_concept_lookup(self):
        self.assertEqual(self.catalog.lookup_concept('costume rental'), self.concept)
        self.assertIsNone(self.catalog.lookup_concept(''))
