from datetime import date, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import IntegrityError, transaction
from django.test import RequestFactory, TestCase, override_settings

from apps.core.academics.models import Discipline, Enrollment
from apps.core.catalog.models import Concept, Discount, PaymentMethod, StockItem, Surcharge, SurchargeThreshold
from apps.core.catalog.services import ModelCatalog
from apps.core.students.models import Student
from apps.core.utils.periods import BillingPeriod, FixedPeriodClock, SystemPeriodClock

from .builders import LineItemRequest
from .calculator import compute_line_item, quantize, surcharge_amount, surcharge_percentage, to_decimal
from .classification import classify_legacy_label, legacy_line_item_request
from .events import payment_finalized
from .exceptions import (
    AlreadyBilled,
    DuplicateObligation,
    InsufficientStock,
    NotFound,
    OptimisticLockConflict,
    OverCollection,
)
from .generators import (
    ensure_enrollment_fee_not_billed,
    generate_enrollment_fee,
    generate_monthly_fee,
    generate_monthly_fees_for_period,
    get_or_generate_monthly_fee,
    resolve_enrollment_fee_amount,
)
from .models import EnrollmentFee, LineItem, MonthlyFee, Payment, ProcessRun
from .queries import (
    collections_by_payment_method,
    monthly_fees_for_period,
    open_payment_for,
    payment_breakdown,
    student_outstanding,
)
from .reconciliation import apply_collection
from .services import (
    annul_payment,
    apply_student_credit,
    apply_surcharges,
    collect_payment,
    open_payment,
    record_student_credit,
    remove_surcharge,
    run_monthly_billing,
)


class FeesBaseTestCase(TestCase):
    def setUp(self):
        self.period = BillingPeriod(2026, 3)
        self.clock = FixedPeriodClock(date(2026, 3, 5))
        self.catalog = ModelCatalog()

        self.student = Student.objects.create(first_name='Lucia', last_name='Perez')
        self.ballet = Discipline.objects.create(
            name='BALLET',
            base_fee=Decimal('300.00'),
            enrollment_fee=Decimal('150.00'),
            drop_in_price=Decimal('40.00'),
            trial_price=Decimal('20.00'),
        )
        self.enrollment = Enrollment.objects.create(
            student=self.student,
            discipline=self.ballet,
            enrolled_on=date(2026, 1, 10),
        )
        self.shoes = StockItem.objects.create(name='Ballet Shoes', price=Decimal('90.00'), quantity=2)

    def _open(self, requests=(), **kwargs):
        kwargs.setdefault('clock', self.clock)
        return open_payment(student=self.student, requests=requests, **kwargs)

    def _monthly_fee_request(self):
        fee = generate_monthly_fee(enrollment=self.enrollment, period=self.period)
        return LineItemRequest.for_monthly_fee(fee)

    def _concept_request(self, amount='50.00'):
        return LineItemRequest.for_concept(description='Costume rental', amount=Decimal(amount))

    def assertTotalsMatchLines(self, payment):
        payment.refresh_from_db()
        lines = list(payment.line_items.all())
        self.assertEqual(payment.base_total, sum((line.base_amount for line in lines), Decimal('0.00')))
        self.assertEqual(payment.initial_total, sum((line.initial_amount for line in lines), Decimal('0.00')))
        self.assertEqual(payment.collected_total, sum((line.collected_amount for line in lines), Decimal('0.00')))
        self.assertEqual(payment.pending_total, sum((line.pending_amount for line in lines), Decimal('0.00')))


class LineItemCalculatorTests(TestCase):
    def test_half_discount_yields_rounded_initial_amount(self):
        discount = Discount(description='Half', percentage=Decimal('50'))

        amounts = compute_line_item(LineItem.KIND_MONTHLY_FEE, 100, discount=discount)

        self.assertEqual(amounts.initial, Decimal('50.00'))
        self.assertEqual(amounts.pending, Decimal('50.00'))
        self.assertEqual(amounts.collected, Decimal('0.00'))
        self.assertFalse(amounts.settled)

    def test_fixed_and_percentage_discount_are_combined(self):
        discount = Discount(description='Siblings', percentage=Decimal('10'), fixed_amount=Decimal('10.00'))

        amounts = compute_line_item(LineItem.KIND_CONCEPT, Decimal('200.00'), discount=discount)

        self.assertEqual(amounts.discount, Decimal('30.00'))
        self.assertEqual(amounts.initial, Decimal('170.00'))

    def test_discount_never_makes_amount_negative(self):
        discount = Discount(description='Huge', fixed_amount=Decimal('500.00'))

        amounts = compute_line_item(LineItem.KIND_MONTHLY_FEE, Decimal('100.00'), discount=discount)

        self.assertEqual(amounts.initial, Decimal('0.00'))
        self.assertTrue(amounts.settled)

    def test_enrollment_fee_ignores_discount(self):
        discount = Discount(description='Half', percentage=Decimal('50'))

        amounts = compute_line_item(LineItem.KIND_ENROLLMENT_FEE, Decimal('150.00'), discount=discount)

        self.assertEqual(amounts.discount, Decimal('0.00'))
        self.assertEqual(amounts.initial, Decimal('150.00'))

    def test_negative_base_amount_is_rejected(self):
        with self.assertRaises(ValidationError):
            compute_line_item(LineItem.KIND_CONCEPT, Decimal('-1.00'))

    def test_non_finite_amounts_are_rejected(self):
        for value in ('NaN', 'Infinity', float('inf')):
            with self.assertRaises(ValidationError):
                to_decimal(value)

    def test_rounding_is_half_up_by_default(self):
        self.assertEqual(quantize(Decimal('0.125')), Decimal('0.13'))

    @override_settings(BILLING_ROUNDING='ROUND_HALF_EVEN')
    def test_rounding_mode_is_configurable(self):
        self.assertEqual(quantize(Decimal('0.125')), Decimal('0.12'))

    def test_surcharge_threshold_selection(self):
        thresholds = [(15, Decimal('20')), (1, Decimal('5')), (10, Decimal('10'))]

        self.assertEqual(surcharge_percentage(thresholds, 12), Decimal('10'))
        for day in range(1, 10):
            self.assertEqual(surcharge_percentage(thresholds, day), Decimal('5'))
        self.assertEqual(surcharge_percentage(thresholds, 30), Decimal('20'))

    def test_no_threshold_reached_means_no_surcharge(self):
        surcharge = Surcharge.objects.create(description='Late payment', fixed_amount=Decimal('25.00'))
        SurchargeThreshold.objects.create(surcharge=surcharge, day_from=10, percentage=Decimal('10.00'))

        self.assertIsNone(surcharge_percentage(surcharge.threshold_pairs(), 5))
        self.assertEqual(surcharge_amount(Decimal('300.00'), surcharge, date(2026, 3, 5)), Decimal('0.00'))
        self.assertEqual(surcharge_amount(Decimal('300.00'), surcharge, date(2026, 3, 12)), Decimal('55.00'))


class MonthlyFeeGenerationTests(FeesBaseTestCase):
    def test_generation_is_idempotent(self):
        first = generate_monthly_fee(enrollment=self.enrollment, period=self.period)
        second = generate_monthly_fee(enrollment=self.enrollment, period=self.period)

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(MonthlyFee.objects.filter(enrollment=self.enrollment).count(), 1)
        self.assertEqual(first.description, 'BALLET - FEE - MARCH 2026')
        self.assertEqual(first.base_amount, Decimal('300.00'))
        self.assertEqual(first.state, MonthlyFee.STATE_PENDING)

    def test_total_applies_enrollment_discount(self):
        self.enrollment.discount = Discount.objects.create(description='Scholarship', percentage=Decimal('50.00'))
        self.enrollment.save(update_fields=['discount'])

        fee = generate_monthly_fee(enrollment=self.enrollment, period=self.period)

        self.assertEqual(fee.total_amount, Decimal('150.00'))

    def test_concurrent_insert_surfaces_duplicate_obligation(self):
        generate_monthly_fee(enrollment=self.enrollment, period=self.period)

        with mock.patch.object(MonthlyFee.objects, 'filter', return_value=MonthlyFee.objects.none()):
            with self.assertRaises(DuplicateObligation):
                generate_monthly_fee(enrollment=self.enrollment, period=self.period)

    def test_get_or_generate_refetches_after_duplicate(self):
        existing = generate_monthly_fee(enrollment=self.enrollment, period=self.period)

        with mock.patch(
            'apps.core.fees.generators.generate_monthly_fee',
            side_effect=DuplicateObligation(),
        ):
            fee = get_or_generate_monthly_fee(enrollment=self.enrollment, period=self.period)

        self.assertEqual(fee.pk, existing.pk)

    def test_period_generation_skips_withdrawn_and_can_rerun(self):
        other = Student.objects.create(first_name='Tomas')
        withdrawn = Enrollment.objects.create(
            student=other,
            discipline=self.ballet,
            enrolled_on=date(2025, 6, 1),
            withdrawn_on=date(2026, 2, 1),
            status=Enrollment.STATUS_WITHDRAWN,
        )

        fees = generate_monthly_fees_for_period(period=self.period)
        generate_monthly_fees_for_period(period=self.period)

        self.assertEqual([fee.enrollment_id for fee in fees], [self.enrollment.pk])
        self.assertFalse(MonthlyFee.objects.filter(enrollment=withdrawn).exists())
        self.assertEqual(MonthlyFee.objects.count(), 1)


class EnrollmentFeeGenerationTests(FeesBaseTestCase):
    def test_generation_is_idempotent(self):
        first = generate_enrollment_fee(student=self.student, year=2026)
        second = generate_enrollment_fee(student=self.student, year=2026)

        self.assertEqual(first.pk, second.pk)
        self.assertFalse(first.is_paid)

    def test_amount_prefers_catalog_concept(self):
        self.assertEqual(resolve_enrollment_fee_amount(student=self.student, year=2026), Decimal('150.00'))

        Concept.objects.create(description='ENROLLMENT_FEE 2026', price=Decimal('175.00'))

        self.assertEqual(
            resolve_enrollment_fee_amount(student=self.student, year=2026, catalog=self.catalog),
            Decimal('175.00'),
        )

    def test_amount_not_found_without_enrollments(self):
        loner = Student.objects.create(first_name='Ana')

        with self.assertRaises(NotFound):
            resolve_enrollment_fee_amount(student=loner, year=2026)

    def test_billed_enrollment_fee_cannot_be_billed_again(self):
        fee = generate_enrollment_fee(student=self.student, year=2026)
        self._open([LineItemRequest.for_enrollment_fee(fee)])

        with self.assertRaises(AlreadyBilled):
            ensure_enrollment_fee_not_billed(student=self.student, year=2026)
        with self.assertRaises(AlreadyBilled):
            self._open([LineItemRequest.for_enrollment_fee(fee)])

        self.assertEqual(LineItem.objects.live().filter(enrollment_fee=fee).count(), 1)


class OpenPaymentTests(FeesBaseTestCase):
    def test_open_payment_computes_totals_from_lines(self):
        payment = self._open([self._monthly_fee_request(), LineItemRequest.for_stock_item(self.shoes)])

        self.assertEqual(payment.state, Payment.STATE_ACTIVE)
        self.assertEqual(payment.kind, Payment.KIND_SUBSCRIPTION)
        self.assertEqual(payment.payment_date, date(2026, 3, 5))
        self.assertEqual(payment.due_date, date(2026, 3, 5) + timedelta(days=10))
        self.assertEqual(payment.initial_total, Decimal('390.00'))
        self.assertEqual(payment.pending_total, Decimal('390.00'))
        self.assertTotalsMatchLines(payment)

        self.shoes.refresh_from_db()
        self.assertEqual(self.shoes.quantity, 2)

    def test_concept_only_payment_is_general(self):
        payment = self._open([self._concept_request()])

        self.assertEqual(payment.kind, Payment.KIND_GENERAL)

    def test_nothing_to_bill_is_rejected(self):
        with self.assertRaises(ValidationError):
            self._open([])

    def test_monthly_fee_cannot_be_billed_twice(self):
        request = self._monthly_fee_request()
        first = self._open([request])

        with self.assertRaises(AlreadyBilled):
            self._open([request])

        first.refresh_from_db()
        self.assertEqual(first.state, Payment.STATE_ACTIVE)
        self.assertEqual(Payment.objects.filter(student=self.student).count(), 1)
        self.assertEqual(LineItem.objects.live().filter(monthly_fee=request.monthly_fee).count(), 1)

    def test_fully_discounted_fee_is_settled_on_creation(self):
        self.enrollment.discount = Discount.objects.create(description='Full', percentage=Decimal('100.00'))
        self.enrollment.save(update_fields=['discount'])

        payment = self._open([self._monthly_fee_request()])

        line = payment.line_items.get()
        self.assertTrue(line.is_settled)
        self.assertEqual(payment.state, Payment.STATE_HISTORICAL)
        self.assertEqual(MonthlyFee.objects.get(pk=line.monthly_fee_id).state, MonthlyFee.STATE_PAID)

    def test_drop_in_and_trial_lines_reference_discipline(self):
        payment = self._open([
            LineItemRequest.for_drop_in(self.ballet, quantity=2),
            LineItemRequest.for_trial(self.ballet),
        ])

        drop_in, trial = payment.line_items.order_by('id')
        self.assertEqual(drop_in.discipline, self.ballet)
        self.assertEqual(drop_in.initial_amount, Decimal('80.00'))
        self.assertEqual(trial.description, 'BALLET - TRIAL')
        self.assertEqual(payment.pending_total, Decimal('100.00'))

    def test_finalized_payment_is_sent_after_commit(self):
        received = []

        def on_finalized(sender, payment, breakdown, **kwargs):
            received.append(breakdown)

        payment_finalized.connect(on_finalized)
        self.addCleanup(payment_finalized.disconnect, on_finalized)

        with self.captureOnCommitCallbacks(execute=True):
            payment = self._open([self._monthly_fee_request()])

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0]['id'], payment.pk)
        self.assertEqual(received[0]['totals']['pending'], Decimal('300.00'))
        self.assertEqual(len(received[0]['line_items']), 1)


class CarryOverTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.first = self._open([self._monthly_fee_request(), self._concept_request()])
        self.fee_line = self.first.line_items.get(kind=LineItem.KIND_MONTHLY_FEE)
        apply_collection(self.fee_line, Decimal('100.00'), collected_on=date(2026, 3, 6))

    def test_unsettled_lines_move_to_new_payment(self):
        second = self._open([LineItemRequest.for_drop_in(self.ballet)], payment_date=date(2026, 4, 2))

        self.first.refresh_from_db()
        self.assertEqual(self.first.state, Payment.STATE_HISTORICAL)
        self.assertEqual(second.previous_payment, self.first)
        self.assertFalse(self.first.line_items.live().exists())

        clone = second.line_items.get(carried_from__isnull=False, kind=LineItem.KIND_MONTHLY_FEE)
        self.assertEqual(clone.carried_from, self.fee_line)
        self.assertEqual(clone.initial_amount, Decimal('300.00'))
        self.assertEqual(clone.carried_collected, Decimal('100.00'))
        self.assertEqual(clone.collected_amount, Decimal('0.00'))
        self.assertEqual(clone.pending_amount, Decimal('200.00'))
        self.assertEqual(second.pending_total, Decimal('290.00'))
        self.assertTotalsMatchLines(second)
        self.assertTotalsMatchLines(self.first)

    def test_carry_over_conserves_pending_balance(self):
        before = student_outstanding(self.student)

        second = self._open([], payment_date=date(2026, 4, 2))

        self.assertEqual(before, Decimal('250.00'))
        self.assertEqual(student_outstanding(self.student), before)
        self.assertEqual(second.kind, Payment.KIND_CARRY_OVER_SUMMARY)
        self.assertEqual(Payment.objects.active().filter(student=self.student).count(), 1)

    def test_collecting_carried_line_settles_monthly_fee(self):
        second = self._open([], payment_date=date(2026, 4, 2))
        clone = second.line_items.get(kind=LineItem.KIND_MONTHLY_FEE)

        apply_collection(clone, Decimal('200.00'), collected_on=date(2026, 4, 3))

        fee = MonthlyFee.objects.get(pk=clone.monthly_fee_id)
        self.assertEqual(fee.state, MonthlyFee.STATE_PAID)
        self.assertEqual(fee.paid_amount, Decimal('300.00'))
        self.assertEqual(fee.paid_on, date(2026, 4, 3))

    def test_carried_source_line_is_not_collectable(self):
        self._open([], payment_date=date(2026, 4, 2))
        self.fee_line.refresh_from_db()

        with self.assertRaises(ValidationError):
            apply_collection(self.fee_line, Decimal('10.00'))


class ReconciliationTests(FeesBaseTestCase):
    def test_partial_then_full_settlement(self):
        payment = self._open([self._monthly_fee_request()])
        line = payment.line_items.get()

        apply_collection(line, Decimal('120'), collected_on=date(2026, 3, 6))

        self.assertEqual(line.pending_amount, Decimal('180.00'))
        self.assertFalse(line.is_settled)
        self.assertEqual(line.status, LineItem.STATUS_PARTIALLY_SETTLED)
        fee = MonthlyFee.objects.get(pk=line.monthly_fee_id)
        self.assertEqual(fee.state, MonthlyFee.STATE_PARTIALLY_PAID)
        self.assertEqual(fee.paid_amount, Decimal('120.00'))
        self.assertTotalsMatchLines(payment)

        apply_collection(line, Decimal('180'), collected_on=date(2026, 3, 7))

        self.assertEqual(line.pending_amount, Decimal('0.00'))
        self.assertTrue(line.is_settled)
        self.assertEqual(line.status, LineItem.STATUS_SETTLED)
        fee.refresh_from_db()
        self.assertEqual(fee.state, MonthlyFee.STATE_PAID)
        self.assertEqual(fee.paid_on, date(2026, 3, 7))
        payment.refresh_from_db()
        self.assertEqual(payment.state, Payment.STATE_HISTORICAL)
        self.assertTotalsMatchLines(payment)

    def test_zero_collection_is_noop(self):
        payment = self._open([self._concept_request()])
        line = payment.line_items.get()
        version = line.version

        apply_collection(line, 0)

        line.refresh_from_db()
        self.assertEqual(line.version, version)
        self.assertEqual(line.pending_amount, Decimal('50.00'))

    def test_negative_collection_is_rejected(self):
        payment = self._open([self._concept_request()])

        with self.assertRaises(ValidationError):
            apply_collection(payment.line_items.get(), Decimal('-5.00'))

    def test_non_numeric_collection_leaves_line_untouched(self):
        payment = self._open([self._concept_request()])
        line = payment.line_items.get()

        with self.assertRaises(ValidationError):
            apply_collection(line, 'NaN')

        line.refresh_from_db()
        self.assertEqual(line.collected_amount, Decimal('0.00'))
        self.assertEqual(line.pending_amount, Decimal('50.00'))
        self.assertFalse(line.is_settled)

    def test_over_collection_is_refused_and_state_unchanged(self):
        payment = self._open([self._concept_request()])
        line = payment.line_items.get()

        with self.assertRaises(OverCollection):
            apply_collection(line, Decimal('60.00'))

        self.assertEqual(line.pending_amount, Decimal('50.00'))
        line.refresh_from_db()
        self.assertEqual(line.pending_amount, Decimal('50.00'))
        self.assertEqual(line.collected_amount, Decimal('0.00'))

    def test_insufficient_stock_aborts_settlement(self):
        payment = self._open([LineItemRequest.for_stock_item(self.shoes, quantity=5)])
        line = payment.line_items.get()

        with self.assertRaises(InsufficientStock):
            apply_collection(line, Decimal('450.00'))

        self.assertFalse(line.is_settled)
        line.refresh_from_db()
        self.assertFalse(line.is_settled)
        self.assertEqual(line.pending_amount, Decimal('450.00'))
        self.shoes.refresh_from_db()
        self.assertEqual(self.shoes.quantity, 2)
        self.assertTotalsMatchLines(payment)

    def test_settled_inventory_line_decrements_stock(self):
        payment = self._open([LineItemRequest.for_stock_item(self.shoes, quantity=2)])

        apply_collection(payment.line_items.get(), Decimal('180.00'))

        self.shoes.refresh_from_db()
        self.assertEqual(self.shoes.quantity, 0)

    def test_settled_enrollment_fee_is_marked_paid(self):
        fee = generate_enrollment_fee(student=self.student, year=2026)
        payment = self._open([LineItemRequest.for_enrollment_fee(fee)])

        apply_collection(payment.line_items.get(), Decimal('150.00'), collected_on=date(2026, 3, 8))

        fee.refresh_from_db()
        self.assertTrue(fee.is_paid)
        self.assertEqual(fee.paid_on, date(2026, 3, 8))

    def test_stale_line_item_raises_retryable_conflict(self):
        payment = self._open([self._concept_request()])
        first_copy = LineItem.objects.get(payment=payment)
        stale_copy = LineItem.objects.get(payment=payment)

        apply_collection(first_copy, Decimal('10.00'))

        with self.assertRaises(OptimisticLockConflict) as ctx:
            apply_collection(stale_copy, Decimal('10.00'))
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.code, 'optimistic_lock_conflict')

        first_copy.refresh_from_db()
        self.assertEqual(first_copy.collected_amount, Decimal('10.00'))


class CollectPaymentTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.payment = self._open([self._monthly_fee_request(), self._concept_request()])
        self.fee_line = self.payment.line_items.get(kind=LineItem.KIND_MONTHLY_FEE)
        self.concept_line = self.payment.line_items.get(kind=LineItem.KIND_CONCEPT)

    def test_bulk_collection_updates_totals_once(self):
        collect_payment(
            payment=self.payment,
            amounts={self.fee_line: Decimal('300.00'), self.concept_line.pk: Decimal('50.00')},
            clock=self.clock,
        )

        self.assertEqual(self.payment.collected_total, Decimal('350.00'))
        self.assertEqual(self.payment.state, Payment.STATE_HISTORICAL)
        self.assertTotalsMatchLines(self.payment)

    def test_excess_is_stored_as_student_credit(self):
        collect_payment(
            payment=self.payment,
            amounts={self.concept_line: Decimal('80.00')},
            clock=self.clock,
            credit_excess=True,
        )

        self.student.refresh_from_db()
        self.assertEqual(self.student.credit_balance, Decimal('30.00'))
        self.concept_line.refresh_from_db()
        self.assertTrue(self.concept_line.is_settled)

    def test_excess_without_credit_is_refused(self):
        with self.assertRaises(OverCollection):
            collect_payment(payment=self.payment, amounts={self.concept_line: Decimal('80.00')}, clock=self.clock)

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.collected_total, Decimal('0.00'))

    def test_line_from_other_payment_is_not_found(self):
        with self.assertRaises(NotFound):
            collect_payment(payment=self.payment, amounts={999999: Decimal('1.00')}, clock=self.clock)

    def test_stale_payment_raises_conflict(self):
        stale = Payment.objects.get(pk=self.payment.pk)
        collect_payment(payment=self.payment, amounts={self.concept_line: Decimal('10.00')}, clock=self.clock)

        with self.assertRaises(OptimisticLockConflict):
            collect_payment(payment=stale, amounts={self.concept_line.pk: Decimal('10.00')}, clock=self.clock)


class AnnulPaymentTests(FeesBaseTestCase):
    def test_annulled_obligation_can_be_billed_again(self):
        request = self._monthly_fee_request()
        payment = self._open([request])

        annul_payment(payment=payment, reason='Wrong student')

        self.assertEqual(payment.state, Payment.STATE_ANNULLED)
        self.assertTrue(all(line.is_annulled for line in payment.line_items.all()))

        rebilled = self._open([request])
        self.assertEqual(rebilled.line_items.get().monthly_fee, request.monthly_fee)

    def test_payment_with_collections_cannot_be_annulled(self):
        payment = self._open([self._concept_request()])
        apply_collection(payment.line_items.get(), Decimal('10.00'))
        payment.refresh_from_db()

        with self.assertRaises(ValidationError):
            annul_payment(payment=payment)

    def test_annulling_carry_over_restores_previous_payment(self):
        first = self._open([self._monthly_fee_request(), self._concept_request()])
        apply_collection(first.line_items.get(kind=LineItem.KIND_MONTHLY_FEE), Decimal('100.00'))
        before = student_outstanding(self.student)
        second = self._open([], payment_date=date(2026, 4, 2))

        annul_payment(payment=second)

        first.refresh_from_db()
        self.assertEqual(first.state, Payment.STATE_ACTIVE)
        self.assertEqual(first.pending_total, Decimal('250.00'))
        self.assertFalse(first.line_items.filter(is_carried_over=True).exists())
        self.assertEqual(student_outstanding(self.student), before)

        third = self._open([], payment_date=date(2026, 4, 3))
        self.assertEqual(third.pending_total, Decimal('250.00'))


class SurchargeTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.surcharge = Surcharge.objects.create(description='Late payment')
        for day_from, percentage in ((1, '5.00'), (10, '10.00'), (15, '20.00')):
            SurchargeThreshold.objects.create(
                surcharge=self.surcharge,
                day_from=day_from,
                percentage=Decimal(percentage),
            )
        self.ballet.default_surcharge = self.surcharge
        self.ballet.save(update_fields=['default_surcharge'])

    def test_surcharge_applied_at_opening(self):
        payment = self._open([self._monthly_fee_request()])

        line = payment.line_items.get()
        self.assertEqual(line.surcharge_amount, Decimal('15.00'))
        self.assertEqual(line.initial_amount, Decimal('315.00'))

    def test_scheduled_surcharges_only_grow(self):
        payment = self._open([self._monthly_fee_request()])

        self.assertEqual(apply_surcharges(as_of=date(2026, 3, 16)), 1)
        self.assertEqual(apply_surcharges(as_of=date(2026, 3, 16)), 0)
        self.assertEqual(apply_surcharges(as_of=date(2026, 4, 2)), 0)

        line = payment.line_items.get()
        self.assertEqual(line.surcharge_amount, Decimal('60.00'))
        self.assertEqual(line.pending_amount, Decimal('360.00'))
        self.assertTotalsMatchLines(payment)
        self.assertEqual(
            ProcessRun.objects.get(process=ProcessRun.PROCESS_SURCHARGES).last_run_on,
            date(2026, 4, 2),
        )

    def test_remove_surcharge(self):
        payment = self._open([self._monthly_fee_request()])

        self.assertEqual(remove_surcharge(payment=payment, clock=self.clock), 1)

        line = payment.line_items.get()
        self.assertIsNone(line.surcharge)
        self.assertEqual(line.initial_amount, Decimal('300.00'))
        self.assertEqual(payment.initial_total, Decimal('300.00'))

    def test_surcharge_removal_refused_when_collected_exceeds_new_amount(self):
        payment = self._open([self._monthly_fee_request()])
        apply_collection(payment.line_items.get(), Decimal('310.00'))
        payment.refresh_from_db()

        with self.assertRaises(OverCollection):
            remove_surcharge(payment=payment, clock=self.clock)

        line = payment.line_items.get()
        self.assertEqual(line.surcharge, self.surcharge)
        self.assertEqual(line.initial_amount, Decimal('315.00'))
        self.assertEqual(line.collected_amount, Decimal('310.00'))
        self.assertEqual(line.pending_amount, Decimal('5.00'))
        self.assertFalse(line.is_settled)
        self.assertTotalsMatchLines(payment)

    def test_surcharge_removal_allowed_up_to_collected_amount(self):
        payment = self._open([self._monthly_fee_request()])
        apply_collection(payment.line_items.get(), Decimal('250.00'))
        payment.refresh_from_db()

        self.assertEqual(remove_surcharge(payment=payment, clock=self.clock), 1)

        line = payment.line_items.get()
        self.assertEqual(line.initial_amount, Decimal('300.00'))
        self.assertEqual(line.pending_amount, Decimal('50.00'))
        self.assertTotalsMatchLines(payment)


class StudentCreditTests(FeesBaseTestCase):
    def test_credit_must_be_positive(self):
        with self.assertRaises(ValidationError):
            record_student_credit(student=self.student, amount=Decimal('-5.00'))

    def test_credit_is_spent_as_collection(self):
        payment = self._open([self._monthly_fee_request()])
        line = payment.line_items.get()
        record_student_credit(student=self.student, amount=Decimal('100.00'))

        applied = apply_student_credit(line_item=line, clock=self.clock)

        self.assertEqual(applied, Decimal('100.00'))
        self.assertEqual(line.pending_amount, Decimal('200.00'))
        self.student.refresh_from_db()
        self.assertEqual(self.student.credit_balance, Decimal('0.00'))

    def test_cannot_spend_more_credit_than_available(self):
        payment = self._open([self._monthly_fee_request()])
        record_student_credit(student=self.student, amount=Decimal('20.00'))

        with self.assertRaises(ValidationError):
            apply_student_credit(line_item=payment.line_items.get(), amount=Decimal('50.00'))


class MonthlyBillingRunTests(FeesBaseTestCase):
    def test_run_bills_fees_once(self):
        result = run_monthly_billing(clock=self.clock, catalog=self.catalog)
        rerun = run_monthly_billing(clock=self.clock, catalog=self.catalog)

        self.assertEqual(result.fees_generated, 1)
        self.assertEqual(len(result.payments), 1)
        self.assertEqual(rerun.payments, [])
        self.assertEqual(MonthlyFee.objects.count(), 1)
        self.assertEqual(Payment.objects.filter(student=self.student).count(), 1)
        self.assertEqual(
            ProcessRun.objects.get(process=ProcessRun.PROCESS_MONTHLY_BILLING).last_period_start,
            date(2026, 3, 1),
        )

    def test_january_run_bills_enrollment_fee(self):
        result = run_monthly_billing(clock=FixedPeriodClock(date(2027, 1, 4)), catalog=self.catalog)

        payment = result.payments[0]
        self.assertEqual(payment.kind, Payment.KIND_SUBSCRIPTION)
        self.assertEqual(payment.initial_total, Decimal('450.00'))
        self.assertTrue(EnrollmentFee.objects.filter(student=self.student, year=2027).exists())

    def test_next_month_carries_unpaid_fee(self):
        run_monthly_billing(clock=self.clock)
        result = run_monthly_billing(clock=FixedPeriodClock(date(2026, 4, 3)))

        payment = result.payments[0]
        self.assertEqual(payment.line_items.count(), 2)
        self.assertEqual(payment.pending_total, Decimal('600.00'))


class LegacyClassificationTests(FeesBaseTestCase):
    def test_inventory_name_wins_over_text_patterns(self):
        StockItem.objects.create(name='FEE-BAG', price=Decimal('25.00'), quantity=5)

        self.assertEqual(classify_legacy_label('FEE-BAG', catalog=self.catalog), LineItem.KIND_INVENTORY)

    def test_text_patterns(self):
        self.assertEqual(classify_legacy_label('ENROLLMENT_FEE 2026', catalog=self.catalog), LineItem.KIND_ENROLLMENT_FEE)
        self.assertEqual(classify_legacy_label('BALLET - FEE - MARCH 2026', catalog=self.catalog), LineItem.KIND_MONTHLY_FEE)
        self.assertEqual(classify_legacy_label('BALLET - DROP-IN', catalog=self.catalog), LineItem.KIND_MONTHLY_FEE)
        self.assertEqual(classify_legacy_label('BALLET - TRIAL', catalog=self.catalog), LineItem.KIND_MONTHLY_FEE)
        self.assertEqual(classify_legacy_label('Costume rental', catalog=self.catalog), LineItem.KIND_CONCEPT)

    def test_monthly_label_resolves_obligation(self):
        request = legacy_line_item_request('BALLET - FEE - MARCH 2026', student=self.student, catalog=self.catalog)

        self.assertEqual(request.kind, LineItem.KIND_MONTHLY_FEE)
        self.assertEqual(request.monthly_fee.enrollment, self.enrollment)
        self.assertEqual(request.monthly_fee.period_start, date(2026, 3, 1))

    def test_unknown_concept_without_amount_is_not_found(self):
        with self.assertRaises(NotFound):
            legacy_line_item_request('Mystery charge', student=self.student, catalog=self.catalog)


class FinancialRecordTests(FeesBaseTestCase):
    def test_payments_and_line_items_cannot_be_deleted(self):
        payment = self._open([self._concept_request()])

        with self.assertRaises(ValidationError):
            payment.delete()
        with self.assertRaises(ValidationError):
            payment.line_items.get().delete()

    def test_only_one_active_payment_per_student(self):
        self._open([self._concept_request()])

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Payment.objects.create(
                    student=self.student,
                    payment_date=date(2026, 3, 5),
                    due_date=date(2026, 3, 15),
                )

    def test_breakdown_lists_lines_and_totals(self):
        payment = self._open([self._monthly_fee_request(), self._concept_request()])

        breakdown = payment_breakdown(payment)

        self.assertEqual(breakdown['totals']['initial'], Decimal('350.00'))
        self.assertEqual(
            [line['kind'] for line in breakdown['line_items']],
            [LineItem.KIND_MONTHLY_FEE, LineItem.KIND_CONCEPT],
        )

    def test_breakdown_reports_payment_method(self):
        cash = PaymentMethod.objects.create(description='CASH')
        payment = self._open([self._concept_request()], payment_method=cash)

        self.assertEqual(payment_breakdown(payment)['payment_method'], 'CASH')


class PaymentMethodTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.cash = PaymentMethod.objects.create(description='CASH')
        self.transfer = PaymentMethod.objects.create(description='TRANSFER')

    def test_carry_over_keeps_previous_method(self):
        first = self._open([self._monthly_fee_request()], payment_method=self.cash)

        second = self._open([], payment_date=date(2026, 4, 2))

        self.assertEqual(first.payment_method, self.cash)
        self.assertEqual(second.payment_method, self.cash)

    def test_explicit_method_overrides_previous_one(self):
        self._open([self._monthly_fee_request()], payment_method=self.cash)

        second = self._open([], payment_date=date(2026, 4, 2), payment_method=self.transfer)

        self.assertEqual(second.payment_method, self.transfer)

    def test_inactive_method_is_rejected(self):
        self.transfer.delete()

        with self.assertRaises(ValidationError):
            self._open([self._concept_request()], payment_method=self.transfer)
        self.assertFalse(Payment.objects.filter(student=self.student).exists())

    def test_collections_are_grouped_by_method(self):
        cash_payment = self._open([self._concept_request()], payment_method=self.cash)
        apply_collection(cash_payment.line_items.get(), Decimal('50.00'))
        other = Student.objects.create(first_name='Tomas', last_name='Gomez')
        transfer_payment = open_payment(
            student=other,
            requests=[self._concept_request('80.00')],
            payment_method=self.transfer,
            clock=self.clock,
        )
        apply_collection(transfer_payment.line_items.get(), Decimal('30.00'))
        unassigned = Student.objects.create(first_name='Ana', last_name='Ruiz')
        walk_in = open_payment(student=unassigned, requests=[self._concept_request('20.00')], clock=self.clock)
        apply_collection(walk_in.line_items.get(), Decimal('20.00'))

        report = collections_by_payment_method(date_from=date(2026, 3, 1), date_to=date(2026, 3, 31))

        self.assertEqual(
            report,
            {None: Decimal('20.00'), 'CASH': Decimal('50.00'), 'TRANSFER': Decimal('30.00')},
        )
        self.assertEqual(collections_by_payment_method(date_from=date(2026, 4, 1), date_to=date(2026, 4, 30)), {})


class ReportingQueryTests(FeesBaseTestCase):
    def test_open_payment_for_student(self):
        self.assertIsNone(open_payment_for(self.student))

        payment = self._open([self._concept_request()])
        self.assertEqual(open_payment_for(self.student), payment)

        apply_collection(payment.line_items.get(), Decimal('50.00'))
        self.assertIsNone(open_payment_for(self.student))

    def test_monthly_fees_for_period_filters_by_state(self):
        payment = self._open([self._monthly_fee_request()])
        fee = MonthlyFee.objects.get()

        self.assertEqual(list(monthly_fees_for_period(self.period)), [fee])
        self.assertEqual(list(monthly_fees_for_period(self.period, state=MonthlyFee.STATE_PAID)), [])
        self.assertEqual(list(monthly_fees_for_period(BillingPeriod(2026, 4))), [])

        apply_collection(payment.line_items.get(), Decimal('300.00'))

        self.assertEqual(list(monthly_fees_for_period(self.period, state=MonthlyFee.STATE_PAID)), [fee])

    def test_next_period_rolls_over_year_end(self):
        self.assertEqual(BillingPeriod(2026, 3).next(), BillingPeriod(2026, 4))
        self.assertEqual(BillingPeriod(2026, 12).next(), BillingPeriod(2027, 1))


class FeesAdminTests(TestCase):
    def setUp(self):
        self.request = RequestFactory().get('/admin/')
        self.request.user = get_user_model().objects.create_superuser(
            username='admin',
            email='admin@example.com',
            password='secret-pass-123',
        )

    def test_billing_records_are_view_only(self):
        for model in (Payment, LineItem, MonthlyFee, EnrollmentFee, ProcessRun):
            model_admin = admin.site._registry[model]
            self.assertFalse(model_admin.has_add_permission(self.request))
            self.assertFalse(model_admin.has_change_permission(self.request))
            self.assertFalse(model_admin.has_delete_permission(self.request))
            self.assertTrue(model_admin.has_view_permission(self.request))


class FeesCommandTests(FeesBaseTestCase):
    def test_generate_enrollment_fees_command(self):
        out = StringIO()
        with mock.patch.object(SystemPeriodClock, 'today', return_value=date(2026, 2, 1)):
            call_command('generate_enrollment_fees', '--year', '2026', stdout=out)

        self.assertTrue(EnrollmentFee.objects.filter(student=self.student, year=2026).exists())
        self.assertEqual(
            ProcessRun.objects.get(process=ProcessRun.PROCESS_ENROLLMENT_FEES).last_run_on,
            date(2026, 2, 1),
        )
        self.assertIn('1 enrollment fees ready for 2026', out.getvalue())

    def test_generate_monthly_fees_command(self):
        out = StringIO()
        call_command('generate_monthly_fees', '--year', '2026', '--month', '3', stdout=out)

        self.assertEqual(MonthlyFee.objects.filter(period_start=date(2026, 3, 1)).count(), 1)
        self.assertIn('1 monthly fees', out.getvalue())
