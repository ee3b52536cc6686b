from datetime import date
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase

from apps.core.students.models import Student
from apps.core.utils.periods import BillingPeriod

from .models import Discipline, Enrollment
from .services import get_active_enrollments, withdraw_enrollment


class AcademicsBaseTestCase(TestCase):
    def setUp(self):
        self.student = Student.objects.create(first_name='Lucia', last_name='Perez')
        self.other_student = Student.objects.create(first_name='Tomas', last_name='Gomez')
        self.ballet = Discipline.objects.create(name='BALLET', base_fee=Decimal('300.00'))
        self.tango = Discipline.objects.create(name='TANGO', base_fee=Decimal('250.00'))
        self.period = BillingPeriod(2026, 3)


class ActiveEnrollmentTests(AcademicsBaseTestCase):
    def test_enrollment_overlapping_period_is_returned(self):
        enrollment = Enrollment.objects.create(
            student=self.student,
            discipline=self.ballet,
            enrolled_on=date(2026, 2, 10),
        )

        self.assertEqual(list(get_active_enrollments(self.period)), [enrollment])

    def test_future_and_inactive_enrollments_are_excluded(self):
        Enrollment.objects.create(student=self.student, discipline=self.ballet, enrolled_on=date(2026, 4, 1))
        Enrollment.objects.create(student=self.other_student, discipline=self.tango, enrolled_on=date(2026, 1, 1))
        self.other_student.delete()

        self.assertEqual(list(get_active_enrollments(self.period)), [])

    def test_withdrawn_enrollment_is_excluded(self):
        enrollment = Enrollment.objects.create(
            student=self.student,
            discipline=self.ballet,
            enrolled_on=date(2026, 1, 5),
        )
        withdraw_enrollment(enrollment=enrollment, withdrawn_on=date(2026, 2, 20))

        enrollment.refresh_from_db()
        self.assertEqual(enrollment.status, Enrollment.STATUS_WITHDRAWN)
        self.assertEqual(list(get_active_enrollments(self.period)), [])


class EnrollmentValidationTests(AcademicsBaseTestCase):
    def test_second_active_enrollment_in_same_discipline_is_invalid(self):
        Enrollment.objects.create(student=self.student, discipline=self.ballet, enrolled_on=date(2026, 1, 5))
        duplicate = Enrollment(student=self.student, discipline=self.ballet, enrolled_on=date(2026, 2, 5))

        with self.assertRaises(ValidationError):
            duplicate.full_clean()

    def test_withdrawal_before_enrollment_is_rejected(self):
        enrollment = Enrollment.objects.create(
            student=self.student,
            discipline=self.ballet,
            enrolled_on=date(2026, 3, 1),
        )

        with self.assertRaises(ValidationError):
            withdraw_enrollment(enrollment=enrollment, withdrawn_on=date(2026, 2, 1))
