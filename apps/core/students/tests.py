from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase

from .models import Student


class StudentModelTests(TestCase):
    def test_full_name_strips_missing_last_name(self):
        student = Student.objects.create(first_name='Lucia')
        self.assertEqual(student.full_name, 'Lucia')

    def test_negative_credit_is_rejected(self):
        student = Student(first_name='Lucia', credit_balance=Decimal('-1.00'))
        with self.assertRaises(ValidationError):
            student.full_clean()

    def test_delete_deactivates_instead_of_removing(self):
        student = Student.objects.create(first_name='Lucia', last_name='Paz')
        student.delete()

        student.refresh_from_db()
        self.assertFalse(student.is_active)
        self.assertIsNotNone(student.left_on)
        self.assertFalse(Student.objects.active().filter(pk=student.pk).exists())
