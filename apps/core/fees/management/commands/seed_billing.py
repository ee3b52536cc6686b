import random
from datetime import date
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction
from faker import Faker

from apps.core.academics.models import Discipline, Enrollment
from apps.core.catalog.models import Concept, Discount, PaymentMethod, StockItem, Surcharge, SurchargeThreshold
from apps.core.students.models import Student


class Command(BaseCommand):
    help = 'Seeds the database with a demo dance school ready for billing.'

    def add_arguments(self, parser):
        parser.add_argument('--students', type=int, default=30, help='Number of students to create.')
        parser.add_argument('--seed', type=int, help='Random seed for reproducible data.')

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding database...')

        fake = Faker()
        if options.get('seed') is not None:
            Faker.seed(options['seed'])
            random.seed(options['seed'])

        # Late payment surcharge
        surcharge, created = Surcharge.objects.get_or_create(description='Late payment')
        if created:
            for day_from, percentage in ((1, '5.00'), (10, '10.00'), (15, '20.00')):
                SurchargeThreshold.objects.create(surcharge=surcharge, day_from=day_from, percentage=Decimal(percentage))
            self.stdout.write(self.style.SUCCESS('Successfully created surcharge: Late payment'))

        discounts = []
        for description, percentage in (('Siblings', '10.00'), ('Scholarship', '50.00')):
            discount, created = Discount.objects.get_or_create(
                description=description,
                defaults={'percentage': Decimal(percentage)},
            )
            discounts.append(discount)
            if created:
                self.stdout.write(self.style.SUCCESS(f'Successfully created discount: {description}'))

        disciplines = []
        for name, base_fee in (('BALLET', '300.00'), ('TANGO', '250.00'), ('JAZZ', '280.00'), ('HIP HOP', '220.00')):
            discipline, created = Discipline.objects.get_or_create(
                name=name,
                defaults={
                    'base_fee': Decimal(base_fee),
                    'enrollment_fee': Decimal('150.00'),
                    'drop_in_price': Decimal('40.00'),
                    'trial_price': Decimal('20.00'),
                    'default_surcharge': surcharge,
                },
            )
            disciplines.append(discipline)
            if created:
                self.stdout.write(self.style.SUCCESS(f'Successfully created discipline: {name}'))

        for name, price, quantity in (('Ballet Shoes', '90.00', 12), ('Leotard', '65.00', 20), ('Water Bottle', '15.00', 40)):
            item, created = StockItem.objects.get_or_create(
                name=name,
                defaults={'price': Decimal(price), 'quantity': quantity},
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f'Successfully created stock item: {item.name}'))

        year = date.today().year
        Concept.objects.get_or_create(
            description=f'ENROLLMENT_FEE {year}',
            defaults={'price': Decimal('150.00')},
        )
        Concept.objects.get_or_create(description='COSTUME RENTAL', defaults={'price': Decimal('35.00')})

        for description in ('CASH', 'DEBIT CARD', 'TRANSFER'):
            PaymentMethod.objects.get_or_create(description=description)

        for _ in range(options['students']):
            student = Student.objects.create(
                first_name=fake.first_name(),
                last_name=fake.last_name(),
                document_number=str(fake.unique.random_number(digits=8)),
                date_of_birth=fake.date_of_birth(minimum_age=5, maximum_age=40),
                phone=fake.phone_number()[:30],
                email=fake.email(),
                joined_on=fake.date_between(start_date=date(year, 1, 1), end_date='today'),
            )
            for discipline in random.sample(disciplines, k=random.randint(1, 2)):
                Enrollment.objects.create(
                    student=student,
                    discipline=discipline,
                    discount=random.choice([None, None, None, *discounts]),
                    enrolled_on=student.joined_on,
                )
            self.stdout.write(self.style.SUCCESS(f'Successfully created student: {student.full_name}'))

        self.stdout.write(self.style.SUCCESS('Database seeding complete!'))
