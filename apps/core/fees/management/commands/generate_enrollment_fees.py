from django.core.management.base import BaseCommand
from django.db import transaction

from apps.core.fees.generators import generate_enrollment_fees_for_year
from apps.core.fees.models import ProcessRun
from apps.core.fees.services import record_process_run
from apps.core.utils.periods import SystemPeriodClock


class Command(BaseCommand):
    help = 'Generates the yearly enrollment fee for every actively enrolled student.'

    def add_arguments(self, parser):
        parser.add_argument('--year', type=int, help='Year to generate (defaults to the current one).')

    @transaction.atomic
    def handle(self, *args, **options):
        today = SystemPeriodClock().today()
        year = options.get('year') or today.year

        fees = generate_enrollment_fees_for_year(year=year)
        record_process_run(ProcessRun.PROCESS_ENROLLMENT_FEES, run_on=today)
        self.stdout.write(self.style.SUCCESS(f'{len(fees)} enrollment fees ready for {year}.'))
