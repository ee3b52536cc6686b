from datetime import date

from django.core.management.base import BaseCommand, CommandError

from apps.core.fees.services import run_monthly_billing
from apps.core.utils.periods import FixedPeriodClock, SystemPeriodClock


class Command(BaseCommand):
    help = 'Generates monthly fees for active enrollments and bills them into open payments.'

    def add_arguments(self, parser):
        parser.add_argument('--year', type=int, help='Billing year (defaults to the current one).')
        parser.add_argument('--month', type=int, help='Billing month 1-12 (defaults to the current one).')

    def handle(self, *args, **options):
        year, month = options.get('year'), options.get('month')
        if (year is None) != (month is None):
            raise CommandError('Pass both --year and --month, or neither.')

        if year is None:
            clock = SystemPeriodClock()
        else:
            if not 1 <= month <= 12:
                raise CommandError('--month must be between 1 and 12.')
            clock = FixedPeriodClock(date(year, month, 1))

        result = run_monthly_billing(clock=clock)
        self.stdout.write(
            self.style.SUCCESS(
                f'{result.period}: {result.fees_generated} monthly fees, {len(result.payments)} payments opened.'
            )
        )
