from datetime import date

from django.core.management.base import BaseCommand, CommandError

from apps.core.fees.services import apply_surcharges


class Command(BaseCommand):
    help = 'Applies the surcharge rate in force on the given date to unsettled line items.'

    def add_arguments(self, parser):
        parser.add_argument('--date', help='Reference date as YYYY-MM-DD (defaults to today).')

    def handle(self, *args, **options):
        as_of = None
        if options.get('date'):
            try:
                as_of = date.fromisoformat(options['date'])
            except ValueError as exc:
                raise CommandError(f"Invalid date: {options['date']}") from exc

        updated = apply_surcharges(as_of=as_of)
        self.stdout.write(self.style.SUCCESS(f'Surcharge updated on {updated} line items.'))
