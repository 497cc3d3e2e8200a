from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from apps.core.fees.services import mark_overdue_vouchers


class Command(BaseCommand):
    help = 'Marks unpaid and partially paid vouchers past their due date as overdue.'

    def add_arguments(self, parser):
        parser.add_argument('--as-of', dest='as_of', help='Reference date (YYYY-MM-DD), defaults to today.')

    def handle(self, *args, **options):
        as_of = None
        if options['as_of']:
            try:
                as_of = parse_date(options['as_of'])
            except ValueError:
                as_of = None
            if as_of is None:
                raise CommandError('--as-of must be a date in YYYY-MM-DD format.')

        marked = mark_overdue_vouchers(as_of=as_of)
        self.stdout.write(self.style.SUCCESS(f'Marked {marked} vouchers overdue.'))
