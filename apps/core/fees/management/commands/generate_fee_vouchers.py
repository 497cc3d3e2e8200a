from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from apps.core.academics.models import SchoolClass, Section
from apps.core.fees.services import generate_monthly_vouchers


class Command(BaseCommand):
    help = 'Generates monthly fee vouchers for active students and marks past-due vouchers overdue.'

    def add_arguments(self, parser):
        today = timezone.localdate()
        parser.add_argument('--month', type=int, default=today.month)
        parser.add_argument('--year', type=int, default=today.year)
        parser.add_argument('--class', dest='school_class', type=int, help='Limit to one class id.')
        parser.add_argument('--section', type=int, help='Limit to one section id.')
        parser.add_argument('--student', dest='students', type=int, action='append', help='Student id, repeatable.')
        parser.add_argument('--no-overdue-sweep', action='store_true', help='Skip the overdue sweep after generation.')

    def handle(self, *args, **options):
        school_class = None
        if options['school_class']:
            school_class = SchoolClass.objects.filter(pk=options['school_class']).first()
            if school_class is None:
                raise CommandError(f"Class {options['school_class']} does not exist.")

        section = None
        if options['section']:
            section = Section.objects.filter(pk=options['section']).first()
            if section is None:
                raise CommandError(f"Section {options['section']} does not exist.")

        self.stdout.write(f"Generating fee vouchers for {options['month']:02d}/{options['year']}...")

        try:
            summary = generate_monthly_vouchers(
                options['month'],
                options['year'],
                school_class=school_class,
                section=section,
                student_ids=options['students'],
                is_auto_generated=True,
                mark_overdue=not options['no_overdue_sweep'],
            )
        except ValidationError as exc:
            raise CommandError('; '.join(exc.messages))

        self.stdout.write(self.style.SUCCESS(
            f"Processed {summary['total']} students: created={summary['created']} "
            f"exists={summary['exists']} no_fees={summary['no_fees']} errors={summary['error']}"
        ))
        if 'marked_overdue' in summary:
            self.stdout.write(self.style.SUCCESS(f"Marked {summary['marked_overdue']} vouchers overdue."))
        if summary['error']:
            self.stdout.write(self.style.WARNING('Some students failed; see the log for details.'))
