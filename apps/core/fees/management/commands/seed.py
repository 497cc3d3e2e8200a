import random
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone
from faker import Faker

from apps.core.academics.models import SchoolClass, Section
from apps.core.fees.models import FeeStructure, FeeType, FeeVoucher, Payment
from apps.core.fees.services import OUTCOME_CREATED, generate_monthly_vouchers, record_payment
from apps.core.students.models import Student
from apps.core.users.models import User


MONTHLY_FEE_BY_CLASS = {
    index: Decimal(1500 + index * 250)
    for index in range(1, 11)
}

ONE_TIME_FEES = (
    ('Admission Fee', FeeType.ADMISSION_FEE, Decimal('5000.00')),
    ('Registration Fee', FeeType.REGISTRATION_FEE, Decimal('1000.00')),
    ('Security Deposit', FeeType.SECURITY_DEPOSIT, Decimal('3000.00')),
    ('Annual Fund', FeeType.ANNUAL_FUND, Decimal('2500.00')),
    ('Exam Fee', FeeType.EXAM_FEE, Decimal('800.00')),
)


class Command(BaseCommand):
    help = 'Seeds the database with classes, students, fee structures and a month of vouchers.'

    def add_arguments(self, parser):
        parser.add_argument('--students-per-section', type=int, default=10)
        parser.add_argument('--with-vouchers', action='store_true', help='Issue vouchers for the current month.')

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding database...')

        fake = Faker()

        # Create users
        if not User.objects.filter(username='superadmin').exists():
            User.objects.create_superuser('superadmin', 'superadmin@example.com', 'password')
            self.stdout.write(self.style.SUCCESS('Successfully created superadmin user.'))

        for username, role in (('schooladmin', User.ROLE_SCHOOLADMIN), ('accountant', User.ROLE_ACCOUNTANT)):
            user, created = User.objects.get_or_create(username=username, defaults={'role': role})
            if created:
                user.set_password('password')
                user.save()
                self.stdout.write(self.style.SUCCESS(f'Successfully created {role} user.'))

        # Create classes and sections
        for index in range(1, 11):
            school_class, created = SchoolClass.objects.get_or_create(
                name=f'Class {index}',
                defaults={'code': str(index), 'display_order': index},
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f'Successfully created class: {school_class.name}'))

            for section_name in ['A', 'B']:
                section, created = Section.objects.get_or_create(
                    school_class=school_class,
                    name=section_name,
                )
                if created:
                    self.stdout.write(self.style.SUCCESS(f'  - Successfully created section: {section}'))

        # Fee schedule
        for name, fee_type, amount in ONE_TIME_FEES:
            structure, created = FeeStructure.objects.get_or_create(
                name=name,
                school_class=None,
                defaults={'fee_type': fee_type, 'amount': amount},
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f'Successfully created fee structure: {structure}'))

        for school_class in SchoolClass.objects.filter(is_active=True):
            structure, created = FeeStructure.objects.get_or_create(
                name='Monthly Tuition',
                school_class=school_class,
                defaults={
                    'fee_type': FeeType.MONTHLY_FEE,
                    'amount': MONTHLY_FEE_BY_CLASS.get(school_class.display_order, Decimal('2000.00')),
                    'is_recurring': True,
                },
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f'Successfully created fee structure: {structure}'))

        # Create students
        for school_class in SchoolClass.objects.filter(is_active=True):
            monthly_fee = MONTHLY_FEE_BY_CLASS.get(school_class.display_order, Decimal('2000.00'))
            for section in school_class.sections.filter(is_active=True):
                for _ in range(options['students_per_section']):
                    student, created = Student.objects.get_or_create(
                        admission_number=f"ADM-{fake.unique.random_number(digits=6, fix_len=True)}",
                        defaults={
                            'first_name': fake.first_name(),
                            'last_name': fake.last_name(),
                            'admission_date': fake.date_between(start_date='-3y', end_date='today'),
                            'current_class': school_class,
                            'current_section': section,
                            # A few scholarship students carry no standing fee.
                            'monthly_fee': monthly_fee if random.random() > 0.1 else Decimal('0.00'),
                        },
                    )
                    if created:
                        self.stdout.write(self.style.SUCCESS(f'Successfully created student: {student}'))

        if options['with_vouchers']:
            self._seed_vouchers(fake)

        self.stdout.write(self.style.SUCCESS('Database seeding complete!'))

    def _seed_vouchers(self, fake):
        today = timezone.localdate()
        accountant = User.objects.filter(role=User.ROLE_ACCOUNTANT).first()

        summary = generate_monthly_vouchers(today.month, today.year, issued_by=accountant)
        self.stdout.write(self.style.SUCCESS(
            f"Issued vouchers: created={summary['created']} exists={summary['exists']} "
            f"no_fees={summary['no_fees']}"
        ))

        payments = 0
        methods = [method for method, _ in Payment.PAYMENT_METHOD_CHOICES]
        for row in summary['results']:
            if row['outcome'] != OUTCOME_CREATED or random.random() < 0.4:
                continue

            balance = FeeVoucher.objects.values_list('balance_due', flat=True).get(pk=row['voucher_id'])
            amount = balance if random.random() < 0.6 else (balance / 2).quantize(Decimal('0.01'))
            record_payment(
                row['voucher_id'],
                amount,
                random.choice(methods),
                accountant,
                reference=fake.bothify(text='TXN-########'),
            )
            payments += 1

        self.stdout.write(self.style.SUCCESS(f'Recorded {payments} payments.'))
