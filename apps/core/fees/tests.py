from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.urls import reverse

from apps.core.academics.models import SchoolClass, Section
from apps.core.students.models import Student
from apps.core.users.models import AuditLog

from . import services
from .exceptions import (
    InvalidAmount,
    InvalidFeeItem,
    LedgerError,
    StudentNotFound,
    VoucherAlreadySettled,
    VoucherCancelled,
    VoucherConcurrentUpdate,
    VoucherNotFound,
    VoucherStateError,
)
from .models import FeeStructure, FeeType, FeeVoucher, Payment
from .services import (
    OUTCOME_CREATED,
    OUTCOME_EXISTS,
    OUTCOME_NO_FEES,
    FeeLineItem,
    cancel_voucher,
    carried_balance,
    generate_monthly_vouchers,
    issue_voucher,
    issue_vouchers_for_students,
    items_from_fee_structures,
    ledger_status,
    mark_overdue_vouchers,
    record_payment,
    student_outstanding_summary,
    waive_voucher,
)
from .signals import payment_recorded, voucher_issued


MONTH = 3
YEAR = 2026


class FeesBaseTestCase(TestCase):
    def setUp(self):
        user_model = get_user_model()

        self.school_class = SchoolClass.objects.create(name='8th', code='VIII', display_order=8)
        self.section = Section.objects.create(school_class=self.school_class, name='A')

        self.student = self._make_student('FEE-001', 'Riya', Decimal('1000.00'))

        self.school_admin = user_model.objects.create_user(
            username='fees_admin',
            password='pass12345',
            role='schooladmin',
        )
        self.accountant = user_model.objects.create_user(
            username='fees_accountant',
            password='pass12345',
            role='accountant',
        )
        self.teacher = user_model.objects.create_user(
            username='fees_teacher',
            password='pass12345',
            role='teacher',
        )

    def _make_student(self, admission_number, first_name, monthly_fee, school_class=None, section=None, **extra):
        return Student.objects.create(
            admission_number=admission_number,
            first_name=first_name,
            current_class=school_class or self.school_class,
            current_section=section or self.section,
            monthly_fee=monthly_fee,
            **extra,
        )

    def _issue(self, student=None, month=MONTH, year=YEAR, **kwargs):
        result = issue_voucher(student or self.student, month, year, **kwargs)
        return result.voucher


class VoucherIssueTests(FeesBaseTestCase):
    def test_issue_voucher_from_standing_monthly_fee(self):
        result = issue_voucher(self.student.id, MONTH, YEAR)

        self.assertEqual(result.outcome, OUTCOME_CREATED)
        voucher = FeeVoucher.objects.get(pk=result.voucher.pk)
        self.assertTrue(voucher.voucher_number.startswith('FV-'))
        self.assertTrue(voucher.voucher_number.endswith('-00001'))
        self.assertEqual(voucher.subtotal, Decimal('1000.00'))
        self.assertEqual(voucher.total_amount, Decimal('1000.00'))
        self.assertEqual(voucher.paid_amount, Decimal('0.00'))
        self.assertEqual(voucher.balance_due, Decimal('1000.00'))
        self.assertEqual(voucher.previous_balance, Decimal('0.00'))
        self.assertEqual(voucher.status, FeeVoucher.STATUS_UNPAID)
        self.assertEqual(voucher.due_date, date(YEAR, MONTH, 10))
        self.assertIsNone(voucher.previous_voucher_id)

        items = list(voucher.items.all())
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].fee_type, FeeType.MONTHLY_FEE)
        self.assertEqual(items[0].amount, Decimal('1000.00'))

    def test_second_issue_for_same_period_returns_existing_voucher(self):
        first = issue_voucher(self.student, MONTH, YEAR)
        second = issue_voucher(self.student, MONTH, YEAR)

        self.assertEqual(second.outcome, OUTCOME_EXISTS)
        self.assertEqual(second.voucher.pk, first.voucher.pk)
        self.assertEqual(FeeVoucher.objects.filter(student=self.student).count(), 1)

    def test_previous_balance_is_carried_but_never_added_to_total(self):
        march = self._issue()
        record_payment(march.pk, Decimal('500.00'), received_by=self.accountant)

        april = self._issue(month=4)
        self.assertEqual(april.total_amount, Decimal('1000.00'))
        self.assertEqual(april.balance_due, Decimal('1000.00'))
        self.assertEqual(april.previous_balance, Decimal('500.00'))
        self.assertEqual(april.previous_voucher_id, march.pk)

        may = self._issue(month=5)
        self.assertEqual(may.total_amount, Decimal('1000.00'))
        self.assertEqual(may.previous_balance, Decimal('1500.00'))
        self.assertEqual(may.previous_voucher_id, april.pk)

    def test_overdue_vouchers_count_towards_carried_balance(self):
        march = self._issue()
        mark_overdue_vouchers(as_of=date(YEAR, 4, 1))

        balance, latest = carried_balance(self.student)
        self.assertEqual(balance, Decimal('1000.00'))
        self.assertEqual(latest.pk, march.pk)

    def test_settled_vouchers_are_not_carried(self):
        march = self._issue()
        record_payment(march.pk, Decimal('1000.00'), received_by=self.accountant)

        april = self._issue(month=4)
        self.assertEqual(april.previous_balance, Decimal('0.00'))
        self.assertIsNone(april.previous_voucher_id)

    def test_student_without_fee_returns_no_fees(self):
        student = self._make_student('FEE-002', 'Aman', Decimal('0.00'))

        result = issue_voucher(student, MONTH, YEAR)

        self.assertEqual(result.outcome, OUTCOME_NO_FEES)
        self.assertIsNone(result.voucher)
        self.assertFalse(FeeVoucher.objects.filter(student=student).exists())

    def test_explicit_items_replace_monthly_fee(self):
        result = issue_voucher(
            self.student,
            MONTH,
            YEAR,
            items=[
                {'fee_type': 'admission_fee', 'amount': '5000', 'description': 'Admission'},
                FeeLineItem(FeeType.EXAM_FEE, Decimal('750.00'), 'Mid term'),
            ],
        )

        voucher = result.voucher
        self.assertEqual(voucher.subtotal, Decimal('5750.00'))
        self.assertEqual(voucher.total_amount, Decimal('5750.00'))
        self.assertEqual(
            sorted(voucher.items.values_list('fee_type', flat=True)),
            [FeeType.ADMISSION_FEE, FeeType.EXAM_FEE],
        )

    def test_empty_explicit_items_issue_nothing(self):
        result = issue_voucher(self.student, MONTH, YEAR, items=[])
        self.assertEqual(result.outcome, OUTCOME_NO_FEES)

    def test_invalid_fee_items_are_rejected(self):
        with self.assertRaises(InvalidFeeItem):
            issue_voucher(self.student, MONTH, YEAR, items=[{'fee_type': 'BOGUS', 'amount': '10'}])
        with self.assertRaises(InvalidFeeItem):
            issue_voucher(self.student, MONTH, YEAR, items=[{'fee_type': 'LAB_FEE', 'amount': '0'}])
        with self.assertRaises(InvalidFeeItem):
            issue_voucher(self.student, MONTH, YEAR, items=[{'fee_type': 'LAB_FEE', 'amount': 'ten'}])
        for amount in ('NaN', 'Infinity'):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidFeeItem):
                    issue_voucher(self.student, MONTH, YEAR, items=[{'fee_type': 'OTHER', 'amount': amount}])
        with self.assertRaises(InvalidFeeItem):
            issue_voucher(self.student, MONTH, YEAR, items=['LAB_FEE'])

        self.assertFalse(FeeVoucher.objects.exists())

    def test_unknown_student_raises_not_found(self):
        with self.assertRaises(StudentNotFound):
            issue_voucher(999999, MONTH, YEAR)

    def test_invalid_billing_period_is_rejected(self):
        with self.assertRaises(LedgerError):
            issue_voucher(self.student, 13, YEAR)
        with self.assertRaises(LedgerError):
            issue_voucher(self.student, 0, YEAR)
        with self.assertRaises(LedgerError):
            issue_voucher(self.student, MONTH, 'next')

    @override_settings(FEE_VOUCHER_DUE_DAY=31)
    def test_due_date_is_clamped_to_month_length(self):
        voucher = self._issue(month=2)
        self.assertEqual(voucher.due_date, date(YEAR, 2, 28))

    def test_explicit_due_date_is_kept(self):
        voucher = self._issue(due_date=date(YEAR, MONTH, 20))
        self.assertEqual(voucher.due_date, date(YEAR, MONTH, 20))

    def test_voucher_numbers_are_unique_across_students(self):
        other = self._make_student('FEE-002', 'Aman', Decimal('800.00'))
        first = self._issue()
        second = self._issue(student=other)
        self.assertNotEqual(first.voucher_number, second.voucher_number)

    def test_items_from_fee_structures(self):
        lab = FeeStructure.objects.create(name='Lab', fee_type=FeeType.LAB_FEE, amount=Decimal('300.00'))
        sports = FeeStructure.objects.create(name='Sports', fee_type=FeeType.SPORTS_FEE, amount=Decimal('200.00'))
        inactive = FeeStructure.objects.create(
            name='Old Library',
            fee_type=FeeType.LIBRARY_FEE,
            amount=Decimal('100.00'),
            is_active=False,
        )

        items = items_from_fee_structures([lab.pk, sports.pk])
        voucher = self._issue(items=items)

        self.assertEqual(voucher.total_amount, Decimal('500.00'))
        self.assertEqual(voucher.items.filter(fee_structure=lab).count(), 1)
        with self.assertRaises(InvalidFeeItem):
            items_from_fee_structures([inactive.pk])

    def test_fee_structure_of_another_class_is_rejected(self):
        other_class = SchoolClass.objects.create(name='10th', code='X', display_order=10)
        own = FeeStructure.objects.create(
            name='Computer Lab',
            fee_type=FeeType.COMPUTER_FEE,
            amount=Decimal('400.00'),
            school_class=self.school_class,
        )
        foreign = FeeStructure.objects.create(
            name='Board Exam',
            fee_type=FeeType.EXAM_FEE,
            amount=Decimal('900.00'),
            school_class=other_class,
        )

        with self.assertRaises(InvalidFeeItem):
            issue_voucher(self.student, MONTH, YEAR, items=items_from_fee_structures([own.pk, foreign.pk]))
        self.assertFalse(FeeVoucher.objects.exists())

        voucher = self._issue(items=items_from_fee_structures([own.pk]))
        self.assertEqual(voucher.total_amount, Decimal('400.00'))

    def test_issuance_is_audited(self):
        voucher = self._issue(issued_by=self.accountant)

        entry = AuditLog.objects.get(
            entity_type=AuditLog.ENTITY_FEE,
            action=AuditLog.ACTION_FEE_GENERATED,
            entity_id=str(voucher.pk),
        )
        self.assertEqual(entry.user, self.accountant)
        self.assertEqual(entry.details['voucher_number'], voucher.voucher_number)
        self.assertEqual(entry.details['student_id'], self.student.pk)
        self.assertEqual(Decimal(entry.details['total_amount']), Decimal('1000.00'))

    def test_scheduled_issuance_is_audited_as_system(self):
        voucher = self._issue(is_auto_generated=True)

        entry = AuditLog.objects.get(entity_id=str(voucher.pk), action=AuditLog.ACTION_FEE_GENERATED)
        self.assertIsNone(entry.user)
        self.assertEqual(entry.actor_label, 'system')
        self.assertTrue(voucher.is_auto_generated)

    def test_existing_voucher_is_not_audited_again(self):
        self._issue()
        self._issue()
        self.assertEqual(AuditLog.objects.filter(action=AuditLog.ACTION_FEE_GENERATED).count(), 1)

    def test_audit_failure_does_not_block_issuance(self):
        with mock.patch.object(AuditLog, 'save', side_effect=RuntimeError('audit store down')):
            with self.assertLogs('apps.core.users.audit', level='ERROR'):
                result = issue_voucher(self.student, MONTH, YEAR)

        self.assertEqual(result.outcome, OUTCOME_CREATED)
        self.assertTrue(FeeVoucher.objects.filter(pk=result.voucher.pk).exists())
        self.assertFalse(AuditLog.objects.exists())

    def test_notification_is_sent_after_commit(self):
        received = []

        def receiver(sender, voucher, **kwargs):
            received.append(voucher.pk)

        voucher_issued.connect(receiver, weak=False)
        self.addCleanup(voucher_issued.disconnect, receiver)

        with self.captureOnCommitCallbacks(execute=True):
            voucher = self._issue()
            self.assertEqual(received, [])

        self.assertEqual(received, [voucher.pk])

    def test_notification_failure_does_not_roll_back_issuance(self):
        def failing_receiver(sender, **kwargs):
            raise RuntimeError('sms gateway down')

        voucher_issued.connect(failing_receiver, weak=False)
        self.addCleanup(voucher_issued.disconnect, failing_receiver)

        with self.assertLogs('apps.core.fees.signals', level='ERROR'):
            with self.captureOnCommitCallbacks(execute=True):
                voucher = self._issue()

        self.assertTrue(FeeVoucher.objects.filter(pk=voucher.pk).exists())


class VoucherBatchTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.batch_class = SchoolClass.objects.create(name='9th', code='IX', display_order=9)
        self.batch_section = Section.objects.create(school_class=self.batch_class, name='A')

    def _batch_student(self, index, monthly_fee, **extra):
        return self._make_student(
            f'BATCH-{index:03d}',
            f'Student {index}',
            monthly_fee,
            school_class=self.batch_class,
            section=self.batch_section,
            **extra,
        )

    def test_batch_over_class_reports_each_outcome(self):
        with_existing = [self._batch_student(index, Decimal('1000.00')) for index in range(10)]
        for student in with_existing:
            issue_voucher(student, MONTH, YEAR)
        for index in range(10, 45):
            self._batch_student(index, Decimal('1000.00'))
        for index in range(45, 50):
            self._batch_student(index, Decimal('0.00'))

        before = FeeVoucher.objects.count()
        summary = generate_monthly_vouchers(MONTH, YEAR, school_class=self.batch_class)

        self.assertEqual(summary['total'], 50)
        self.assertEqual(summary['created'], 35)
        self.assertEqual(summary['exists'], 10)
        self.assertEqual(summary['no_fees'], 5)
        self.assertEqual(summary['error'], 0)
        self.assertEqual(FeeVoucher.objects.count() - before, 35)
        self.assertFalse(FeeVoucher.objects.filter(student=self.student).exists())

    def test_batch_skips_students_who_are_not_billable(self):
        active = self._batch_student(1, Decimal('500.00'))
        self._batch_student(2, Decimal('500.00'), status=Student.STATUS_TRANSFERRED)
        self._batch_student(3, Decimal('500.00'), is_archived=True)

        summary = generate_monthly_vouchers(MONTH, YEAR, school_class=self.batch_class)

        self.assertEqual(summary['total'], 1)
        self.assertEqual(summary['results'][0]['student_id'], active.pk)

    def test_batch_by_section_scope(self):
        other_section = Section.objects.create(school_class=self.batch_class, name='B')
        in_scope = self._batch_student(1, Decimal('500.00'))
        self._make_student(
            'BATCH-B01',
            'Other',
            Decimal('500.00'),
            school_class=self.batch_class,
            section=other_section,
        )

        summary = generate_monthly_vouchers(MONTH, YEAR, section=self.batch_section)

        self.assertEqual(summary['created'], 1)
        self.assertEqual(summary['results'][0]['student_id'], in_scope.pk)

    def test_batch_isolates_per_student_failures(self):
        first = self._batch_student(1, Decimal('500.00'))
        second = self._batch_student(2, Decimal('500.00'))

        with self.assertLogs('apps.core.fees.services', level='WARNING'):
            summary = issue_vouchers_for_students([first.pk, 999999, second.pk, first.pk], MONTH, YEAR)

        self.assertEqual(summary['total'], 3)
        self.assertEqual(summary['created'], 2)
        self.assertEqual(summary['error'], 1)
        failed = [row for row in summary['results'] if row['outcome'] == 'error']
        self.assertEqual(failed[0]['student_id'], 999999)
        self.assertIn('not found', failed[0]['error'])

    def test_unexpected_failure_is_logged_and_batch_continues(self):
        first = self._batch_student(1, Decimal('500.00'))
        second = self._batch_student(2, Decimal('500.00'))
        real_next_document_number = services.next_document_number
        calls = []

        def flaky_next_document_number(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError('unexpected')
            return real_next_document_number(*args, **kwargs)

        with mock.patch.object(services, 'next_document_number', side_effect=flaky_next_document_number):
            with self.assertLogs('apps.core.fees.services', level='ERROR'):
                summary = issue_vouchers_for_students([first.pk, second.pk], MONTH, YEAR)

        self.assertEqual(summary['error'], 1)
        self.assertEqual(summary['created'], 1)
        self.assertFalse(FeeVoucher.objects.filter(student=first).exists())
        self.assertTrue(FeeVoucher.objects.filter(student=second).exists())

    def test_batch_can_run_overdue_sweep(self):
        self._issue(month=1)
        summary = generate_monthly_vouchers(
            MONTH,
            YEAR,
            student_ids=[self.student.pk],
            mark_overdue=True,
            as_of=date(YEAR, MONTH, 1),
        )

        self.assertEqual(summary['created'], 1)
        self.assertEqual(summary['marked_overdue'], 1)
        self.assertEqual(
            FeeVoucher.objects.get(student=self.student, month=1).status,
            FeeVoucher.STATUS_OVERDUE,
        )


class PaymentRecorderTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.voucher = self._issue()

    def test_partial_then_full_payment(self):
        first = record_payment(self.voucher.pk, Decimal('400.00'), Payment.METHOD_CASH, self.accountant)

        self.voucher.refresh_from_db()
        self.assertTrue(first.receipt_number.startswith('REC-'))
        self.assertEqual(self.voucher.paid_amount, Decimal('400.00'))
        self.assertEqual(self.voucher.balance_due, Decimal('600.00'))
        self.assertEqual(self.voucher.status, FeeVoucher.STATUS_PARTIAL)

        second = record_payment(self.voucher.pk, '600', Payment.METHOD_BANK_TRANSFER, self.accountant)

        self.voucher.refresh_from_db()
        self.assertNotEqual(first.receipt_number, second.receipt_number)
        self.assertEqual(self.voucher.paid_amount, Decimal('1000.00'))
        self.assertEqual(self.voucher.balance_due, Decimal('0.00'))
        self.assertEqual(self.voucher.status, FeeVoucher.STATUS_PAID)
        self.assertEqual(self.voucher.version, 2)
        self.assertEqual(
            sum(self.voucher.payments.values_list('amount', flat=True)),
            self.voucher.paid_amount,
        )

    def test_overpayment_is_rejected_without_side_effects(self):
        record_payment(self.voucher.pk, Decimal('400.00'), received_by=self.accountant)

        with self.assertRaises(InvalidAmount) as ctx:
            record_payment(self.voucher.pk, Decimal('700.00'), received_by=self.accountant)

        self.assertEqual(ctx.exception.messages, ['Payment amount (700.00) exceeds remaining balance of 600.00.'])
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.payments.count(), 1)
        self.assertEqual(self.voucher.paid_amount, Decimal('400.00'))
        self.assertEqual(self.voucher.balance_due, Decimal('600.00'))
        self.assertEqual(self.voucher.status, FeeVoucher.STATUS_PARTIAL)

    def test_paid_voucher_rejects_further_payments(self):
        record_payment(self.voucher.pk, Decimal('1000.00'), received_by=self.accountant)

        with self.assertRaises(VoucherAlreadySettled):
            record_payment(self.voucher.pk, Decimal('1.00'), received_by=self.accountant)

    def test_non_positive_and_malformed_amounts_are_rejected(self):
        for amount in (Decimal('0'), Decimal('-5.00'), 'abc', None, '0.001', 'NaN', Decimal('Infinity')):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    record_payment(self.voucher.pk, amount, received_by=self.accountant)

        self.assertFalse(Payment.objects.exists())

    def test_cancelled_voucher_rejects_payment(self):
        cancel_voucher(self.voucher.pk, actor=self.school_admin, reason='Duplicate')

        with self.assertRaises(VoucherCancelled):
            record_payment(self.voucher.pk, Decimal('100.00'), received_by=self.accountant)

    def test_waived_voucher_counts_as_settled(self):
        waive_voucher(self.voucher.pk, actor=self.school_admin, reason='Scholarship')

        with self.assertRaises(VoucherAlreadySettled):
            record_payment(self.voucher.pk, Decimal('100.00'), received_by=self.accountant)

    def test_unknown_voucher_raises_not_found(self):
        with self.assertRaises(VoucherNotFound):
            record_payment(999999, Decimal('100.00'), received_by=self.accountant)

    def test_unknown_payment_method_is_rejected(self):
        with self.assertRaises(LedgerError):
            record_payment(self.voucher.pk, Decimal('100.00'), 'barter', self.accountant)

    def test_overdue_voucher_follows_normal_payment_path(self):
        mark_overdue_vouchers(as_of=date(YEAR, 4, 1))

        record_payment(self.voucher.pk, Decimal('300.00'), received_by=self.accountant)
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, FeeVoucher.STATUS_PARTIAL)

        record_payment(self.voucher.pk, Decimal('700.00'), received_by=self.accountant)
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, FeeVoucher.STATUS_PAID)

    def test_payment_is_audited(self):
        payment = record_payment(
            self.voucher.pk,
            Decimal('250.00'),
            Payment.METHOD_CHEQUE,
            self.accountant,
            reference='CHQ-7788',
        )

        entry = AuditLog.objects.get(
            entity_type=AuditLog.ENTITY_PAYMENT,
            action=AuditLog.ACTION_PAYMENT_RECEIVED,
            entity_id=str(payment.pk),
        )
        self.assertEqual(entry.user, self.accountant)
        self.assertEqual(entry.details['receipt_number'], payment.receipt_number)
        self.assertEqual(entry.details['voucher_status'], FeeVoucher.STATUS_PARTIAL)
        self.assertEqual(Decimal(entry.details['remaining_balance']), Decimal('750.00'))

    def test_payment_notification_receives_payment_and_voucher(self):
        received = []

        def receiver(sender, payment, voucher, **kwargs):
            received.append((payment.pk, voucher.status))

        payment_recorded.connect(receiver, weak=False)
        self.addCleanup(payment_recorded.disconnect, receiver)

        with self.captureOnCommitCallbacks(execute=True):
            payment = record_payment(self.voucher.pk, Decimal('1000.00'), received_by=self.accountant)

        self.assertEqual(received, [(payment.pk, FeeVoucher.STATUS_PAID)])

    def test_payments_are_immutable(self):
        payment = record_payment(self.voucher.pk, Decimal('100.00'), received_by=self.accountant)

        payment.amount = Decimal('900.00')
        with self.assertRaises(ValidationError):
            payment.save()
        with self.assertRaises(ValidationError):
            payment.delete()
        with self.assertRaises(ValidationError):
            self.voucher.delete()
        with self.assertRaises(ValidationError):
            self.voucher.items.first().save()

    def test_stale_voucher_version_raises_conflict(self):
        voucher = FeeVoucher.objects.get(pk=self.voucher.pk)
        FeeVoucher.objects.filter(pk=voucher.pk).update(version=5)

        voucher.status = FeeVoucher.STATUS_PARTIAL
        with self.assertRaises(VoucherConcurrentUpdate):
            services._save_voucher_state(voucher, ['status'])

    @override_settings(LEDGER_RETRY_BACKOFF_SECONDS=0)
    def test_conflicting_payment_is_retried_as_a_whole(self):
        real_save_voucher_state = services._save_voucher_state
        attempts = []

        def conflicting_once(voucher, fields):
            attempts.append(voucher.pk)
            if len(attempts) == 1:
                raise VoucherConcurrentUpdate('lost the race')
            return real_save_voucher_state(voucher, fields)

        with mock.patch.object(services, '_save_voucher_state', side_effect=conflicting_once):
            with self.assertLogs('apps.core.utils.transactions', level='WARNING'):
                payment = record_payment(self.voucher.pk, Decimal('400.00'), received_by=self.accountant)

        self.assertEqual(len(attempts), 2)
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.payments.count(), 1)
        self.assertEqual(self.voucher.payments.get().pk, payment.pk)
        self.assertEqual(self.voucher.paid_amount, Decimal('400.00'))


class OverdueSweepTests(FeesBaseTestCase):
    def test_only_unpaid_and_partial_past_due_vouchers_are_marked(self):
        unpaid = self._issue(month=1)
        partial = self._issue(month=2)
        paid = self._issue(month=3)
        future = self._issue(month=6)
        record_payment(partial.pk, Decimal('100.00'), received_by=self.accountant)
        record_payment(paid.pk, Decimal('1000.00'), received_by=self.accountant)

        marked = mark_overdue_vouchers(as_of=date(YEAR, 5, 1))

        self.assertEqual(marked, 2)
        statuses = dict(FeeVoucher.objects.values_list('pk', 'status'))
        self.assertEqual(statuses[unpaid.pk], FeeVoucher.STATUS_OVERDUE)
        self.assertEqual(statuses[partial.pk], FeeVoucher.STATUS_OVERDUE)
        self.assertEqual(statuses[paid.pk], FeeVoucher.STATUS_PAID)
        self.assertEqual(statuses[future.pk], FeeVoucher.STATUS_UNPAID)

        partial.refresh_from_db()
        self.assertEqual(partial.paid_amount, Decimal('100.00'))
        self.assertEqual(partial.balance_due, Decimal('900.00'))

    def test_sweep_is_idempotent_and_audited(self):
        voucher = self._issue(month=1)

        self.assertEqual(mark_overdue_vouchers(as_of=date(YEAR, 2, 1)), 1)
        self.assertEqual(mark_overdue_vouchers(as_of=date(YEAR, 2, 1)), 0)

        entries = AuditLog.objects.filter(
            entity_type=AuditLog.ENTITY_FEE,
            action=AuditLog.ACTION_STATUS_CHANGE,
            entity_id=str(voucher.pk),
        )
        self.assertEqual(entries.count(), 1)
        self.assertEqual(entries.get().details['to_status'], FeeVoucher.STATUS_OVERDUE)

    def test_voucher_due_on_reference_date_is_not_overdue(self):
        self._issue(month=1)
        self.assertEqual(mark_overdue_vouchers(as_of=date(YEAR, 1, 10)), 0)


class VoucherStatusTransitionTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.voucher = self._issue()

    def test_cancel_unpaid_voucher(self):
        voucher = cancel_voucher(self.voucher.pk, actor=self.school_admin, reason='Issued in error')

        self.assertEqual(voucher.status, FeeVoucher.STATUS_CANCELLED)
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, FeeVoucher.STATUS_CANCELLED)
        self.assertEqual(self.voucher.remarks, 'Issued in error')
        self.assertTrue(
            AuditLog.objects.filter(
                action=AuditLog.ACTION_STATUS_CHANGE,
                entity_id=str(self.voucher.pk),
                user=self.school_admin,
            ).exists()
        )

    def test_cancelled_voucher_is_not_carried(self):
        cancel_voucher(self.voucher.pk, actor=self.school_admin)
        april = self._issue(month=4)
        self.assertEqual(april.previous_balance, Decimal('0.00'))

    def test_cannot_cancel_voucher_with_payments(self):
        record_payment(self.voucher.pk, Decimal('100.00'), received_by=self.accountant)

        with self.assertRaises(VoucherStateError):
            cancel_voucher(self.voucher.pk, actor=self.school_admin)

    def test_cannot_cancel_twice(self):
        cancel_voucher(self.voucher.pk, actor=self.school_admin)

        with self.assertRaises(VoucherStateError):
            cancel_voucher(self.voucher.pk, actor=self.school_admin)

    def test_waive_requires_reason(self):
        with self.assertRaises(LedgerError):
            waive_voucher(self.voucher.pk, actor=self.school_admin, reason='  ')

    def test_waive_partially_paid_voucher(self):
        record_payment(self.voucher.pk, Decimal('400.00'), received_by=self.accountant)

        voucher = waive_voucher(self.voucher.pk, actor=self.school_admin, reason='Hardship')

        self.assertEqual(voucher.status, FeeVoucher.STATUS_WAIVED)
        voucher.refresh_from_db()
        self.assertEqual(voucher.paid_amount, Decimal('400.00'))
        self.assertEqual(voucher.balance_due, Decimal('600.00'))
        self.assertEqual(student_outstanding_summary(self.student)['outstanding_vouchers'], 0)

    def test_cannot_waive_paid_voucher(self):
        record_payment(self.voucher.pk, Decimal('1000.00'), received_by=self.accountant)

        with self.assertRaises(VoucherStateError):
            waive_voucher(self.voucher.pk, actor=self.school_admin, reason='Late request')


class LedgerQueryTests(FeesBaseTestCase):
    def test_student_outstanding_summary(self):
        self._issue(month=1)
        february = self._issue(month=2)
        record_payment(february.pk, Decimal('250.00'), received_by=self.accountant)
        mark_overdue_vouchers(as_of=date(YEAR, 1, 20))

        summary = student_outstanding_summary(self.student)

        self.assertEqual(summary['outstanding_balance'], Decimal('1750.00'))
        self.assertEqual(summary['outstanding_vouchers'], 2)
        self.assertEqual(summary['overdue_vouchers'], 1)

    def test_ledger_status_counts(self):
        self._issue()
        self._make_student('FEE-009', 'Left', Decimal('500.00'), status=Student.STATUS_DROPPED)

        status = ledger_status(MONTH, YEAR)

        self.assertEqual(status['active_students'], 1)
        self.assertEqual(status['vouchers_for_period'], 1)
        self.assertEqual(status['unpaid_vouchers'], 1)
        self.assertEqual(status['outstanding_balance'], Decimal('1000.00'))


class FeeViewTests(FeesBaseTestCase):
    def _login(self, user):
        self.client.force_login(user)

    def _post_json(self, url, payload, **extra):
        return self.client.post(url, payload, content_type='application/json', **extra)

    def test_unauthenticated_requests_get_401(self):
        response = self.client.get(reverse('fee_voucher_collection'))
        self.assertEqual(response.status_code, 401)

    def test_wrong_role_gets_403(self):
        self._login(self.teacher)
        response = self.client.get(reverse('fee_voucher_collection'))
        self.assertEqual(response.status_code, 403)

    def test_generate_single_voucher(self):
        self._login(self.accountant)
        url = reverse('fee_voucher_collection')

        response = self._post_json(url, {'student': self.student.pk, 'month': MONTH, 'year': YEAR})
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body['outcome'], OUTCOME_CREATED)
        self.assertEqual(body['voucher']['total_amount'], '1000.00')
        self.assertEqual(len(body['voucher']['items']), 1)

        response = self._post_json(url, {'student': self.student.pk, 'month': MONTH, 'year': YEAR})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], OUTCOME_EXISTS)

    def test_generate_with_explicit_items(self):
        self._login(self.accountant)
        response = self._post_json(
            reverse('fee_voucher_collection'),
            {
                'student': self.student.pk,
                'month': MONTH,
                'year': YEAR,
                'items': [
                    {'fee_type': 'ADMISSION_FEE', 'amount': '5000.00'},
                    {'fee_type': 'SECURITY_DEPOSIT', 'amount': '2000.00'},
                ],
            },
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['voucher']['total_amount'], '7000.00')

    def test_generate_rejects_invalid_items(self):
        self._login(self.accountant)
        response = self._post_json(
            reverse('fee_voucher_collection'),
            {
                'student': self.student.pk,
                'month': MONTH,
                'year': YEAR,
                'items': [{'fee_type': 'NOT_A_FEE', 'amount': '10.00'}],
            },
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(FeeVoucher.objects.exists())

    def test_generate_for_unknown_student_returns_404(self):
        self._login(self.accountant)
        response = self._post_json(
            reverse('fee_voucher_collection'),
            {'student': 999999, 'month': MONTH, 'year': YEAR},
        )
        self.assertEqual(response.status_code, 404)

    def test_generate_batch_for_class(self):
        self._make_student('FEE-002', 'Aman', Decimal('800.00'))
        self._make_student('FEE-003', 'Zoya', Decimal('0.00'))
        self._login(self.school_admin)

        response = self._post_json(
            reverse('fee_voucher_collection'),
            {'school_class': self.school_class.pk, 'month': MONTH, 'year': YEAR},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['created'], 2)
        self.assertEqual(body['no_fees'], 1)
        self.assertEqual(len(body['results']), 3)

    def test_generate_requires_billing_period(self):
        self._login(self.accountant)
        response = self._post_json(reverse('fee_voucher_collection'), {'student': self.student.pk})

        self.assertEqual(response.status_code, 400)
        self.assertIn('month', response.json()['errors'])

    def test_list_vouchers_with_filters_and_summary(self):
        self._issue(month=1)
        self._issue(month=2)
        other = self._make_student('FEE-002', 'Aman', Decimal('800.00'))
        self._issue(student=other, month=1)
        self._login(self.accountant)

        response = self.client.get(
            reverse('fee_voucher_collection'),
            {'student': self.student.pk, 'status': 'unpaid', 'page_size': 1},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(len(body['vouchers']), 1)
        self.assertEqual(body['pagination']['total'], 2)
        self.assertEqual(body['vouchers'][0]['month'], 2)
        self.assertEqual(body['summary']['outstanding_balance'], '2000.00')

    def test_list_rejects_unknown_status(self):
        self._login(self.accountant)
        response = self.client.get(reverse('fee_voucher_collection'), {'status': 'lost'})
        self.assertEqual(response.status_code, 400)

    def test_voucher_detail(self):
        voucher = self._issue()
        record_payment(voucher.pk, Decimal('100.00'), received_by=self.accountant)
        self._login(self.accountant)

        response = self.client.get(reverse('fee_voucher_detail', args=[voucher.pk]))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['voucher_number'], voucher.voucher_number)
        self.assertEqual(len(body['items']), 1)
        self.assertEqual(len(body['payments']), 1)
        self.assertEqual(body['balance_due'], '900.00')

        missing = self.client.get(reverse('fee_voucher_detail', args=[999999]))
        self.assertEqual(missing.status_code, 404)

    def test_record_payment_endpoint(self):
        voucher = self._issue()
        self._login(self.accountant)
        url = reverse('fee_payment_collection')

        response = self._post_json(url, {'voucher': voucher.pk, 'amount': '400.00', 'payment_method': 'cash'})
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body['voucher']['status'], FeeVoucher.STATUS_PARTIAL)
        self.assertEqual(body['voucher']['balance_due'], '600.00')
        self.assertEqual(body['payment']['received_by'], self.accountant.username)

        response = self._post_json(url, {'voucher': voucher.pk, 'amount': '700.00'})
        self.assertEqual(response.status_code, 400)
        self.assertIn('exceeds remaining balance of 600.00', response.json()['error'])

        response = self._post_json(url, {'voucher': voucher.pk, 'amount': '600.00'})
        self.assertEqual(response.status_code, 201)

        response = self._post_json(url, {'voucher': voucher.pk, 'amount': '1.00'})
        self.assertEqual(response.status_code, 409)

        response = self._post_json(url, {'voucher': 999999, 'amount': '1.00'})
        self.assertEqual(response.status_code, 404)

    def test_record_payment_accepts_form_encoded_body(self):
        voucher = self._issue()
        self._login(self.accountant)

        response = self.client.post(
            reverse('fee_payment_collection'),
            {'voucher': voucher.pk, 'amount': '250.00', 'payment_method': 'online', 'reference': 'TXN-1'},
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(Payment.objects.get().reference, 'TXN-1')

    def test_list_payments_with_date_range(self):
        voucher = self._issue()
        record_payment(voucher.pk, Decimal('100.00'), received_by=self.accountant, payment_date=date(YEAR, 3, 5))
        record_payment(voucher.pk, Decimal('200.00'), received_by=self.accountant, payment_date=date(YEAR, 3, 25))
        self._login(self.accountant)
        url = reverse('fee_payment_collection')

        response = self.client.get(url, {'voucher': voucher.pk, 'date_from': '2026-03-20'})
        self.assertEqual(response.status_code, 200)
        payments = response.json()['payments']
        self.assertEqual(len(payments), 1)
        self.assertEqual(payments[0]['amount'], '200.00')

        response = self.client.get(url, {'date_from': '2026-13-40'})
        self.assertEqual(response.status_code, 400)

    def test_cancel_and_waive_require_admin_role(self):
        voucher = self._issue()
        self._login(self.accountant)

        response = self._post_json(reverse('fee_voucher_cancel', args=[voucher.pk]), {})
        self.assertEqual(response.status_code, 403)

        self._login(self.school_admin)
        response = self._post_json(reverse('fee_voucher_waive', args=[voucher.pk]), {})
        self.assertEqual(response.status_code, 400)

        response = self._post_json(reverse('fee_voucher_cancel', args=[voucher.pk]), {'reason': 'Duplicate'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['voucher']['status'], FeeVoucher.STATUS_CANCELLED)

        response = self._post_json(reverse('fee_voucher_waive', args=[voucher.pk]), {'reason': 'Too late'})
        self.assertEqual(response.status_code, 409)

    def test_cron_requires_configured_secret(self):
        url = reverse('fee_cron_generate')

        with override_settings(FEE_CRON_SECRET=''):
            response = self.client.post(url, HTTP_AUTHORIZATION='Bearer ')
        self.assertEqual(response.status_code, 401)

        with override_settings(FEE_CRON_SECRET='cron-secret'):
            response = self.client.post(url, HTTP_AUTHORIZATION='Bearer wrong')
        self.assertEqual(response.status_code, 401)

    @override_settings(FEE_CRON_SECRET='cron-secret')
    def test_cron_generates_current_period_and_reports_status(self):
        url = reverse('fee_cron_generate')

        response = self.client.post(url, HTTP_AUTHORIZATION='Bearer cron-secret')

        self.assertEqual(response.status_code, 200)
        stats = response.json()['stats']
        self.assertEqual(stats['vouchers_created'], 1)
        self.assertEqual(stats['errors'], 0)
        voucher = FeeVoucher.objects.get(student=self.student)
        self.assertTrue(voucher.is_auto_generated)

        response = self.client.get(url, HTTP_AUTHORIZATION='Bearer cron-secret')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['stats']['vouchers_for_period'], 1)


class FeeCommandTests(FeesBaseTestCase):
    def test_generate_fee_vouchers_command(self):
        self._make_student('FEE-002', 'Aman', Decimal('0.00'))
        out = StringIO()

        call_command('generate_fee_vouchers', '--month=3', '--year=2026', '--no-overdue-sweep', stdout=out)

        self.assertIn('created=1', out.getvalue())
        self.assertIn('no_fees=1', out.getvalue())
        self.assertTrue(FeeVoucher.objects.get(student=self.student).is_auto_generated)

    def test_generate_fee_vouchers_command_for_one_student(self):
        other = self._make_student('FEE-002', 'Aman', Decimal('700.00'))
        out = StringIO()

        call_command('generate_fee_vouchers', '--month=3', '--year=2026', f'--student={other.pk}', stdout=out)

        self.assertFalse(FeeVoucher.objects.filter(student=self.student).exists())
        self.assertTrue(FeeVoucher.objects.filter(student=other).exists())

    def test_mark_overdue_vouchers_command(self):
        self._issue(month=1)
        out = StringIO()

        call_command('mark_overdue_vouchers', '--as-of=2026-02-01', stdout=out)

        self.assertIn('Marked 1 vouchers overdue.', out.getvalue())

    def test_mark_overdue_vouchers_command_rejects_bad_date(self):
        with self.assertRaises(CommandError):
            call_command('mark_overdue_vouchers', '--as-of=2026-02-31')


class ConcurrentVoucherIssueTests(TransactionTestCase):
    workers = 6

    def setUp(self):
        self.student = Student.objects.create(
            admission_number='RACE-001',
            first_name='Race',
            monthly_fee=Decimal('1000.00'),
        )

    def _issue(self, _):
        try:
            return issue_voucher(self.student.pk, MONTH, YEAR).outcome
        finally:
            connection.close()

    def test_concurrent_issuance_creates_one_voucher(self):
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            outcomes = list(pool.map(self._issue, range(self.workers)))

        self.assertEqual(outcomes.count(OUTCOME_CREATED), 1)
        self.assertEqual(outcomes.count(OUTCOME_EXISTS), self.workers - 1)
        self.assertEqual(FeeVoucher.objects.filter(student=self.student).count(), 1)


class ConcurrentPaymentTests(TransactionTestCase):
    workers = 4

    def setUp(self):
        student = Student.objects.create(
            admission_number='RACE-002',
            first_name='Race',
            monthly_fee=Decimal('1000.00'),
        )
        self.voucher = issue_voucher(student.pk, MONTH, YEAR).voucher

    def _pay(self, _):
        try:
            record_payment(self.voucher.pk, Decimal('600.00'))
            return 'paid'
        except InvalidAmount:
            return 'rejected'
        finally:
            connection.close()

    def test_concurrent_payments_never_overpay(self):
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            outcomes = list(pool.map(self._pay, range(self.workers)))

        self.assertEqual(outcomes.count('paid'), 1)
        self.assertEqual(outcomes.count('rejected'), self.workers - 1)

        self.voucher.refresh_from_db()
        payments = Payment.objects.filter(voucher=self.voucher)
        self.assertEqual(payments.count(), 1)
        self.assertEqual(self.voucher.paid_amount, sum(payment.amount for payment in payments))
        self.assertEqual(self.voucher.paid_amount, Decimal('600.00'))
        self.assertEqual(self.voucher.balance_due, Decimal('400.00'))
        self.assertEqual(self.voucher.status, FeeVoucher.STATUS_PARTIAL)
