from __future__ import annotations

import calendar
import logging
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import NamedTuple

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import F, Q, Sum
from django.utils import timezone

from apps.core.sequences.services import COUNTER_RECEIPT, COUNTER_VOUCHER, next_document_number
from apps.core.students.models import Student
from apps.core.users.audit import log_audit_event
from apps.core.users.models import AuditLog
from apps.core.utils.transactions import run_with_retries

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
from .models import FeeStructure, FeeType, FeeVoucher, FeeVoucherItem, Payment
from .signals import send_payment_recorded, send_voucher_issued


logger = logging.getLogger(__name__)

OUTCOME_CREATED = 'created'
OUTCOME_EXISTS = 'exists'
OUTCOME_NO_FEES = 'no_fees'
OUTCOME_ERROR = 'error'
BATCH_OUTCOMES = (OUTCOME_CREATED, OUTCOME_EXISTS, OUTCOME_NO_FEES, OUTCOME_ERROR)

MIN_BILLING_YEAR = 2000
MAX_BILLING_YEAR = 9999


class FeeLineItem(NamedTuple):
    fee_type: str
    amount: Decimal
    description: str = ''
    fee_structure_id: int | None = None


class IssueResult(NamedTuple):
    outcome: str
    voucher: FeeVoucher | None = None


def _to_decimal(value) -> Decimal:
    return Decimal(str(value or '0'))


def _quantize(value: Decimal) -> Decimal:
    return _to_decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def _sum_amount(queryset, field_name='amount') -> Decimal:
    value = queryset.aggregate(total=Sum(field_name)).get('total')
    return _to_decimal(value)


def _parse_amount(value, *, error=InvalidAmount, label='Amount') -> Decimal:
    try:
        amount = _to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise error(f"{label} must be a valid number.")
    if not amount.is_finite():
        raise error(f"{label} must be a valid number.")
    return _quantize(amount)


def _pk(value):
    return getattr(value, 'pk', value)


def validate_billing_period(month, year):
    try:
        month = int(month)
        year = int(year)
    except (TypeError, ValueError):
        raise LedgerError('Billing month and year must be integers.')

    if not 1 <= month <= 12:
        raise LedgerError(f"Billing month must be between 1 and 12, got {month}.")
    if not MIN_BILLING_YEAR <= year <= MAX_BILLING_YEAR:
        raise LedgerError(f"Billing year {year} is out of range.")
    return month, year


def default_due_date(month: int, year: int) -> date:
    days_in_month = calendar.monthrange(year, month)[1]
    day = min(max(settings.FEE_VOUCHER_DUE_DAY, 1), days_in_month)
    return date(year, month, day)


def normalize_line_items(items) -> list[FeeLineItem]:
    normalized = []
    for index, item in enumerate(items or [], start=1):
        if isinstance(item, FeeLineItem):
            fee_type, amount, description, structure_id = item
        elif isinstance(item, dict):
            fee_type = item.get('fee_type')
            amount = item.get('amount')
            description = item.get('description') or ''
            structure_id = item.get('fee_structure_id')
        else:
            raise InvalidFeeItem(f"Fee item {index} must be an object with fee_type and amount.")

        fee_type = (fee_type or '').strip().upper()
        if fee_type not in FeeType.values:
            raise InvalidFeeItem(f"Fee item {index} has an unknown fee type '{fee_type}'.")

        amount = _parse_amount(amount, error=InvalidFeeItem, label=f"Fee item {index} amount")
        if amount <= 0:
            raise InvalidFeeItem(f"Fee item {index} amount must be greater than zero.")

        normalized.append(FeeLineItem(fee_type, amount, str(description)[:255], structure_id))
    return normalized


def monthly_fee_items(student: Student, month: int, year: int) -> list[FeeLineItem]:
    amount = _quantize(student.monthly_fee)
    if amount <= 0:
        return []
    return [FeeLineItem(FeeType.MONTHLY_FEE, amount, f"Monthly Fee - {month:02d}/{year}")]


def items_from_fee_structures(structure_ids) -> list[FeeLineItem]:
    structure_ids = [_pk(value) for value in structure_ids or []]
    structures = FeeStructure.objects.filter(pk__in=structure_ids, is_active=True).in_bulk()

    items = []
    for structure_id in structure_ids:
        structure = structures.get(structure_id)
        if structure is None:
            raise InvalidFeeItem(f"Fee structure {structure_id} does not exist or is inactive.")
        items.append(
            FeeLineItem(
                structure.fee_type,
                _quantize(structure.amount),
                structure.name,
                structure.pk,
            )
        )
    return items


def _check_structure_scope(student, line_items):
    structure_ids = {item.fee_structure_id for item in line_items if item.fee_structure_id}
    if not structure_ids:
        return

    foreign = (
        FeeStructure.objects.filter(pk__in=structure_ids)
        .exclude(Q(school_class__isnull=True) | Q(school_class_id=student.current_class_id))
        .order_by('pk')
        .first()
    )
    if foreign is not None:
        raise InvalidFeeItem(
            f"Fee structure {foreign.pk} ({foreign.name}) does not apply to the class of student {student.pk}."
        )


def outstanding_vouchers(student):
    return FeeVoucher.objects.for_student(student).outstanding().order_by('-year', '-month', '-id')


def carried_balance(student) -> tuple[Decimal, FeeVoucher | None]:
    vouchers = outstanding_vouchers(student)
    return _quantize(_sum_amount(vouchers, 'balance_due')), vouchers.first()


def student_outstanding_summary(student):
    vouchers = outstanding_vouchers(student)
    return {
        'student_id': _pk(student),
        'outstanding_balance': _quantize(_sum_amount(vouchers, 'balance_due')),
        'outstanding_vouchers': vouchers.count(),
        'overdue_vouchers': vouchers.filter(status=FeeVoucher.STATUS_OVERDUE).count(),
    }


@transaction.atomic
def _create_voucher(student_id, month, year, line_items, *, due_date, issued_by, is_auto_generated, remarks):
    # Serializes issuance per student so the existence check and carried
    # balance are read under the same lock as the insert.
    student = Student.objects.select_for_update().filter(pk=student_id).first()
    if student is None:
        raise StudentNotFound(f"Student {student_id} not found.")

    existing = FeeVoucher.objects.for_student(student).for_period(month, year).first()
    if existing is not None:
        return IssueResult(OUTCOME_EXISTS, existing)

    if line_items is None:
        line_items = monthly_fee_items(student, month, year)
    else:
        _check_structure_scope(student, line_items)

    subtotal = _quantize(sum((item.amount for item in line_items), Decimal('0.00')))
    if subtotal <= 0:
        return IssueResult(OUTCOME_NO_FEES)

    previous_balance, previous_voucher = carried_balance(student)
    voucher_number = next_document_number(COUNTER_VOUCHER)

    try:
        with transaction.atomic():
            voucher = FeeVoucher.objects.create(
                voucher_number=voucher_number,
                student=student,
                month=month,
                year=year,
                issue_date=timezone.localdate(),
                due_date=due_date or default_due_date(month, year),
                subtotal=subtotal,
                previous_balance=previous_balance,
                total_amount=subtotal,
                paid_amount=Decimal('0.00'),
                balance_due=subtotal,
                status=FeeVoucher.STATUS_UNPAID,
                previous_voucher=previous_voucher,
                is_auto_generated=is_auto_generated,
                remarks=(remarks or '')[:255],
                created_by=issued_by,
            )
    except IntegrityError:
        existing = FeeVoucher.objects.for_student(student).for_period(month, year).first()
        if existing is None:
            raise
        return IssueResult(OUTCOME_EXISTS, existing)

    for item in line_items:
        FeeVoucherItem.objects.create(
            voucher=voucher,
            fee_type=item.fee_type,
            description=item.description,
            amount=item.amount,
            fee_structure_id=item.fee_structure_id,
        )

    transaction.on_commit(lambda: send_voucher_issued(voucher))
    return IssueResult(OUTCOME_CREATED, voucher)


def issue_voucher(
    student_id,
    month,
    year,
    items=None,
    *,
    due_date=None,
    issued_by=None,
    is_auto_generated=False,
    remarks='',
    request=None,
) -> IssueResult:
    """Issue the voucher for one student and billing period.

    ``items`` overrides the student's standing monthly fee when given. The
    carried balance of older outstanding vouchers is recorded on the new
    voucher for reference only; it is never added to ``total_amount``.
    """
    month, year = validate_billing_period(month, year)
    line_items = normalize_line_items(items) if items is not None else None

    result = run_with_retries(
        _create_voucher,
        _pk(student_id),
        month,
        year,
        line_items,
        due_date=due_date,
        issued_by=issued_by,
        is_auto_generated=is_auto_generated,
        remarks=remarks,
    )
    if result.outcome != OUTCOME_CREATED:
        return result

    voucher = result.voucher
    log_audit_event(
        entity_type=AuditLog.ENTITY_FEE,
        entity_id=voucher.pk,
        action=AuditLog.ACTION_FEE_GENERATED,
        actor=issued_by,
        request=request,
        details={
            'voucher_number': voucher.voucher_number,
            'student_id': voucher.student_id,
            'admission_number': voucher.student.admission_number,
            'student_name': voucher.student.full_name,
            'month': voucher.month,
            'year': voucher.year,
            'subtotal': voucher.subtotal,
            'previous_balance': voucher.previous_balance,
            'total_amount': voucher.total_amount,
            'previous_voucher_id': voucher.previous_voucher_id,
            'is_auto_generated': voucher.is_auto_generated,
        },
    )
    logger.info(
        'Issued fee voucher %s for student %s (%02d/%s), total %s',
        voucher.voucher_number,
        voucher.student_id,
        voucher.month,
        voucher.year,
        voucher.total_amount,
    )
    return result


def issue_vouchers_for_students(
    student_ids,
    month,
    year,
    items=None,
    *,
    due_date=None,
    issued_by=None,
    is_auto_generated=False,
    remarks='',
    request=None,
):
    """Issue vouchers student by student; one failure never stops the batch."""
    month, year = validate_billing_period(month, year)
    line_items = normalize_line_items(items) if items is not None else None

    unique_ids = list(dict.fromkeys(_pk(student_id) for student_id in student_ids))
    summary = {
        'month': month,
        'year': year,
        'total': len(unique_ids),
        **{outcome: 0 for outcome in BATCH_OUTCOMES},
        'results': [],
    }

    for student_id in unique_ids:
        row = {'student_id': student_id, 'voucher_id': None, 'voucher_number': None}
        try:
            result = issue_voucher(
                student_id,
                month,
                year,
                line_items,
                due_date=due_date,
                issued_by=issued_by,
                is_auto_generated=is_auto_generated,
                remarks=remarks,
                request=request,
            )
        except ValidationError as exc:
            logger.warning('Skipped fee voucher for student %s: %s', student_id, '; '.join(exc.messages))
            row.update(outcome=OUTCOME_ERROR, error='; '.join(exc.messages))
        except Exception:
            logger.exception('Failed to issue fee voucher for student %s (%02d/%s)', student_id, month, year)
            row.update(outcome=OUTCOME_ERROR, error='Voucher generation failed.')
        else:
            row['outcome'] = result.outcome
            if result.voucher is not None:
                row['voucher_id'] = result.voucher.pk
                row['voucher_number'] = result.voucher.voucher_number

        summary[row['outcome']] += 1
        summary['results'].append(row)

    logger.info(
        'Fee voucher batch %02d/%s: created=%s exists=%s no_fees=%s error=%s',
        month,
        year,
        summary[OUTCOME_CREATED],
        summary[OUTCOME_EXISTS],
        summary[OUTCOME_NO_FEES],
        summary[OUTCOME_ERROR],
    )
    return summary


def generate_monthly_vouchers(
    month,
    year,
    *,
    school_class=None,
    section=None,
    student_ids=None,
    items=None,
    due_date=None,
    issued_by=None,
    is_auto_generated=False,
    remarks='',
    mark_overdue=False,
    as_of=None,
    request=None,
):
    if student_ids:
        target_ids = list(student_ids)
    else:
        target_ids = list(
            Student.objects.billable()
            .in_scope(school_class=school_class, section=section)
            .order_by('id')
            .values_list('id', flat=True)
        )

    summary = issue_vouchers_for_students(
        target_ids,
        month,
        year,
        items,
        due_date=due_date,
        issued_by=issued_by,
        is_auto_generated=is_auto_generated,
        remarks=remarks,
        request=request,
    )
    if mark_overdue:
        summary['marked_overdue'] = mark_overdue_vouchers(as_of=as_of)
    return summary


def _lock_voucher(voucher_id) -> FeeVoucher:
    voucher = FeeVoucher.objects.select_for_update().select_related('student').filter(pk=voucher_id).first()
    if voucher is None:
        raise VoucherNotFound(f"Fee voucher {voucher_id} not found.")
    return voucher


def _save_voucher_state(voucher: FeeVoucher, fields):
    expected_version = voucher.version
    values = {field: getattr(voucher, field) for field in fields}
    updated = FeeVoucher.objects.filter(pk=voucher.pk, version=expected_version).update(
        version=F('version') + 1,
        updated_at=timezone.now(),
        **values,
    )
    if updated != 1:
        raise VoucherConcurrentUpdate(f"Fee voucher {voucher.voucher_number} was modified concurrently.")
    voucher.version = expected_version + 1


@transaction.atomic
def _apply_payment(voucher_id, amount, *, payment_method, received_by, payment_date, reference, remarks):
    voucher = _lock_voucher(voucher_id)

    if voucher.status in (FeeVoucher.STATUS_PAID, FeeVoucher.STATUS_WAIVED):
        raise VoucherAlreadySettled(
            f"Fee voucher {voucher.voucher_number} is already {voucher.get_status_display().lower()}."
        )
    if voucher.status == FeeVoucher.STATUS_CANCELLED:
        raise VoucherCancelled(f"Fee voucher {voucher.voucher_number} has been cancelled.")

    amount = _parse_amount(amount, label='Payment amount')
    if amount <= 0:
        raise InvalidAmount('Payment amount must be greater than zero.')
    balance_due = _quantize(voucher.balance_due)
    if amount > balance_due:
        raise InvalidAmount(f"Payment amount ({amount}) exceeds remaining balance of {balance_due}.")

    payment = Payment.objects.create(
        receipt_number=next_document_number(COUNTER_RECEIPT),
        voucher=voucher,
        student=voucher.student,
        amount=amount,
        payment_method=payment_method,
        payment_date=payment_date or timezone.localdate(),
        reference=(reference or '')[:120],
        remarks=(remarks or '')[:255],
        received_by=received_by,
    )

    voucher.apply_payment_amount(amount)
    voucher.paid_amount = _quantize(voucher.paid_amount)
    voucher.balance_due = _quantize(voucher.balance_due)
    _save_voucher_state(voucher, ['paid_amount', 'balance_due', 'status'])

    transaction.on_commit(lambda: send_payment_recorded(payment))
    return payment


def record_payment(
    voucher_id,
    amount,
    payment_method=Payment.METHOD_CASH,
    received_by=None,
    *,
    payment_date=None,
    reference='',
    remarks='',
    request=None,
) -> Payment:
    """Apply one payment to one voucher.

    Overpayment is rejected, never clipped. The voucher row is locked and
    re-validated inside the writing transaction.
    """
    payment_method = payment_method or Payment.METHOD_CASH
    if payment_method not in dict(Payment.PAYMENT_METHOD_CHOICES):
        raise LedgerError(f"Unknown payment method '{payment_method}'.")

    payment = run_with_retries(
        _apply_payment,
        _pk(voucher_id),
        amount,
        payment_method=payment_method,
        received_by=received_by,
        payment_date=payment_date,
        reference=reference,
        remarks=remarks,
    )

    voucher = payment.voucher
    log_audit_event(
        entity_type=AuditLog.ENTITY_PAYMENT,
        entity_id=payment.pk,
        action=AuditLog.ACTION_PAYMENT_RECEIVED,
        actor=received_by,
        request=request,
        details={
            'receipt_number': payment.receipt_number,
            'voucher_id': voucher.pk,
            'voucher_number': voucher.voucher_number,
            'student_id': payment.student_id,
            'amount': payment.amount,
            'payment_method': payment.payment_method,
            'voucher_status': voucher.status,
            'remaining_balance': voucher.balance_due,
        },
    )
    logger.info(
        'Recorded payment %s of %s against voucher %s (status %s, balance %s)',
        payment.receipt_number,
        payment.amount,
        voucher.voucher_number,
        voucher.status,
        voucher.balance_due,
    )
    return payment


def mark_overdue_vouchers(as_of=None) -> int:
    as_of = as_of or timezone.localdate()

    with transaction.atomic():
        rows = list(
            FeeVoucher.objects.sweepable(as_of)
            .select_for_update()
            .values('id', 'voucher_number', 'status')
        )
        marked = 0
        if rows:
            marked = FeeVoucher.objects.filter(
                pk__in=[row['id'] for row in rows],
                status__in=FeeVoucher.SWEEPABLE_STATUSES,
            ).update(
                status=FeeVoucher.STATUS_OVERDUE,
                version=F('version') + 1,
                updated_at=timezone.now(),
            )

    for row in rows:
        log_audit_event(
            entity_type=AuditLog.ENTITY_FEE,
            entity_id=row['id'],
            action=AuditLog.ACTION_STATUS_CHANGE,
            details={
                'voucher_number': row['voucher_number'],
                'from_status': row['status'],
                'to_status': FeeVoucher.STATUS_OVERDUE,
                'as_of': as_of,
            },
        )

    if marked:
        logger.info('Marked %s fee vouchers overdue as of %s', marked, as_of)
    return marked


@transaction.atomic
def _change_voucher_status(voucher_id, new_status, *, reason, allowed_statuses, require_unpaid):
    voucher = _lock_voucher(voucher_id)
    previous_status = voucher.status

    if previous_status not in allowed_statuses:
        raise VoucherStateError(
            f"Fee voucher {voucher.voucher_number} is {voucher.get_status_display().lower()} "
            f"and cannot be {new_status}."
        )
    if require_unpaid and (voucher.paid_amount > 0 or voucher.payments.exists()):
        raise VoucherStateError(
            f"Fee voucher {voucher.voucher_number} has payments recorded and cannot be {new_status}."
        )

    voucher.status = new_status
    if reason:
        voucher.remarks = reason[:255]
    _save_voucher_state(voucher, ['status', 'remarks'])
    return voucher, previous_status


def _audit_status_change(voucher, previous_status, *, actor, reason, request):
    log_audit_event(
        entity_type=AuditLog.ENTITY_FEE,
        entity_id=voucher.pk,
        action=AuditLog.ACTION_STATUS_CHANGE,
        actor=actor,
        request=request,
        details={
            'voucher_number': voucher.voucher_number,
            'from_status': previous_status,
            'to_status': voucher.status,
            'reason': reason,
            'balance_due': voucher.balance_due,
        },
    )
    logger.info('Fee voucher %s moved from %s to %s', voucher.voucher_number, previous_status, voucher.status)


def cancel_voucher(voucher_id, *, actor=None, reason='', request=None) -> FeeVoucher:
    reason = (reason or '').strip()
    voucher, previous_status = run_with_retries(
        _change_voucher_status,
        _pk(voucher_id),
        FeeVoucher.STATUS_CANCELLED,
        reason=reason,
        allowed_statuses=FeeVoucher.OUTSTANDING_STATUSES,
        require_unpaid=True,
    )
    _audit_status_change(voucher, previous_status, actor=actor, reason=reason, request=request)
    return voucher


def waive_voucher(voucher_id, *, actor=None, reason='', request=None) -> FeeVoucher:
    reason = (reason or '').strip()
    if not reason:
        raise LedgerError('Waiver reason is required.')

    voucher, previous_status = run_with_retries(
        _change_voucher_status,
        _pk(voucher_id),
        FeeVoucher.STATUS_WAIVED,
        reason=reason,
        allowed_statuses=FeeVoucher.OUTSTANDING_STATUSES,
        require_unpaid=False,
    )
    _audit_status_change(voucher, previous_status, actor=actor, reason=reason, request=request)
    return voucher


def ledger_status(month=None, year=None):
    today = timezone.localdate()
    month, year = validate_billing_period(month or today.month, year or today.year)
    vouchers = FeeVoucher.objects.all()
    return {
        'month': month,
        'year': year,
        'active_students': Student.objects.billable().count(),
        'vouchers_for_period': vouchers.for_period(month, year).count(),
        'unpaid_vouchers': vouchers.filter(status=FeeVoucher.STATUS_UNPAID).count(),
        'partial_vouchers': vouchers.filter(status=FeeVoucher.STATUS_PARTIAL).count(),
        'overdue_vouchers': vouchers.filter(status=FeeVoucher.STATUS_OVERDUE).count(),
        'outstanding_balance': _quantize(_sum_amount(vouchers.outstanding(), 'balance_due')),
    }
