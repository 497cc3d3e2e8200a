from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from apps.core.academics.models import SchoolClass
from apps.core.students.models import Student
from apps.core.utils.managers import FeeVoucherQuerySet


class FinancialRecordModel(models.Model):
    class Meta:
        abstract = True

    def delete(self, *args, **kwargs):
        raise ValidationError('Financial records cannot be deleted. Cancel or waive the voucher instead.')


class FeeType(models.TextChoices):
    MONTHLY_FEE = 'MONTHLY_FEE', 'Monthly Fee'
    ADMISSION_FEE = 'ADMISSION_FEE', 'Admission Fee'
    REGISTRATION_FEE = 'REGISTRATION_FEE', 'Registration Fee'
    SECURITY_DEPOSIT = 'SECURITY_DEPOSIT', 'Security Deposit'
    ANNUAL_FUND = 'ANNUAL_FUND', 'Annual Fund'
    EXAM_FEE = 'EXAM_FEE', 'Exam Fee'
    LAB_FEE = 'LAB_FEE', 'Lab Fee'
    LIBRARY_FEE = 'LIBRARY_FEE', 'Library Fee'
    COMPUTER_FEE = 'COMPUTER_FEE', 'Computer Fee'
    SPORTS_FEE = 'SPORTS_FEE', 'Sports Fee'
    TRANSPORT_FEE = 'TRANSPORT_FEE', 'Transport Fee'
    LATE_FEE = 'LATE_FEE', 'Late Fee'
    OTHER = 'OTHER', 'Other'


class FeeStructure(models.Model):
    name = models.CharField(max_length=120)
    fee_type = models.CharField(max_length=30, choices=FeeType.choices, default=FeeType.OTHER)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_structures',
    )
    description = models.CharField(max_length=255, blank=True)
    is_recurring = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['fee_type', 'name', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['name', 'school_class'],
                name='unique_fee_structure_name_per_class',
            ),
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='fee_structure_amount_positive',
            ),
        ]

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if not self.name:
            raise ValidationError({'name': 'Fee structure name is required.'})
        if self.amount is None or self.amount <= 0:
            raise ValidationError({'amount': 'Amount must be greater than zero.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active', 'updated_at'])

    def __str__(self):
        scope = self.school_class.name if self.school_class_id else 'All Classes'
        return f"{self.name} ({scope})"


class FeeVoucher(FinancialRecordModel):
    STATUS_UNPAID = 'unpaid'
    STATUS_PARTIAL = 'partial'
    STATUS_PAID = 'paid'
    STATUS_OVERDUE = 'overdue'
    STATUS_CANCELLED = 'cancelled'
    STATUS_WAIVED = 'waived'
    STATUS_CHOICES = (
        (STATUS_UNPAID, 'Unpaid'),
        (STATUS_PARTIAL, 'Partially Paid'),
        (STATUS_PAID, 'Paid'),
        (STATUS_OVERDUE, 'Overdue'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_WAIVED, 'Waived'),
    )

    # Still owed: counted into a later voucher's carried balance and payable.
    OUTSTANDING_STATUSES = (STATUS_UNPAID, STATUS_PARTIAL, STATUS_OVERDUE)
    SWEEPABLE_STATUSES = (STATUS_UNPAID, STATUS_PARTIAL)
    CLOSED_STATUSES = (STATUS_PAID, STATUS_CANCELLED, STATUS_WAIVED)

    objects = FeeVoucherQuerySet.as_manager()

    voucher_number = models.CharField(max_length=30, unique=True)
    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='fee_vouchers',
    )
    month = models.PositiveSmallIntegerField()
    year = models.PositiveSmallIntegerField()
    issue_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField()

    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    # Display only; never part of total_amount.
    previous_balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    balance_due = models.DecimalField(max_digits=12, decimal_places=2)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_UNPAID)
    previous_voucher = models.ForeignKey(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='next_vouchers',
    )
    is_auto_generated = models.BooleanField(default=False)
    remarks = models.CharField(max_length=255, blank=True)
    version = models.PositiveIntegerField(default=0)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='issued_fee_vouchers',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-year', '-month', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'month', 'year'],
                name='unique_fee_voucher_per_student_period',
            ),
            models.CheckConstraint(
                condition=Q(month__gte=1) & Q(month__lte=12),
                name='fee_voucher_month_range',
            ),
            models.CheckConstraint(
                condition=(
                    Q(subtotal__gte=0)
                    & Q(previous_balance__gte=0)
                    & Q(paid_amount__gte=0)
                    & Q(balance_due__gte=0)
                ),
                name='fee_voucher_non_negative_amounts',
            ),
            models.CheckConstraint(
                condition=Q(total_amount=F('subtotal')),
                name='fee_voucher_total_is_subtotal',
            ),
            models.CheckConstraint(
                condition=Q(paid_amount__lte=F('total_amount')),
                name='fee_voucher_paid_not_above_total',
            ),
        ]
        indexes = [
            models.Index(fields=['student', 'status'], name='fees_voucher_student_idx'),
            models.Index(fields=['status', 'due_date'], name='fees_voucher_due_idx'),
            models.Index(fields=['year', 'month'], name='fees_voucher_period_idx'),
        ]

    @property
    def is_payable(self):
        return self.status in self.OUTSTANDING_STATUSES

    @staticmethod
    def derive_status(total_amount, paid_amount, current_status=STATUS_UNPAID):
        if paid_amount >= total_amount:
            return FeeVoucher.STATUS_PAID
        if paid_amount > 0:
            return FeeVoucher.STATUS_PARTIAL
        return current_status

    def apply_payment_amount(self, amount):
        """Recompute paid amount, balance and status for an accepted payment."""
        self.paid_amount = Decimal(self.paid_amount) + Decimal(amount)
        balance = Decimal(self.total_amount) - self.paid_amount
        self.balance_due = balance if balance > 0 else Decimal('0.00')
        self.status = self.derive_status(self.total_amount, self.paid_amount, self.status)

    def clean(self):
        super().clean()

        if self.month is not None and not 1 <= self.month <= 12:
            raise ValidationError({'month': 'Month must be between 1 and 12.'})

        if self.subtotal is not None and self.total_amount != self.subtotal:
            raise ValidationError({'total_amount': 'Total amount must equal the current period subtotal.'})

        if self.paid_amount is not None and self.total_amount is not None:
            if self.paid_amount < 0:
                raise ValidationError({'paid_amount': 'Paid amount cannot be negative.'})
            if self.paid_amount > self.total_amount:
                raise ValidationError({'paid_amount': 'Paid amount cannot exceed total amount.'})
            if self.balance_due is not None and self.balance_due != max(
                Decimal('0.00'), self.total_amount - self.paid_amount
            ):
                raise ValidationError({'balance_due': 'Balance due must equal total amount minus paid amount.'})

        if self.previous_voucher_id:
            if self.previous_voucher_id == self.pk:
                raise ValidationError({'previous_voucher': 'A voucher cannot reference itself.'})
            if self.previous_voucher.student_id != self.student_id:
                raise ValidationError({'previous_voucher': 'Previous voucher must belong to the same student.'})

    def __str__(self):
        return f"{self.voucher_number} ({self.month:02d}/{self.year})"


class FeeVoucherItem(FinancialRecordModel):
    voucher = models.ForeignKey(
        FeeVoucher,
        on_delete=models.PROTECT,
        related_name='items',
    )
    fee_type = models.CharField(max_length=30, choices=FeeType.choices)
    description = models.CharField(max_length=255, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    fee_structure = models.ForeignKey(
        FeeStructure,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='voucher_items',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='fee_voucher_item_amount_positive',
            ),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Voucher items are immutable once created.')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.get_fee_type_display()} {self.amount} ({self.voucher_id})"


class Payment(FinancialRecordModel):
    METHOD_CASH = 'cash'
    METHOD_BANK_TRANSFER = 'bank_transfer'
    METHOD_CHEQUE = 'cheque'
    METHOD_ONLINE = 'online'
    PAYMENT_METHOD_CHOICES = (
        (METHOD_CASH, 'Cash'),
        (METHOD_BANK_TRANSFER, 'Bank Transfer'),
        (METHOD_CHEQUE, 'Cheque'),
        (METHOD_ONLINE, 'Online'),
    )

    receipt_number = models.CharField(max_length=30, unique=True)
    voucher = models.ForeignKey(
        FeeVoucher,
        on_delete=models.PROTECT,
        related_name='payments',
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='fee_payments',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, default=METHOD_CASH)
    payment_date = models.DateField(default=timezone.localdate)
    reference = models.CharField(max_length=120, blank=True)
    remarks = models.CharField(max_length=255, blank=True)
    received_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='received_fee_payments',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-payment_date', '-id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='payment_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['voucher', 'payment_date'], name='fees_payment_voucher_idx'),
            models.Index(fields=['student', 'payment_date'], name='fees_payment_student_idx'),
        ]

    def clean(self):
        super().clean()
        if self.amount is None or self.amount <= 0:
            raise ValidationError({'amount': 'Payment amount must be greater than zero.'})
        if self.voucher_id and self.student_id and self.voucher.student_id != self.student_id:
            raise ValidationError({'student': 'Payment student must match the voucher student.'})

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Payments are immutable once recorded.')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.receipt_number} - {self.amount}"
