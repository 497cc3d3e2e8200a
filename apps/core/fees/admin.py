from django.contrib import admin

from .models import FeeStructure, FeeVoucher, FeeVoucherItem, Payment


class ReadOnlyFinancialAdmin(admin.ModelAdmin):
    """Vouchers and payments only change through the ledger services."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(FeeStructure)
class FeeStructureAdmin(admin.ModelAdmin):
    list_display = ('name', 'fee_type', 'amount', 'school_class', 'is_recurring', 'is_active')
    list_filter = ('fee_type', 'school_class', 'is_recurring', 'is_active')
    search_fields = ('name',)


class FeeVoucherItemInline(admin.TabularInline):
    model = FeeVoucherItem
    extra = 0
    can_delete = False
    readonly_fields = ('fee_type', 'description', 'amount', 'fee_structure')

    def has_add_permission(self, request, obj=None):
        return False


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    can_delete = False
    readonly_fields = ('receipt_number', 'amount', 'payment_method', 'payment_date', 'reference', 'received_by')
    fields = readonly_fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(FeeVoucher)
class FeeVoucherAdmin(ReadOnlyFinancialAdmin):
    list_display = (
        'voucher_number',
        'student',
        'month',
        'year',
        'due_date',
        'total_amount',
        'paid_amount',
        'balance_due',
        'previous_balance',
        'status',
    )
    list_filter = ('status', 'year', 'month', 'is_auto_generated')
    search_fields = ('voucher_number', 'student__admission_number', 'student__first_name')
    inlines = (FeeVoucherItemInline, PaymentInline)


@admin.register(Payment)
class PaymentAdmin(ReadOnlyFinancialAdmin):
    list_display = ('receipt_number', 'voucher', 'student', 'amount', 'payment_method', 'payment_date', 'received_by')
    list_filter = ('payment_method', 'payment_date')
    search_fields = ('receipt_number', 'voucher__voucher_number', 'student__admission_number', 'reference')
