import django.db.models.deletion
import django.utils.timezone
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models


FEE_TYPE_CHOICES = [
    ('MONTHLY_FEE', 'Monthly Fee'),
    ('ADMISSION_FEE', 'Admission Fee'),
    ('REGISTRATION_FEE', 'Registration Fee'),
    ('SECURITY_DEPOSIT', 'Security Deposit'),
    ('ANNUAL_FUND', 'Annual Fund'),
    ('EXAM_FEE', 'Exam Fee'),
    ('LAB_FEE', 'Lab Fee'),
    ('LIBRARY_FEE', 'Library Fee'),
    ('COMPUTER_FEE', 'Computer Fee'),
    ('SPORTS_FEE', 'Sports Fee'),
    ('TRANSPORT_FEE', 'Transport Fee'),
    ('LATE_FEE', 'Late Fee'),
    ('OTHER', 'Other'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('academics', '0001_initial'),
        ('students', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='FeeStructure',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=120)),
                ('fee_type', models.CharField(choices=FEE_TYPE_CHOICES, default='OTHER', max_length=30)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('is_recurring', models.BooleanField(default=False)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('school_class', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='fee_structures', to='academics.schoolclass')),
            ],
            options={
                'ordering': ['fee_type', 'name', 'id'],
                'constraints': [
                    models.UniqueConstraint(fields=('name', 'school_class'), name='unique_fee_structure_name_per_class'),
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='fee_structure_amount_positive'),
                ],
            },
        ),
        migrations.CreateModel(
            name='FeeVoucher',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('voucher_number', models.CharField(max_length=30, unique=True)),
                ('month', models.PositiveSmallIntegerField()),
                ('year', models.PositiveSmallIntegerField()),
                ('issue_date', models.DateField(default=django.utils.timezone.localdate)),
                ('due_date', models.DateField()),
                ('subtotal', models.DecimalField(decimal_places=2, max_digits=12)),
                ('previous_balance', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('total_amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('paid_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('balance_due', models.DecimalField(decimal_places=2, max_digits=12)),
                ('status', models.CharField(choices=[('unpaid', 'Unpaid'), ('partial', 'Partially Paid'), ('paid', 'Paid'), ('overdue', 'Overdue'), ('cancelled', 'Cancelled'), ('waived', 'Waived')], default='unpaid', max_length=20)),
                ('is_auto_generated', models.BooleanField(default=False)),
                ('remarks', models.CharField(blank=True, max_length=255)),
                ('version', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='issued_fee_vouchers', to=settings.AUTH_USER_MODEL)),
                ('previous_voucher', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='next_vouchers', to='fees.feevoucher')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='fee_vouchers', to='students.student')),
            ],
            options={
                'ordering': ['-year', '-month', '-id'],
                'indexes': [
                    models.Index(fields=['student', 'status'], name='fees_voucher_student_idx'),
                    models.Index(fields=['status', 'due_date'], name='fees_voucher_due_idx'),
                    models.Index(fields=['year', 'month'], name='fees_voucher_period_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('student', 'month', 'year'), name='unique_fee_voucher_per_student_period'),
                    models.CheckConstraint(condition=models.Q(('month__gte', 1), ('month__lte', 12)), name='fee_voucher_month_range'),
                    models.CheckConstraint(condition=models.Q(('subtotal__gte', 0), ('previous_balance__gte', 0), ('paid_amount__gte', 0), ('balance_due__gte', 0)), name='fee_voucher_non_negative_amounts'),
                    models.CheckConstraint(condition=models.Q(('total_amount', models.F('subtotal'))), name='fee_voucher_total_is_subtotal'),
                    models.CheckConstraint(condition=models.Q(('paid_amount__lte', models.F('total_amount'))), name='fee_voucher_paid_not_above_total'),
                ],
            },
        ),
        migrations.CreateModel(
            name='FeeVoucherItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('fee_type', models.CharField(choices=FEE_TYPE_CHOICES, max_length=30)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('fee_structure', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='voucher_items', to='fees.feestructure')),
                ('voucher', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='items', to='fees.feevoucher')),
            ],
            options={
                'ordering': ['id'],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='fee_voucher_item_amount_positive'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('receipt_number', models.CharField(max_length=30, unique=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('payment_method', models.CharField(choices=[('cash', 'Cash'), ('bank_transfer', 'Bank Transfer'), ('cheque', 'Cheque'), ('online', 'Online')], default='cash', max_length=20)),
                ('payment_date', models.DateField(default=django.utils.timezone.localdate)),
                ('reference', models.CharField(blank=True, max_length=120)),
                ('remarks', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('received_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='received_fee_payments', to=settings.AUTH_USER_MODEL)),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='fee_payments', to='students.student')),
                ('voucher', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='fees.feevoucher')),
            ],
            options={
                'ordering': ['-payment_date', '-id'],
                'indexes': [
                    models.Index(fields=['voucher', 'payment_date'], name='fees_payment_voucher_idx'),
                    models.Index(fields=['student', 'payment_date'], name='fees_payment_student_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='payment_amount_positive'),
                ],
            },
        ),
    ]
