from decimal import Decimal

from django import forms
from django.core.exceptions import ValidationError

from apps.core.academics.models import SchoolClass, Section

from .models import FeeType, Payment
from .services import FeeLineItem, items_from_fee_structures


def _positive_id_list(value, label):
    if value in (None, ''):
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{label} must be a list of ids.")

    ids = []
    for raw in value:
        try:
            item_id = int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"{label} contains an invalid id: {raw!r}.")
        if item_id < 1:
            raise ValidationError(f"{label} contains an invalid id: {raw!r}.")
        ids.append(item_id)
    return ids


class FeeVoucherItemForm(forms.Form):
    fee_type = forms.ChoiceField(choices=FeeType.choices)
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0.01'))
    description = forms.CharField(max_length=255, required=False)

    def to_line_item(self):
        return FeeLineItem(
            self.cleaned_data['fee_type'],
            self.cleaned_data['amount'],
            self.cleaned_data.get('description') or '',
        )


class VoucherGenerateForm(forms.Form):
    month = forms.IntegerField(min_value=1, max_value=12)
    year = forms.IntegerField(min_value=2000, max_value=9999)
    student = forms.IntegerField(min_value=1, required=False)
    student_ids = forms.JSONField(required=False)
    school_class = forms.ModelChoiceField(queryset=SchoolClass.objects.none(), required=False)
    section = forms.ModelChoiceField(queryset=Section.objects.none(), required=False)
    items = forms.JSONField(required=False)
    fee_structures = forms.JSONField(required=False)
    due_date = forms.DateField(required=False)
    remarks = forms.CharField(max_length=255, required=False)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields['school_class'].queryset = SchoolClass.objects.filter(is_active=True).order_by('display_order', 'name')
        self.fields['section'].queryset = Section.objects.filter(is_active=True).select_related('school_class')

    def clean_student_ids(self):
        return _positive_id_list(self.cleaned_data.get('student_ids'), 'Student ids')

    def clean_fee_structures(self):
        return _positive_id_list(self.cleaned_data.get('fee_structures'), 'Fee structures')

    def clean_items(self):
        raw_items = self.cleaned_data.get('items')
        if raw_items in (None, ''):
            return None
        if not isinstance(raw_items, list):
            raise ValidationError('Items must be a list of fee items.')

        line_items = []
        for index, raw in enumerate(raw_items, start=1):
            if not isinstance(raw, dict):
                raise ValidationError(f"Fee item {index} must be an object with fee_type and amount.")
            item_form = FeeVoucherItemForm(data=raw)
            if not item_form.is_valid():
                errors = '; '.join(
                    f"{field}: {message}"
                    for field, messages in item_form.errors.items()
                    for message in messages
                )
                raise ValidationError(f"Fee item {index} is invalid ({errors}).")
            line_items.append(item_form.to_line_item())
        return line_items

    def clean(self):
        cleaned = super().clean()
        school_class = cleaned.get('school_class')
        section = cleaned.get('section')

        if section and school_class and section.school_class_id != school_class.id:
            raise ValidationError('Selected section does not belong to selected class.')
        if section and not school_class:
            cleaned['school_class'] = section.school_class

        structure_ids = cleaned.get('fee_structures') or []
        if structure_ids:
            structure_items = items_from_fee_structures(structure_ids)
            cleaned['items'] = (cleaned.get('items') or []) + structure_items
        return cleaned

    @property
    def is_single(self):
        return bool(self.cleaned_data.get('student'))


class PaymentRecordForm(forms.Form):
    voucher = forms.IntegerField(min_value=1)
    amount = forms.DecimalField(max_digits=12, decimal_places=2)
    payment_method = forms.ChoiceField(choices=Payment.PAYMENT_METHOD_CHOICES, required=False)
    payment_date = forms.DateField(required=False)
    reference = forms.CharField(max_length=120, required=False)
    remarks = forms.CharField(max_length=255, required=False)

    def clean_payment_method(self):
        return self.cleaned_data.get('payment_method') or Payment.METHOD_CASH


class VoucherStatusForm(forms.Form):
    reason = forms.CharField(max_length=255, required=False)

    def __init__(self, *args, **kwargs):
        self.reason_required = kwargs.pop('reason_required', False)
        super().__init__(*args, **kwargs)
        self.fields['reason'].required = self.reason_required

    def clean_reason(self):
        return (self.cleaned_data.get('reason') or '').strip()
