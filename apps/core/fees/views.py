import hmac
import json

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.paginator import EmptyPage, Paginator
from django.db.models import Q
from django.http import JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_date
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods, require_POST

from apps.core.students.models import Student
from apps.core.users.decorators import role_required

from .forms import PaymentRecordForm, VoucherGenerateForm, VoucherStatusForm
from .models import FeeVoucher, Payment
from .services import (
    OUTCOME_CREATED,
    cancel_voucher,
    generate_monthly_vouchers,
    issue_voucher,
    ledger_status,
    record_payment,
    student_outstanding_summary,
    waive_voucher,
)


LEDGER_ROLES = ('superadmin', 'schooladmin', 'accountant')
ADMIN_ROLES = ('superadmin', 'schooladmin')
DEFAULT_PAGE_SIZE = 20


def _money(value):
    return str(value) if value is not None else None


def _date(value):
    return value.isoformat() if value else None


def _error_response(exc: ValidationError):
    return JsonResponse(
        {'error': '; '.join(exc.messages)},
        status=getattr(exc, 'status_code', 400),
    )


def _form_error_response(form):
    errors = {
        field or 'non_field_errors': [str(message) for message in messages]
        for field, messages in form.errors.items()
    }
    return JsonResponse({'error': 'Invalid request.', 'errors': errors}, status=400)


def _request_data(request):
    if request.content_type == 'application/json':
        try:
            payload = json.loads(request.body or b'{}')
        except ValueError:
            raise ValidationError('Request body must be valid JSON.')
        if not isinstance(payload, dict):
            raise ValidationError('Request body must be a JSON object.')
        return payload
    return request.POST


def _positive_int(value, label):
    if value in (None, ''):
        return None
    if not str(value).isdigit() or int(value) < 1:
        raise ValidationError(f"{label} must be a positive integer.")
    return int(value)


def _query_date(value, label):
    if not value:
        return None
    try:
        parsed = parse_date(value)
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError(f"{label} must be a date in YYYY-MM-DD format.")
    return parsed


def _paginate(request, queryset):
    page_number = _positive_int(request.GET.get('page'), 'Page') or 1
    page_size = _positive_int(request.GET.get('page_size'), 'Page size') or DEFAULT_PAGE_SIZE
    page_size = min(page_size, settings.LEDGER_PAGE_SIZE_LIMIT)

    paginator = Paginator(queryset, page_size)
    try:
        page = paginator.page(page_number)
    except EmptyPage:
        page = paginator.page(paginator.num_pages)

    return page, {
        'page': page.number,
        'page_size': page_size,
        'total': paginator.count,
        'total_pages': paginator.num_pages,
    }


def _student_payload(student):
    return {
        'id': student.id,
        'admission_number': student.admission_number,
        'name': student.full_name,
    }


def _item_payload(item):
    return {
        'id': item.id,
        'fee_type': item.fee_type,
        'description': item.description,
        'amount': _money(item.amount),
    }


def _payment_payload(payment):
    return {
        'id': payment.id,
        'receipt_number': payment.receipt_number,
        'voucher_id': payment.voucher_id,
        'voucher_number': payment.voucher.voucher_number,
        'student': _student_payload(payment.student),
        'amount': _money(payment.amount),
        'payment_method': payment.payment_method,
        'payment_date': _date(payment.payment_date),
        'reference': payment.reference,
        'remarks': payment.remarks,
        'received_by': payment.received_by.username if payment.received_by_id else None,
        'created_at': _date(payment.created_at),
    }


def _voucher_payload(voucher, detail=False):
    payload = {
        'id': voucher.id,
        'voucher_number': voucher.voucher_number,
        'student': _student_payload(voucher.student),
        'month': voucher.month,
        'year': voucher.year,
        'issue_date': _date(voucher.issue_date),
        'due_date': _date(voucher.due_date),
        'subtotal': _money(voucher.subtotal),
        'previous_balance': _money(voucher.previous_balance),
        'total_amount': _money(voucher.total_amount),
        'paid_amount': _money(voucher.paid_amount),
        'balance_due': _money(voucher.balance_due),
        'status': voucher.status,
        'previous_voucher_id': voucher.previous_voucher_id,
        'is_auto_generated': voucher.is_auto_generated,
        'remarks': voucher.remarks,
    }
    if detail:
        payload['items'] = [_item_payload(item) for item in voucher.items.all()]
        payload['payments'] = [
            _payment_payload(payment)
            for payment in voucher.payments.select_related('voucher', 'student', 'received_by')
        ]
    return payload


def _voucher_list(request):
    vouchers = FeeVoucher.objects.select_related('student')

    student_id = _positive_int(request.GET.get('student'), 'Student')
    if student_id:
        vouchers = vouchers.filter(student_id=student_id)

    status = request.GET.get('status')
    if status:
        if status not in dict(FeeVoucher.STATUS_CHOICES):
            raise ValidationError(f"Unknown voucher status '{status}'.")
        vouchers = vouchers.filter(status=status)

    month = _positive_int(request.GET.get('month'), 'Month')
    year = _positive_int(request.GET.get('year'), 'Year')
    if month:
        vouchers = vouchers.filter(month=month)
    if year:
        vouchers = vouchers.filter(year=year)

    search = (request.GET.get('search') or '').strip()
    if search:
        vouchers = vouchers.filter(
            Q(voucher_number__icontains=search)
            | Q(student__admission_number__icontains=search)
            | Q(student__first_name__icontains=search)
            | Q(student__last_name__icontains=search)
        )

    page, pagination = _paginate(request, vouchers.order_by('-year', '-month', '-id'))
    response = {
        'vouchers': [_voucher_payload(voucher) for voucher in page.object_list],
        'pagination': pagination,
    }
    if student_id:
        student = Student.objects.filter(pk=student_id).first()
        if student is not None:
            response['summary'] = student_outstanding_summary(student)
    return JsonResponse(response)


def _generate_vouchers(request):
    form = VoucherGenerateForm(_request_data(request))
    if not form.is_valid():
        return _form_error_response(form)

    cleaned = form.cleaned_data
    options = {
        'due_date': cleaned.get('due_date'),
        'issued_by': request.user,
        'remarks': cleaned.get('remarks') or '',
        'request': request,
    }

    if form.is_single:
        result = issue_voucher(
            cleaned['student'],
            cleaned['month'],
            cleaned['year'],
            cleaned.get('items'),
            **options,
        )
        return JsonResponse(
            {
                'outcome': result.outcome,
                'voucher': _voucher_payload(result.voucher, detail=True) if result.voucher else None,
            },
            status=201 if result.outcome == OUTCOME_CREATED else 200,
        )

    summary = generate_monthly_vouchers(
        cleaned['month'],
        cleaned['year'],
        school_class=cleaned.get('school_class'),
        section=cleaned.get('section'),
        student_ids=cleaned.get('student_ids'),
        items=cleaned.get('items'),
        **options,
    )
    return JsonResponse(summary)


@role_required(LEDGER_ROLES)
@require_http_methods(['GET', 'POST'])
def voucher_collection(request):
    try:
        if request.method == 'POST':
            return _generate_vouchers(request)
        return _voucher_list(request)
    except ValidationError as exc:
        return _error_response(exc)


@role_required(LEDGER_ROLES)
@require_http_methods(['GET'])
def voucher_detail(request, pk):
    voucher = FeeVoucher.objects.select_related('student').filter(pk=pk).first()
    if voucher is None:
        return JsonResponse({'error': f"Fee voucher {pk} not found."}, status=404)

    payload = _voucher_payload(voucher, detail=True)
    payload['student_summary'] = student_outstanding_summary(voucher.student)
    return JsonResponse(payload)


def _change_status(request, pk, action, reason_required):
    try:
        form = VoucherStatusForm(_request_data(request), reason_required=reason_required)
        if not form.is_valid():
            return _form_error_response(form)
        voucher = action(
            pk,
            actor=request.user,
            reason=form.cleaned_data['reason'],
            request=request,
        )
    except ValidationError as exc:
        return _error_response(exc)
    return JsonResponse({'voucher': _voucher_payload(voucher)})


@role_required(ADMIN_ROLES)
@require_POST
def voucher_cancel(request, pk):
    return _change_status(request, pk, cancel_voucher, reason_required=False)


@role_required(ADMIN_ROLES)
@require_POST
def voucher_waive(request, pk):
    return _change_status(request, pk, waive_voucher, reason_required=True)


def _payment_list(request):
    payments = Payment.objects.select_related('voucher', 'student', 'received_by')

    voucher_id = _positive_int(request.GET.get('voucher'), 'Voucher')
    if voucher_id:
        payments = payments.filter(voucher_id=voucher_id)

    student_id = _positive_int(request.GET.get('student'), 'Student')
    if student_id:
        payments = payments.filter(student_id=student_id)

    date_from = _query_date(request.GET.get('date_from'), 'date_from')
    date_to = _query_date(request.GET.get('date_to'), 'date_to')
    if date_from:
        payments = payments.filter(payment_date__gte=date_from)
    if date_to:
        payments = payments.filter(payment_date__lte=date_to)

    page, pagination = _paginate(request, payments.order_by('-payment_date', '-id'))
    return JsonResponse({
        'payments': [_payment_payload(payment) for payment in page.object_list],
        'pagination': pagination,
    })


def _record_payment(request):
    form = PaymentRecordForm(_request_data(request))
    if not form.is_valid():
        return _form_error_response(form)

    cleaned = form.cleaned_data
    payment = record_payment(
        cleaned['voucher'],
        cleaned['amount'],
        cleaned['payment_method'],
        request.user,
        payment_date=cleaned.get('payment_date'),
        reference=cleaned.get('reference') or '',
        remarks=cleaned.get('remarks') or '',
        request=request,
    )
    return JsonResponse(
        {
            'payment': _payment_payload(payment),
            'voucher': _voucher_payload(payment.voucher),
        },
        status=201,
    )


@role_required(LEDGER_ROLES)
@require_http_methods(['GET', 'POST'])
def payment_collection(request):
    try:
        if request.method == 'POST':
            return _record_payment(request)
        return _payment_list(request)
    except ValidationError as exc:
        return _error_response(exc)


def _cron_authorized(request):
    secret = settings.FEE_CRON_SECRET
    if not secret:
        return False
    provided = request.headers.get('Authorization', '')
    return hmac.compare_digest(provided.encode(), f"Bearer {secret}".encode())


@csrf_exempt
@require_http_methods(['GET', 'POST'])
def cron_generate(request):
    if not _cron_authorized(request):
        return JsonResponse({'error': 'Unauthorized'}, status=401)

    if request.method == 'GET':
        return JsonResponse({'status': 'operational', 'stats': ledger_status()})

    today = timezone.localdate()
    summary = generate_monthly_vouchers(
        today.month,
        today.year,
        is_auto_generated=True,
        mark_overdue=True,
        as_of=today,
    )
    return JsonResponse({
        'success': True,
        'stats': {
            'month': summary['month'],
            'year': summary['year'],
            'total_students': summary['total'],
            'vouchers_created': summary['created'],
            'skipped': summary['exists'],
            'no_fees': summary['no_fees'],
            'errors': summary['error'],
            'marked_overdue': summary['marked_overdue'],
        },
    })
