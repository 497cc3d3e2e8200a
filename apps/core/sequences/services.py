from __future__ import annotations

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from apps.core.utils.transactions import RetryableConflict

from .models import Sequence


COUNTER_VOUCHER = 'VOUCHER'
COUNTER_RECEIPT = 'RECEIPT'
COUNTER_SALARY = 'SALARY'
COUNTER_STUDENT = 'STUDENT'
COUNTER_TEACHER = 'TEACHER'
COUNTER_COMPLAINT = 'COMPLAINT'

# counter -> (document prefix, zero padded width, include year)
DOCUMENT_FORMATS = {
    COUNTER_VOUCHER: ('FV', 5, True),
    COUNTER_RECEIPT: ('REC', 5, True),
    COUNTER_SALARY: ('SAL', 3, True),
    COUNTER_STUDENT: ('STU', 4, True),
    COUNTER_TEACHER: ('TCH', 3, False),
    COUNTER_COMPLAINT: ('CMP', 4, True),
}
DEFAULT_PREFIX = 'SEQ'
DEFAULT_WIDTH = 4


class SequenceConflict(RetryableConflict):
    """The counter row could not be incremented; nothing was consumed."""


def normalize_counter_id(counter_id) -> str:
    normalized = (counter_id or '').strip().upper()
    if not normalized:
        raise ValidationError('Sequence counter id is required.')
    return normalized


def _increment(counter_id: str) -> bool:
    updated = Sequence.objects.filter(pk=counter_id).update(
        value=F('value') + 1,
        updated_at=timezone.now(),
    )
    return updated == 1


@transaction.atomic
def next_sequence_value(counter_id, prefix='') -> int:
    """Increment ``counter_id`` and return its new value.

    The row update holds the counter's lock until the surrounding transaction
    ends, so concurrent callers are serialized by the database and can never
    read the same value. A missing counter starts at 1.
    """
    counter_id = normalize_counter_id(counter_id)

    try:
        if not _increment(counter_id):
            try:
                with transaction.atomic():
                    Sequence.objects.create(counter_id=counter_id, value=1, prefix=(prefix or '')[:20])
            except IntegrityError:
                # A concurrent transaction created the counter first.
                if not _increment(counter_id):
                    raise SequenceConflict(f"Could not allocate a number from counter {counter_id}.")
    except IntegrityError as exc:
        raise SequenceConflict(f"Could not allocate a number from counter {counter_id}.") from exc

    return Sequence.objects.values_list('value', flat=True).get(pk=counter_id)


def current_sequence_value(counter_id) -> int:
    counter_id = normalize_counter_id(counter_id)
    value = Sequence.objects.filter(pk=counter_id).values_list('value', flat=True).first()
    return value or 0


def format_document_number(counter_id, value: int, year: int | None = None, prefix='') -> str:
    counter_id = normalize_counter_id(counter_id)
    if value is None or value < 1:
        raise ValidationError('Sequence value must be a positive integer.')

    doc_format = DOCUMENT_FORMATS.get(counter_id)
    if doc_format is None:
        return f"{prefix or DEFAULT_PREFIX}-{value:0{DEFAULT_WIDTH}d}"

    doc_prefix, width, include_year = doc_format
    if not include_year:
        return f"{doc_prefix}-{value:0{width}d}"

    year = year or timezone.localdate().year
    return f"{doc_prefix}-{year}-{value:0{width}d}"


def next_document_number(counter_id, year: int | None = None, prefix='') -> str:
    value = next_sequence_value(counter_id, prefix=prefix)
    return format_document_number(counter_id, value, year=year, prefix=prefix)
