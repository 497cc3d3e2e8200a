from concurrent.futures import ThreadPoolExecutor

from django.core.exceptions import ValidationError
from django.db import connection
from django.test import TestCase, TransactionTestCase

from apps.core.utils.transactions import run_with_retries

from .models import Sequence
from .services import (
    COUNTER_RECEIPT,
    COUNTER_TEACHER,
    COUNTER_VOUCHER,
    current_sequence_value,
    format_document_number,
    next_document_number,
    next_sequence_value,
)


class SequenceAllocationTests(TestCase):
    def test_missing_counter_starts_at_one(self):
        self.assertEqual(next_sequence_value('VOUCHER'), 1)
        self.assertEqual(Sequence.objects.get(pk='VOUCHER').value, 1)

    def test_values_strictly_increase_per_counter(self):
        values = [next_sequence_value(COUNTER_VOUCHER) for _ in range(5)]
        self.assertEqual(values, [1, 2, 3, 4, 5])
        self.assertEqual(next_sequence_value(COUNTER_RECEIPT), 1)
        self.assertEqual(current_sequence_value(COUNTER_VOUCHER), 5)

    def test_counter_id_is_normalized(self):
        next_sequence_value(' voucher ')
        self.assertEqual(next_sequence_value('VOUCHER'), 2)

    def test_blank_counter_id_is_rejected(self):
        with self.assertRaises(ValidationError):
            next_sequence_value('  ')

    def test_current_value_of_unknown_counter_is_zero(self):
        self.assertEqual(current_sequence_value('UNKNOWN'), 0)
        self.assertFalse(Sequence.objects.filter(pk='UNKNOWN').exists())

    def test_sequence_rows_cannot_be_deleted(self):
        next_sequence_value(COUNTER_VOUCHER)
        with self.assertRaises(ValidationError):
            Sequence.objects.get(pk=COUNTER_VOUCHER).delete()


class DocumentNumberFormatTests(TestCase):
    def test_known_counter_formats(self):
        self.assertEqual(format_document_number('VOUCHER', 7, year=2026), 'FV-2026-00007')
        self.assertEqual(format_document_number('RECEIPT', 12, year=2026), 'REC-2026-00012')
        self.assertEqual(format_document_number('SALARY', 3, year=2025), 'SAL-2025-003')
        self.assertEqual(format_document_number(COUNTER_TEACHER, 4), 'TCH-004')

    def test_unknown_counter_uses_prefix(self):
        self.assertEqual(format_document_number('LIBRARY', 9, prefix='LIB'), 'LIB-0009')
        self.assertEqual(format_document_number('LIBRARY', 9), 'SEQ-0009')

    def test_non_positive_value_is_rejected(self):
        with self.assertRaises(ValidationError):
            format_document_number('VOUCHER', 0, year=2026)

    def test_next_document_number_consumes_one_value(self):
        self.assertEqual(next_document_number(COUNTER_VOUCHER, year=2026), 'FV-2026-00001')
        self.assertEqual(next_document_number(COUNTER_VOUCHER, year=2026), 'FV-2026-00002')


class ConcurrentSequenceAllocationTests(TransactionTestCase):
    workers = 8
    allocations = 40

    def _allocate(self, _):
        try:
            return run_with_retries(next_sequence_value, COUNTER_RECEIPT, attempts=10)
        finally:
            connection.close()

    def test_concurrent_callers_never_share_a_value(self):
        next_sequence_value(COUNTER_RECEIPT)

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            values = list(pool.map(self._allocate, range(self.allocations)))

        self.assertEqual(len(values), self.allocations)
        self.assertEqual(len(set(values)), self.allocations)
        self.assertTrue(all(value > 1 for value in values))
        self.assertEqual(current_sequence_value(COUNTER_RECEIPT), self.allocations + 1)
