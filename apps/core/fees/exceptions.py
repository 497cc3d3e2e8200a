from django.core.exceptions import ValidationError

from apps.core.utils.transactions import RetryableConflict


class LedgerError(ValidationError):
    """Base class for ledger validation failures.

    ``status_code`` is the HTTP status the JSON views answer with.
    """

    status_code = 400
    default_message = 'Ledger operation failed.'

    def __init__(self, message=None, code=None, params=None):
        super().__init__(message or self.default_message, code=code, params=params)


class StudentNotFound(LedgerError):
    status_code = 404
    default_message = 'Student not found.'


class VoucherNotFound(LedgerError):
    status_code = 404
    default_message = 'Fee voucher not found.'


class InvalidAmount(LedgerError):
    default_message = 'Invalid amount.'


class InvalidFeeItem(LedgerError):
    default_message = 'Invalid fee item.'


class VoucherAlreadySettled(LedgerError):
    status_code = 409
    default_message = 'Voucher is already settled.'


class VoucherCancelled(LedgerError):
    status_code = 409
    default_message = 'Voucher has been cancelled.'


class VoucherStateError(LedgerError):
    status_code = 409
    default_message = 'Voucher status does not allow this action.'


class VoucherConcurrentUpdate(RetryableConflict):
    """The voucher changed between read and write; the transaction was rolled back."""
