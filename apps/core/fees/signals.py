import logging

from django.dispatch import Signal


logger = logging.getLogger(__name__)

# Sent after the issuing transaction commits. kwargs: voucher
voucher_issued = Signal()

# Sent after the payment transaction commits. kwargs: payment, voucher
payment_recorded = Signal()


def _send_robust(signal, sender, **kwargs):
    for receiver, response in signal.send_robust(sender=sender, **kwargs):
        if isinstance(response, Exception):
            logger.error(
                'Fee notification receiver %r failed: %s',
                receiver,
                response,
                exc_info=(type(response), response, response.__traceback__),
            )


def send_voucher_issued(voucher):
    _send_robust(voucher_issued, sender=voucher.__class__, voucher=voucher)


def send_payment_recorded(payment):
    _send_robust(payment_recorded, sender=payment.__class__, payment=payment, voucher=payment.voucher)
