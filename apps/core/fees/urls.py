from django.urls import path

from .views import (
    cron_generate,
    payment_collection,
    voucher_cancel,
    voucher_collection,
    voucher_detail,
    voucher_waive,
)

urlpatterns = [
    path('vouchers/', voucher_collection, name='fee_voucher_collection'),
    path('vouchers/<int:pk>/', voucher_detail, name='fee_voucher_detail'),
    path('vouchers/<int:pk>/cancel/', voucher_cancel, name='fee_voucher_cancel'),
    path('vouchers/<int:pk>/waive/', voucher_waive, name='fee_voucher_waive'),

    path('payments/', payment_collection, name='fee_payment_collection'),

    path('cron/generate/', cron_generate, name='fee_cron_generate'),
]
