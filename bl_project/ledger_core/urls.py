from django.urls import path

from . import views

app_name = "ledger_core"

urlpatterns = [
    path("vouchers/<int:voucher_id>/transition/",
         views.transition_voucher_view, name="voucher-transition"),
    path("accounts/<int:account_id>/ledger/",
         views.account_ledger_view, name="account-ledger"),
    path("vendors/<int:vendor_id>/aging/",
         views.vendor_aging_view, name="vendor-aging"),
    path("imports/preview/",
         views.import_preview_view, name="import-preview"),
]
