import json
from django.core.exceptions import ValidationError
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.utils.dateparse import parse_date
from django.views.decorators.http import require_GET, require_POST

from .models import Account, Vendor, Voucher
from .services.imports import parse_and_validate_vouchers
from .services.reports import account_running_balance, vendor_payables_aging
from .services.vouchers import transition_status


def _no_company():
    return JsonResponse({"ok": False, "error": "No active company"}, status=403)


def _bad_date():
    return JsonResponse({"ok": False, "error": "Invalid date"}, status=400)


def _money(value):
    return str(value) if value is not None else None


@require_POST
def transition_voucher_view(request, voucher_id):
    if request.company is None:
        return _no_company()
    # Look up the voucher inside the caller's company only
    voucher = get_object_or_404(
        Voucher.objects.for_company(request.company), pk=voucher_id)
    # call the service and handle response or errors
    try:
        voucher = transition_status(
            voucher.pk, request.POST.get("status", ""), user=request.user)
    except ValidationError as e:
        return JsonResponse({"ok": False, "error": " ".join(e.messages)},
                            status=400)
    return JsonResponse({"ok": True, "voucher_no": voucher.voucher_no,
                         "status": voucher.status})


@require_GET
def account_ledger_view(request, account_id):
    if request.company is None:
        return _no_company()
    account = get_object_or_404(
        Account.objects.for_company(request.company), pk=account_id)
    try:
        # parse_date raises on well-formed but impossible dates
        date_from = parse_date(request.GET.get("from", ""))
        date_to = parse_date(request.GET.get("to", ""))
    except ValueError:
        return _bad_date()
    statement = account_running_balance(
        account, date_from=date_from, date_to=date_to)
    return JsonResponse({
        "account": account.code,
        "opening_balance": _money(statement.opening_balance),
        "closing_balance": _money(statement.closing_balance),
        "lines": [
            {
                "date": line.date.isoformat(),
                "voucher_no": line.voucher_no,
                "description": line.description,
                "debit": _money(line.debit),
                "credit": _money(line.credit),
                "balance": _money(line.balance),
            }
            for line in statement.lines
        ],
    })


@require_GET
def vendor_aging_view(request, vendor_id):
    if request.company is None:
        return _no_company()
    vendor = get_object_or_404(
        Vendor.objects.for_company(request.company), pk=vendor_id)
    try:
        as_of = parse_date(request.GET.get("as_of", ""))
    except ValueError:
        return _bad_date()
    aging = vendor_payables_aging(vendor, as_of=as_of)
    return JsonResponse({
        "vendor": vendor.name,
        "buckets": {name: _money(v) for name, v in aging.buckets.items()},
        "total_due": _money(aging.total_due),
        "total_paid": _money(aging.total_paid),
    })


@require_POST
def import_preview_view(request):
    if request.company is None:
        return _no_company()
    try:
        rows = json.loads(request.body or b"{}").get("rows", [])
    except (ValueError, AttributeError):
        return JsonResponse({"ok": False, "error": "Invalid JSON body"},
                            status=400)
    result = parse_and_validate_vouchers(request.company, rows)

    def issue(i):
        return {"voucher_key": i.voucher_key, "message": i.message,
                "severity": i.severity, "row": i.row_index}

    return JsonResponse({
        "ok": True,
        "total_rows": result.total_rows,
        "total_vouchers": result.total_vouchers,
        "can_commit": result.can_commit,
        "errors": [issue(i) for i in result.errors],
        "warnings": [issue(i) for i in result.warnings],
        "unresolved_accounts": result.unresolved_accounts,
        "vouchers": [
            {
                "key": v.key,
                "date": v.date.isoformat() if v.date else None,
                "total_debit": _money(v.total_debit),
                "total_credit": _money(v.total_credit),
                "rows": [line.row_index for line in v.lines],
            }
            for v in result.vouchers
        ],
    })
