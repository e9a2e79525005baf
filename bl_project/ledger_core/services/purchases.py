import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional
from django.db import transaction
from ..exceptions import (AccountInactiveOrMissingError, InvalidQuantityError,
                          MissingDefaultAccountError, PurchaseNotBalancedError,
                          UnbalancedVoucherError)
from ..models import Account, Project, Purchase, Voucher
from .accounts import assert_postable, is_leaf
from .vouchers import create_voucher, validate_balance

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# What each purchase line type costs to
LINE_TYPE_PURPOSE = {
    "material": "materials",
    "service": "labor",
    "other": "overhead",
}

# Account codes serving each purpose, first usable one wins
PURPOSE_ACCOUNT_CODES = {
    "materials": ("5010",),  # Direct Materials
    "labor": ("5020",),  # Direct Labor
    "overhead": ("5030", "5090"),  # Site Overhead, else Miscellaneous
    "payables": ("2010",),  # Accounts Payable
}


@dataclass
class VoucherDraft:
    """Everything create_voucher needs, derived from a purchase."""
    date: object
    voucher_type: str
    narration: str
    project: Optional[Project] = None
    lines: List[dict] = field(default_factory=list)

    @property
    def total_debit(self):
        return sum((line["debit"] for line in self.lines), Decimal("0.00"))


def purpose_account(company, purpose):
    """The active leaf account mapped to `purpose`."""
    codes = PURPOSE_ACCOUNT_CODES[purpose]
    for code in codes:
        account = Account.objects.filter(company=company, code=code).first()
        if account and account.is_active and is_leaf(account):
            return account
    raise MissingDefaultAccountError(
        f"Required account {' or '.join(codes)} for {purpose} is missing, "
        f"inactive or not a leaf account",
        account_code=codes[0], purpose=purpose)


def _line_description(line):
    if line.line_type == "material":
        name = line.item_name or "Material"
        return f"{name} - {line.quantity:.3f} {line.unit}".strip()
    return line.description or line.material_name or line.get_line_type_display()


def build_voucher_from_purchase(purchase):
    """
    Derive the accounting entry of a purchase:
    one debit per line (after the header discount) against credits for
    what was paid now (payment account) and what is still due (AP).
    """
    company = purchase.company
    discount = purchase.discount_percent or Decimal("0")
    lines = []

    for index, line in enumerate(
            purchase.lines.select_related("stock_item").order_by("id"),
            start=1):
        if line.line_total <= 0:
            raise InvalidQuantityError(
                f"Purchase line {index} has no amount", line_index=index)
        amount = (line.line_total - line.line_total * discount / HUNDRED)
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
        account = purpose_account(company, LINE_TYPE_PURPOSE[line.line_type])
        lines.append({
            "account": account,
            "debit": amount,
            "credit": Decimal("0.00"),
            "description": _line_description(line),
            "project": purchase.project,
            "vendor": purchase.vendor,
        })

    paid = purchase.paid_amount or Decimal("0")
    due = purchase.due_amount or Decimal("0")

    if paid > 0:
        payment_account = purchase.payment_account
        if payment_account is None and purchase.payment_method_id:
            payment_account = purchase.payment_method.account
        if payment_account is None:
            raise AccountInactiveOrMissingError(
                "A payment account is required when an amount is paid")
        assert_postable(payment_account, company)
        lines.append({
            "account": payment_account,
            "debit": Decimal("0.00"),
            "credit": paid,
            "description": "Paid on purchase",
            "project": purchase.project,
            "vendor": purchase.vendor,
            "payment_method": purchase.payment_method,
        })

    if due > 0:
        lines.append({
            "account": purpose_account(company, "payables"),
            "debit": Decimal("0.00"),
            "credit": due,
            "description": "Due to supplier",
            "project": purchase.project,
            "vendor": purchase.vendor,
        })

    try:
        validate_balance(lines)
    except UnbalancedVoucherError as exc:
        raise PurchaseNotBalancedError(
            f"Purchase does not balance after discount: {exc.message}",
            **exc.context) from exc

    vendor_name = purchase.vendor.name if purchase.vendor else "Unknown vendor"
    narration = f"Purchase: {purchase.challan_no or 'N/A'} - {vendor_name}"
    if purchase.reference:
        narration += f" ({purchase.reference})"

    return VoucherDraft(
        date=purchase.date,
        voucher_type="payment" if paid > 0 and due <= 0 else "journal",
        narration=narration,
        project=purchase.project,
        lines=lines,
    )


def ensure_purchase_voucher(purchase, *, user=None):
    """Create (once) the DRAFT voucher of a purchase and link it."""
    with transaction.atomic():
        purchase = Purchase.objects.select_for_update().get(pk=purchase.pk)
        if purchase.voucher_id:
            return Voucher.objects.get(pk=purchase.voucher_id)

        draft = build_voucher_from_purchase(purchase)
        voucher = create_voucher(
            purchase.company,
            date=draft.date,
            lines=draft.lines,
            voucher_type=draft.voucher_type,
            project=draft.project,
            narration=draft.narration,
            user=user,
        )
        purchase.voucher = voucher
        purchase.status = voucher.status
        purchase.save(update_fields=["voucher", "status"])

    logger.info("Purchase %s linked to voucher %s", purchase.pk,
                voucher.voucher_no)
    return voucher
