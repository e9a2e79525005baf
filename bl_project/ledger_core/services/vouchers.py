import datetime
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_date
from ..exceptions import (InsufficientLinesError, InvalidLineAmountError,
                          InvalidTransitionError, LedgerValidationError,
                          UnbalancedVoucherError, VoucherNotEditableError)
from ..models import Account, Purchase, Voucher, VoucherLine, VoucherSequence
from .accounts import assert_postable
from .audit_helper import log_action
from .stock import post_purchase_receipt, reverse_purchase_receipt

logger = logging.getLogger(__name__)

# |Σdebit − Σcredit| must stay below one cent
BALANCE_TOLERANCE = Decimal("0.01")
CENT = Decimal("0.01")

VOUCHER_NO_PREFIX = "V"
VOUCHER_NO_DIGITS = 6

# Optional tags copied from a submitted line onto the VoucherLine
LINE_TAGS = ("project", "vendor", "payment_method", "expense_category")


@dataclass(frozen=True)
class BalanceTotals:
    debit: Decimal
    credit: Decimal

    @property
    def difference(self):
        return abs(self.debit - self.credit)


def to_amount(value):
    """Coerce user input to a 2-place Decimal (never via float arithmetic)."""
    if value in (None, ""):
        return Decimal("0.00")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise LedgerValidationError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _value(line, key):
    # Lines arrive as dicts from callers and as VoucherLine rows on re-checks
    if isinstance(line, dict):
        return line.get(key)
    return getattr(line, key, None)


# ----------------------------
# Balance rule
# ----------------------------
def validate_balance(lines):
    """
    Check the double-entry rule for a line set.
    Raises InsufficientLinesError (< 2 lines) or UnbalancedVoucherError
    (difference of 0.01 or more); returns the totals otherwise.
    """
    lines = list(lines)
    if len(lines) < 2:
        raise InsufficientLinesError(
            "A voucher needs at least 2 lines.", line_count=len(lines))

    debit = sum((to_amount(_value(line, "debit")) for line in lines),
                Decimal("0.00"))
    credit = sum((to_amount(_value(line, "credit")) for line in lines),
                 Decimal("0.00"))
    totals = BalanceTotals(debit=debit, credit=credit)
    if totals.difference >= BALANCE_TOLERANCE:
        raise UnbalancedVoucherError(
            f"Voucher is not balanced. Debit: {debit}, Credit: {credit}, "
            f"Difference: {totals.difference}",
            debit=debit, credit=credit, difference=totals.difference)
    return totals


# ----------------------------
# Voucher numbers
# ----------------------------
def _coerce_date(value):
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    parsed = parse_date(str(value or ""))
    if parsed is None:
        raise LedgerValidationError(f"Invalid voucher date: {value!r}")
    return parsed


def _highest_existing_number(company, prefix):
    # Zero-padded numbers sort correctly as text
    last = (
        Voucher.objects.filter(company=company, voucher_no__startswith=prefix)
        .order_by("-voucher_no")
        .values_list("voucher_no", flat=True)
        .first()
    )
    if not last:
        return 0
    try:
        return int(last[len(prefix):])
    except ValueError:
        return 0


def allocate_voucher_number(company, voucher_date):
    """
    Next "V-YYYY-NNNNNN" number for company + year.
    The per-year counter row is locked until the caller's transaction
    ends, so concurrent allocations queue up instead of colliding.
    """
    voucher_date = _coerce_date(voucher_date)
    year = voucher_date.year
    prefix = f"{VOUCHER_NO_PREFIX}-{year}-"

    with transaction.atomic():
        sequence, _ = VoucherSequence.objects.select_for_update().get_or_create(
            company=company, year=year)
        # Imported vouchers may already use numbers the counter never issued
        next_number = max(sequence.last_number,
                          _highest_existing_number(company, prefix)) + 1
        sequence.last_number = next_number
        sequence.save(update_fields=["last_number"])

    voucher_no = f"{prefix}{next_number:0{VOUCHER_NO_DIGITS}d}"
    logger.debug("Allocated %s for company %s", voucher_no, company.pk)
    return voucher_no


# ----------------------------
# Create / edit drafts
# ----------------------------
def _prepare_lines(company, lines):
    """Validate each submitted line and normalize it to a plain dict."""
    prepared = []
    for index, raw in enumerate(lines, start=1):
        account = raw.get("account")
        if account is None and raw.get("account_id") not in (None, ""):
            account = Account.objects.filter(
                company=company, pk=raw["account_id"]).first()
        assert_postable(account, company, line_index=index)

        debit = to_amount(raw.get("debit"))
        credit = to_amount(raw.get("credit"))
        if debit < 0 or credit < 0:
            raise InvalidLineAmountError(
                f"Line {index}: amounts cannot be negative",
                line_index=index, account_code=account.code)
        if (debit > 0) == (credit > 0):
            raise InvalidLineAmountError(
                f"Line {index}: enter either a debit or a credit amount",
                line_index=index, account_code=account.code)

        line = {
            "account": account,
            "debit": debit,
            "credit": credit,
            "description": raw.get("description") or "",
        }
        for tag in LINE_TAGS:
            line[tag] = raw.get(tag)
        prepared.append(line)
    return prepared


def _write_lines(voucher, prepared):
    for line in prepared:
        VoucherLine.objects.create(
            company=voucher.company, voucher=voucher, **line)


def create_voucher(company, *, date, lines, voucher_type="journal",
                   project=None, narration="", user=None):
    """
    Validate and persist a DRAFT voucher with its lines.
    Every line must hit an active leaf account and the set must balance;
    nothing is written unless all checks pass.
    """
    voucher_date = _coerce_date(date)
    prepared = _prepare_lines(company, lines)
    totals = validate_balance(prepared)

    with transaction.atomic():
        voucher = Voucher.objects.create(
            company=company,
            voucher_no=allocate_voucher_number(company, voucher_date),
            date=voucher_date,
            voucher_type=voucher_type,
            status="draft",
            project=project,
            narration=narration or "",
            created_by=user,
        )
        _write_lines(voucher, prepared)
        log_action(action="create", instance=voucher, user=user,
                   changes={"voucher_no": voucher.voucher_no,
                            "total": totals.debit})

    logger.info("Created voucher %s (%s lines, %s)",
                voucher.voucher_no, len(prepared), totals.debit)
    return voucher


def update_draft_voucher(voucher, *, lines, user=None, **header):
    """Replace header fields and lines of a DRAFT voucher."""
    with transaction.atomic():
        voucher = Voucher.objects.select_for_update().get(pk=voucher.pk)
        if not voucher.can_edit:
            raise VoucherNotEditableError(
                f"Voucher {voucher.voucher_no} is {voucher.status}; "
                f"only draft vouchers can be edited.")

        prepared = _prepare_lines(voucher.company, lines)
        totals = validate_balance(prepared)

        old_year = voucher.date.year
        for field in ("date", "voucher_type", "project", "narration"):
            if field in header:
                setattr(voucher, field, header[field])
        voucher.date = _coerce_date(voucher.date)
        # A number belongs to one year's sequence
        if voucher.date.year != old_year:
            voucher.voucher_no = allocate_voucher_number(
                voucher.company, voucher.date)
        voucher.save()

        voucher.lines.all().delete()
        _write_lines(voucher, prepared)
        log_action(action="update", instance=voucher, user=user,
                   changes={"total": totals.debit, "lines": len(prepared)})
    return voucher


def delete_draft_voucher(voucher, *, user=None):
    with transaction.atomic():
        voucher = Voucher.objects.select_for_update().get(pk=voucher.pk)
        if not voucher.can_edit:
            raise VoucherNotEditableError(
                f"Voucher {voucher.voucher_no} is {voucher.status}; "
                f"reverse it instead of deleting.")
        log_action(action="delete", instance=voucher, user=user,
                   changes={"voucher_no": voucher.voucher_no})
        voucher.delete()  # lines cascade


# ----------------------------
# Status workflow
# ----------------------------
def transition_status(voucher_id, new_status, *, user=None):
    """
    Move a voucher one step along draft → submitted → approved → posted,
    or reverse a posted one.
    Posting and reversal also post/reverse the stock of a linked
    purchase, inside the same transaction.
    """
    # Accept an instance as well as a pk
    voucher_id = getattr(voucher_id, "pk", voucher_id)

    with transaction.atomic():
        # Lock the row to avoid two users posting the same voucher
        voucher = Voucher.objects.select_for_update().get(pk=voucher_id)
        old_status = voucher.status
        if not voucher.can_transition_to(new_status):
            raise InvalidTransitionError(
                f"Cannot go from {old_status} to {new_status}",
                from_status=old_status, to_status=new_status)
        if new_status == "reversed" and voucher.reversal_of_id:
            raise InvalidTransitionError(
                f"{voucher.voucher_no} is itself a reversal and cannot be "
                f"reversed", from_status=old_status, to_status=new_status)

        lines = list(voucher.lines.select_related("account").order_by("id"))
        if new_status in ("submitted", "posted"):
            validate_balance(lines)
        # the reversal posts a counter-voucher onto the same accounts
        if new_status in ("posted", "reversed"):
            for index, line in enumerate(lines, start=1):
                assert_postable(line.account, voucher.company,
                                line_index=index)

        stamp = f"{new_status}_at"
        voucher.status = new_status
        setattr(voucher, stamp, timezone.now())
        voucher.save(update_fields=["status", stamp, "updated_at"])

        reversal = None
        if new_status == "reversed":
            reversal = _create_reversal(voucher, lines, user)

        _sync_linked_purchase(voucher, user)

        log_action(action=new_status, instance=voucher, user=user,
                   changes={"from": old_status, "to": new_status,
                            "reversal": getattr(reversal, "voucher_no", None)})

    logger.info("Voucher %s: %s → %s", voucher.voucher_no, old_status,
                new_status)
    return voucher


def _create_reversal(original, lines, user):
    """Counter-voucher with every debit and credit swapped, posted at once."""
    today = timezone.localdate()
    reversal = Voucher.objects.create(
        company=original.company,
        voucher_no=allocate_voucher_number(original.company, today),
        date=today,
        voucher_type=original.voucher_type,
        status="draft",
        project=original.project,
        narration=f"Reversal of {original.voucher_no}",
        reversal_of=original,
        created_by=user,
    )
    for line in lines:
        VoucherLine.objects.create(
            company=original.company,
            voucher=reversal,
            account=line.account,
            debit=line.credit,
            credit=line.debit,
            description=line.description,
            project=line.project,
            vendor=line.vendor,
            payment_method=line.payment_method,
            expense_category=line.expense_category,
        )
    # Lines are written while draft, then the whole thing is frozen
    reversal.status = "posted"
    reversal.posted_at = timezone.now()
    reversal.save(update_fields=["status", "posted_at", "updated_at"])
    return reversal


def _sync_linked_purchase(voucher, user):
    purchase = Purchase.objects.filter(voucher=voucher).first()
    if purchase is None:
        return

    if voucher.status == "posted":
        post_purchase_receipt(purchase, user=user)
    elif voucher.status == "reversed":
        reverse_purchase_receipt(purchase, user=user)

    purchase.status = voucher.status
    purchase.save(update_fields=["status"])
