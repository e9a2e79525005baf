import datetime
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, List, Optional
from django.db import transaction
from ..exceptions import ImportBlockedError
from ..models import Account
from .accounts import auto_create_account, is_leaf, resolve_account
from .audit_helper import log_action
from .vouchers import BALANCE_TOLERANCE, create_voucher

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

BLOCKING = "blocking"
WARNING = "warning"

# Tokens like "5010" or "AP-01" are tried as codes first
CODE_LIKE = re.compile(r"^[A-Za-z0-9-]+$")
MAX_CODE_LENGTH = 20

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y")

VOUCHER_TYPE_ALIASES = {
    "journal": "journal", "jv": "journal",
    "payment": "payment", "pv": "payment",
    "receipt": "receipt", "rv": "receipt",
    "contra": "contra", "cv": "contra",
}


@dataclass
class ImportIssue:
    voucher_key: str
    message: str
    severity: str
    row_index: Optional[int] = None
    account_token: str = ""


@dataclass
class ParsedLine:
    row_index: int
    account_token: str
    account: Optional[Account]
    debit: Decimal
    credit: Decimal
    description: str = ""


@dataclass
class ParsedVoucher:
    key: str
    date: Optional[datetime.date]
    reference_no: str
    narration: str
    voucher_type: str
    lines: List[ParsedLine] = field(default_factory=list)
    total_debit: Decimal = Decimal("0.00")
    total_credit: Decimal = Decimal("0.00")
    blocked: bool = False

    @property
    def is_balanced(self):
        return abs(self.total_debit - self.total_credit) < BALANCE_TOLERANCE

    @property
    def has_unresolved_accounts(self):
        return any(line.account is None for line in self.lines)


@dataclass
class ValidationResult:
    vouchers: List[ParsedVoucher]
    total_rows: int
    errors: List[ImportIssue] = field(default_factory=list)
    warnings: List[ImportIssue] = field(default_factory=list)
    unresolved_accounts: List[str] = field(default_factory=list)

    @property
    def total_vouchers(self):
        return len(self.vouchers)

    @property
    def can_commit(self):
        return not self.errors and not any(
            voucher.has_unresolved_accounts for voucher in self.vouchers)


# ----------------------------
# Cell parsing
# ----------------------------
def _cell(row, key):
    value = row.get(key)
    return "" if value is None else str(value).strip()


def parse_date(value):
    """ISO (YYYY-MM-DD[THH:MM...]), DD/MM/YYYY or DD-MM-YYYY; None if invalid."""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    text = "" if value is None else str(value).strip()
    if not text:
        return None
    if "T" in text:
        text = text.split("T", 1)[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value):
    """Amount cell → Decimal; thousands separators dropped, junk reads as 0."""
    if isinstance(value, Decimal):
        amount = value
    else:
        text = "" if value is None else str(value).replace(",", "").strip()
        try:
            amount = Decimal(text) if text else Decimal("0")
        except InvalidOperation:
            return Decimal("0.00")
    if not amount.is_finite():
        return Decimal("0.00")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_voucher_type(value):
    return VOUCHER_TYPE_ALIASES.get(str(value or "").strip().lower(), "journal")


def is_code_like(token):
    return bool(CODE_LIKE.match(token)) and len(token) <= MAX_CODE_LENGTH


# ----------------------------
# Grouping
# ----------------------------
def group_rows_into_vouchers(rows, *, key_column="voucher_key",
                             group_by_date_reference=True):
    """
    Bucket raw rows into vouchers, keeping row order.
    Key priority: explicit voucher key → "<date>_<reference>" → one row
    per voucher ("row_<n>"). Row numbers are 1-based.
    """
    groups = OrderedDict()
    for index, row in enumerate(rows, start=1):
        key = _cell(row, key_column) if key_column else ""
        if not key and group_by_date_reference:
            date, reference = _cell(row, "date"), _cell(row, "reference_no")
            if date and reference:
                key = f"{date}_{reference}"
        if not key:
            key = f"row_{index}"
        groups.setdefault(key, []).append((index, row))
    return groups


# ----------------------------
# Validation
# ----------------------------
class _AccountLookup:
    """Resolves each distinct raw token once per import."""

    def __init__(self, company):
        self.company = company
        self.cache: Dict[str, Optional[Account]] = {}

    def resolve(self, row):
        account_id = _cell(row, "account_id")
        token = _cell(row, "account")
        cache_key = f"id:{account_id}" if account_id else token
        if cache_key not in self.cache:
            if account_id:
                match = resolve_account(self.company, account_id=account_id)
            elif is_code_like(token):
                match = resolve_account(self.company, code=token, name=token)
            else:
                match = resolve_account(self.company, name=token)
            self.cache[cache_key] = match.account
        return self.cache[cache_key], token or account_id


def parse_and_validate_vouchers(company, rows, *, key_column="voucher_key",
                                group_by_date_reference=True):
    """
    Preview an import: every row shows up in exactly one parsed voucher,
    with blocking errors and warnings listed separately.
    """
    rows = list(rows)
    groups = group_rows_into_vouchers(
        rows, key_column=key_column,
        group_by_date_reference=group_by_date_reference)
    lookup = _AccountLookup(company)
    result = ValidationResult(vouchers=[], total_rows=len(rows))

    def report(voucher, message, severity, row_index=None, token=""):
        issue = ImportIssue(voucher.key, message, severity, row_index, token)
        if severity == BLOCKING:
            voucher.blocked = True
            result.errors.append(issue)
        else:
            result.warnings.append(issue)

    for key, grouped in groups.items():
        first = grouped[0][1]
        raw_date = next((_cell(r, "date") for _, r in grouped
                         if _cell(r, "date")), "")
        voucher = ParsedVoucher(
            key=key,
            date=parse_date(raw_date),
            reference_no=_cell(first, "reference_no"),
            narration=next((_cell(r, "narration") for _, r in grouped
                            if _cell(r, "narration")), ""),
            voucher_type=parse_voucher_type(first.get("voucher_type")),
        )
        result.vouchers.append(voucher)

        if voucher.date is None:
            report(voucher, f"Invalid or missing date: {raw_date!r}",
                   BLOCKING)

        for row_index, row in grouped:
            account, token = lookup.resolve(row)
            debit = parse_amount(row.get("debit"))
            credit = parse_amount(row.get("credit"))
            voucher.lines.append(ParsedLine(
                row_index=row_index,
                account_token=token,
                account=account,
                debit=debit,
                credit=credit,
                description=_cell(row, "description"),
            ))
            voucher.total_debit += debit
            voucher.total_credit += credit

            if not token:
                report(voucher, f"Row {row_index}: account is missing",
                       BLOCKING, row_index)
            elif account is None:
                # Kept in the preview; the account can be created later
                report(voucher, f"Row {row_index}: Account not found: "
                       f"{token}", WARNING, row_index, token)
                if token not in result.unresolved_accounts:
                    result.unresolved_accounts.append(token)
            elif not is_leaf(account):
                report(voucher, f"Row {row_index}: account {account.code} "
                       f"is a group account", BLOCKING, row_index)

            if debit < 0 or credit < 0:
                report(voucher, f"Row {row_index}: negative amount",
                       BLOCKING, row_index)
            elif debit > 0 and credit > 0:
                report(voucher, f"Row {row_index}: both debit and credit "
                       f"are set", BLOCKING, row_index)
            elif debit == 0 and credit == 0:
                report(voucher, f"Row {row_index}: no debit or credit "
                       f"amount", BLOCKING, row_index)

        if len(voucher.lines) < 2:
            report(voucher, "Voucher has fewer than 2 lines", BLOCKING)
        elif not voucher.is_balanced:
            difference = abs(voucher.total_debit - voucher.total_credit)
            report(voucher, f"Voucher is not balanced. Debit: "
                   f"{voucher.total_debit}, Credit: {voucher.total_credit}, "
                   f"Difference: {difference}", BLOCKING)

    logger.debug("Parsed %s rows into %s vouchers (%s errors, %s warnings)",
                 result.total_rows, result.total_vouchers,
                 len(result.errors), len(result.warnings))
    return result


# ----------------------------
# Account creation and commit
# ----------------------------
def auto_create_missing_accounts(company, result, names=None):
    """
    Create accounts for unresolved code-like tokens, then point the
    affected lines at them. Name-only tokens stay unresolved: an account
    can't be created without a code.
    """
    names = names or {}
    created = {}
    for token in result.unresolved_accounts:
        if is_code_like(token):
            created[token] = auto_create_account(
                company, token, names.get(token))

    for voucher in result.vouchers:
        for line in voucher.lines:
            if line.account is None and line.account_token in created:
                line.account = created[line.account_token]

    result.unresolved_accounts = [
        token for token in result.unresolved_accounts if token not in created]
    result.warnings = [
        issue for issue in result.warnings
        if issue.account_token not in created
    ]
    return list(created.values())


def commit_import(company, result, *, user=None):
    """
    Turn a clean preview into DRAFT vouchers, all or nothing.
    Refused while any blocking error or unresolved account remains.
    """
    if result.errors:
        raise ImportBlockedError(
            f"Import has {len(result.errors)} blocking error(s)",
            issues=result.errors)
    unresolved = [
        ImportIssue(voucher.key, f"Row {line.row_index}: account "
                    f"{line.account_token} is not resolved", BLOCKING,
                    line.row_index)
        for voucher in result.vouchers for line in voucher.lines
        if line.account is None
    ]
    if unresolved:
        raise ImportBlockedError(
            "Create or map the unresolved accounts before committing",
            issues=unresolved)

    vouchers = []
    with transaction.atomic():
        for parsed in result.vouchers:
            voucher = create_voucher(
                company,
                date=parsed.date,
                voucher_type=parsed.voucher_type,
                narration=parsed.narration or parsed.reference_no,
                lines=[
                    {
                        "account": line.account,
                        "debit": line.debit,
                        "credit": line.credit,
                        "description": line.description,
                    }
                    for line in parsed.lines
                ],
                user=user,
            )
            vouchers.append(voucher)
        if vouchers:
            log_action(action="import", instance=vouchers[0], user=user,
                       changes={"vouchers": len(vouchers),
                                "rows": result.total_rows})

    logger.info("Imported %s vouchers for company %s", len(vouchers),
                company.pk)
    return vouchers
