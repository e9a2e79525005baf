import logging
from dataclasses import dataclass
from typing import Optional
from django.core.exceptions import ValidationError
from django.db import transaction
from ..exceptions import AccountInactiveOrMissingError, AccountNotLeafError
from ..models import Account

logger = logging.getLogger(__name__)

# First digit of an account code → account type
ACCOUNT_TYPE_BY_CODE_PREFIX = {
    "1": "asset",
    "2": "liability",
    "3": "equity",
    "4": "income",
    "5": "expense",
    "6": "expense",
}
DEFAULT_ACCOUNT_TYPE = "expense"

# Standard construction chart every company starts with
SYSTEM_ACCOUNTS = [
    ("1010", "Cash", "asset"),
    ("1020", "Bank - Main Account", "asset"),
    ("1030", "Accounts Receivable", "asset"),
    ("1040", "Inventory", "asset"),
    ("2010", "Accounts Payable", "liability"),
    ("3010", "Owner Equity", "equity"),
    ("3020", "Capital", "equity"),
    ("4010", "Sales Revenue", "income"),
    ("5010", "Direct Materials", "expense"),
    ("5020", "Direct Labor", "expense"),
    ("5030", "Site Overhead", "expense"),
    ("5090", "Miscellaneous Expenses", "expense"),
]

# How resolve_account found its match
MATCHED_BY_ID = "id"
MATCHED_BY_CODE = "code"
MATCHED_BY_NAME = "name"
MATCHED_BY_NAME_INSENSITIVE = "name_insensitive"
MATCHED_BY_NONE = "none"


@dataclass(frozen=True)
class AccountMatch:
    account: Optional[Account]
    matched_by: str

    @property
    def found(self):
        return self.account is not None


def normalize_code(code):
    # " 1010 " → "1010"
    return " ".join(str(code or "").split())


def account_type_from_code(code):
    prefix = normalize_code(code)[:1]
    return ACCOUNT_TYPE_BY_CODE_PREFIX.get(prefix, DEFAULT_ACCOUNT_TYPE)


def resolve_account(company, *, account_id=None, code=None, name=None):
    """
    Find an active account of `company`.
    Priority: id → code → exact name → case-insensitive name.
    Returns AccountMatch(None, "none") when nothing matches; the caller
    decides whether an account should be created.
    """
    accounts = Account.objects.active(company)

    if account_id not in (None, ""):
        try:
            account = accounts.filter(pk=int(account_id)).first()
        except (TypeError, ValueError):
            account = None
        if account:
            return AccountMatch(account, MATCHED_BY_ID)

    normalized = normalize_code(code)
    if normalized:
        account = accounts.filter(code=normalized).first()
        if account:
            return AccountMatch(account, MATCHED_BY_CODE)

    name = (name or "").strip()
    if name:
        account = accounts.filter(name=name).order_by("code").first()
        if account:
            return AccountMatch(account, MATCHED_BY_NAME)
        account = accounts.filter(name__iexact=name).order_by("code").first()
        if account:
            return AccountMatch(account, MATCHED_BY_NAME_INSENSITIVE)

    return AccountMatch(None, MATCHED_BY_NONE)


def is_leaf(account):
    """True iff the account has no child accounts. Accepts an Account or a pk."""
    pk = getattr(account, "pk", account)
    return not Account.objects.filter(parent_id=pk).exists()


def assert_postable(account, company, *, line_index=None):
    """Every posting path goes through here before accepting a line."""
    code = getattr(account, "code", None)
    where = f"Line {line_index}: " if line_index else ""
    if account is None or account.company_id != company.pk:
        raise AccountInactiveOrMissingError(
            f"{where}account not found", line_index=line_index,
            account_code=code)
    if not account.is_active:
        raise AccountInactiveOrMissingError(
            f"{where}account {code} is inactive", line_index=line_index,
            account_code=code)
    if not is_leaf(account):
        raise AccountNotLeafError(
            f"{where}account {code} is a group account; post to one of "
            f"its sub-accounts", line_index=line_index, account_code=code)
    return account


def auto_create_account(company, code, name=None):
    """
    Insert-or-fetch an account by (company, code).
    Used by the bulk importer only; the type comes from the code prefix.
    """
    code = normalize_code(code)
    if not code:
        raise ValidationError("Account code is required.")

    # get_or_create leans on the (company, code) unique constraint, so two
    # importers racing for the same code end up with one row
    account, created = Account.objects.get_or_create(
        company=company,
        code=code,
        defaults={
            "name": (name or "").strip() or code,
            "ac_type": account_type_from_code(code),
        },
    )
    if created:
        logger.info("Auto-created account %s (%s) for company %s",
                    account.code, account.ac_type, company.pk)
    return account


@transaction.atomic
def ensure_system_accounts(company):
    """Create the standard chart for `company`; safe to run repeatedly."""
    accounts = []
    for code, name, ac_type in SYSTEM_ACCOUNTS:
        account, created = Account.objects.get_or_create(
            company=company,
            code=code,
            defaults={"name": name, "ac_type": ac_type, "is_system": True},
        )
        if not created and not account.is_system:
            # A user-made account with a system code becomes the system one
            account.is_system = True
            account.save(update_fields=["is_system"])
        accounts.append(account)
    return accounts
