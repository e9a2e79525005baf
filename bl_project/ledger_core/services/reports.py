"""
Read models over posted vouchers and purchases.

Nothing here writes; every figure is derived on demand from voucher
lines, purchases and stock movements.
"""
import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional
from django.db.models import Q, Sum
from django.utils import timezone
from ..models import Account, Purchase, Vendor, VoucherLine
from ..models.account import DEBIT_NORMAL_TYPES
from ..models.voucher import LEDGER_STATUSES

ZERO = Decimal("0.00")

# (upper bound in days, bucket); None = no upper bound
AGING_BUCKETS = [
    (30, "d0_30"),
    (60, "d31_60"),
    (90, "d61_90"),
    (None, "d90_plus"),
]


@dataclass
class LedgerLine:
    date: datetime.date
    voucher_no: str
    voucher_id: int
    description: str
    debit: Decimal
    credit: Decimal
    balance: Decimal


@dataclass
class LedgerStatement:
    opening_balance: Decimal
    lines: List[LedgerLine]
    closing_balance: Decimal
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO


@dataclass
class PayablesAging:
    buckets: Dict[str, Decimal]
    total_due: Decimal = ZERO
    total_paid: Decimal = ZERO
    total_billed: Decimal = ZERO
    last_invoice_date: Optional[datetime.date] = None


@dataclass
class VendorAgingRow:
    vendor: Vendor
    aging: PayablesAging


@dataclass
class PayablesSummary:
    rows: List[VendorAgingRow]
    totals: PayablesAging


@dataclass
class CostCategory:
    key: str
    name: str
    amount: Decimal


@dataclass
class CostSummary:
    by_category: List[CostCategory]
    grand_total: Decimal
    allocated_overhead: Optional[Decimal] = None


@dataclass
class TrialBalanceRow:
    account: Account
    debit: Decimal
    credit: Decimal


@dataclass
class TrialBalance:
    rows: List[TrialBalanceRow] = field(default_factory=list)
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO


def empty_buckets():
    return {name: ZERO for _, name in AGING_BUCKETS}


def aging_bucket(age_days):
    for limit, name in AGING_BUCKETS:
        if limit is None or age_days <= limit:
            return name


def signed_amount(ac_type, debit, credit):
    # debit-positive for assets/expenses, credit-positive otherwise
    if ac_type in DEBIT_NORMAL_TYPES:
        return debit - credit
    return credit - debit


# ----------------------------
# Running balances
# ----------------------------
def _statement(lines, sign, date_from, date_to):
    """Opening balance before date_from, then one running row per line."""
    opening = ZERO
    if date_from:
        agg = lines.filter(voucher__date__lt=date_from).aggregate(
            debit=Sum("debit"), credit=Sum("credit"))
        opening = sign(agg["debit"] or ZERO, agg["credit"] or ZERO)
        lines = lines.filter(voucher__date__gte=date_from)
    if date_to:
        lines = lines.filter(voucher__date__lte=date_to)

    running = opening
    total_debit = total_credit = ZERO
    rows = []
    for line in lines.select_related("voucher").order_by(
            "voucher__date", "voucher__voucher_no", "id"):
        running += sign(line.debit, line.credit)
        total_debit += line.debit
        total_credit += line.credit
        rows.append(LedgerLine(
            date=line.voucher.date,
            voucher_no=line.voucher.voucher_no,
            voucher_id=line.voucher_id,
            description=line.description or line.voucher.narration,
            debit=line.debit,
            credit=line.credit,
            balance=running,
        ))
    return LedgerStatement(opening_balance=opening, lines=rows,
                           closing_balance=running, total_debit=total_debit,
                           total_credit=total_credit)


def account_running_balance(account, date_from=None, date_to=None):
    """Posted lines of one account, oldest first, with a running balance."""
    lines = VoucherLine.objects.filter(
        company=account.company,
        account=account,
        voucher__status__in=LEDGER_STATUSES,
    )
    return _statement(
        lines,
        lambda debit, credit: signed_amount(account.ac_type, debit, credit),
        date_from, date_to)


def vendor_ledger(vendor, date_from=None, date_to=None):
    """What we owe a vendor: vendor-tagged payable lines, credit-positive."""
    lines = VoucherLine.objects.filter(
        company=vendor.company,
        vendor=vendor,
        account__ac_type="liability",
        voucher__status__in=LEDGER_STATUSES,
    )
    return _statement(lines, lambda debit, credit: credit - debit,
                      date_from, date_to)


# ----------------------------
# Payables aging
# ----------------------------
def _age_purchases(purchases, as_of):
    aging = PayablesAging(buckets=empty_buckets())
    for purchase in purchases:
        aging.total_billed += purchase.total
        aging.total_paid += purchase.paid_amount
        if aging.last_invoice_date is None or purchase.date > aging.last_invoice_date:
            aging.last_invoice_date = purchase.date
        # Settled (or overpaid) purchases are not "due"
        due = max(purchase.due_amount, ZERO)
        if due <= 0:
            continue
        bucket = aging_bucket((as_of - purchase.date).days)
        aging.buckets[bucket] += due
        aging.total_due += due
    return aging


def _open_purchases(company, as_of):
    return (
        Purchase.objects.filter(company=company, date__lte=as_of)
        .exclude(status="reversed")
        .order_by("date", "id")
    )


def vendor_payables_aging(vendor, as_of=None):
    """Outstanding amounts owed to `vendor`, bucketed by invoice age."""
    as_of = as_of or timezone.localdate()
    purchases = _open_purchases(vendor.company, as_of).filter(vendor=vendor)
    return _age_purchases(purchases, as_of)


def payables_aging_summary(company, as_of=None):
    as_of = as_of or timezone.localdate()
    rows = []
    totals = PayablesAging(buckets=empty_buckets())
    vendors = Vendor.objects.for_company(company).filter(
        purchases__isnull=False).distinct().order_by("name")
    for vendor in vendors:
        aging = vendor_payables_aging(vendor, as_of)
        rows.append(VendorAgingRow(vendor=vendor, aging=aging))
        for name, amount in aging.buckets.items():
            totals.buckets[name] += amount
        totals.total_due += aging.total_due
        totals.total_paid += aging.total_paid
        totals.total_billed += aging.total_billed
    return PayablesSummary(rows=rows, totals=totals)


# ----------------------------
# Project cost summary
# ----------------------------
def project_cost_summary(project, *, date_from=None, date_to=None,
                         vendor=None, payment_method=None, category=None,
                         allocated_overhead=None):
    """
    Expense-account postings of a project grouped by expense category
    (falling back to the expense account). Purchases arrive through
    their vouchers, so each cost is counted once.
    """
    lines = VoucherLine.objects.filter(
        company=project.company,
        voucher__status__in=LEDGER_STATUSES,
        account__ac_type="expense",
    ).filter(
        # untagged lines inherit the voucher's project
        Q(project=project) | Q(project__isnull=True, voucher__project=project)
    )
    if date_from:
        lines = lines.filter(voucher__date__gte=date_from)
    if date_to:
        lines = lines.filter(voucher__date__lte=date_to)
    if vendor:
        lines = lines.filter(voucher_id__in=VoucherLine.objects.filter(
            vendor=vendor).values("voucher_id"))
    if payment_method:
        lines = lines.filter(voucher_id__in=VoucherLine.objects.filter(
            payment_method=payment_method).values("voucher_id"))
    if category:
        lines = lines.filter(expense_category=category)

    grouped = {}
    for row in lines.values(
            "expense_category_id", "expense_category__name",
            "account_id", "account__name").annotate(
            debit=Sum("debit"), credit=Sum("credit")):
        if row["expense_category_id"]:
            key = f"category:{row['expense_category_id']}"
            name = row["expense_category__name"]
        else:
            key = f"account:{row['account_id']}"
            name = row["account__name"]
        entry = grouped.setdefault(key, CostCategory(key, name, ZERO))
        entry.amount += (row["debit"] or ZERO) - (row["credit"] or ZERO)

    by_category = sorted(
        (entry for entry in grouped.values() if entry.amount),
        key=lambda entry: (-entry.amount, entry.name))
    grand_total = sum((entry.amount for entry in by_category), ZERO)
    if allocated_overhead is not None:
        allocated_overhead = Decimal(allocated_overhead)
        grand_total += allocated_overhead
    return CostSummary(by_category=by_category, grand_total=grand_total,
                       allocated_overhead=allocated_overhead)


# ----------------------------
# Trial balance
# ----------------------------
def trial_balance(company, as_of=None):
    lines = VoucherLine.objects.filter(
        company=company, voucher__status__in=LEDGER_STATUSES)
    if as_of:
        lines = lines.filter(voucher__date__lte=as_of)
    sums = {
        row["account_id"]: row
        for row in lines.values("account_id").annotate(
            debit=Sum("debit"), credit=Sum("credit"))
    }

    report = TrialBalance()
    for account in Account.objects.filter(pk__in=list(sums)).order_by("code"):
        net = (sums[account.pk]["debit"] or ZERO) - (sums[account.pk]["credit"] or ZERO)
        if not net:
            continue
        row = TrialBalanceRow(
            account=account,
            debit=net if net > 0 else ZERO,
            credit=-net if net < 0 else ZERO,
        )
        report.rows.append(row)
        report.total_debit += row.debit
        report.total_credit += row.credit
    return report
