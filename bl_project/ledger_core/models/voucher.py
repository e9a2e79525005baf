from decimal import ROUND_HALF_UP, Decimal
from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from ..managers import TenantManager
from .account import Account
from .company import Company
from .expense import ExpenseCategory, PaymentMethod
from .project import Project
from .vendor import Vendor

VOUCHER_TYPES = [
    ("journal", "Journal"),
    ("payment", "Payment"),
    ("receipt", "Receipt"),
    ("contra", "Contra"),
]

VOUCHER_STATUS_CHOICES = [
    ("draft", "Draft"),
    ("submitted", "Submitted"),
    ("approved", "Approved"),
    ("posted", "Posted"),
    ("reversed", "Reversed"),
]

# Current state vs. allowed next states.
# No stage is skipped and the only way back from "posted" is a reversal.
ALLOWED_TRANSITIONS = {
    "draft": ["submitted"],
    "submitted": ["approved"],
    "approved": ["posted"],
    "posted": ["reversed"],
    "reversed": [],
}

# Statuses whose lines count in the books.
# A reversed voucher stays in the ledger next to its reversal, so both net out.
LEDGER_STATUSES = ("posted", "reversed")

# Header fields frozen once the voucher leaves draft
FROZEN_FIELDS = ("voucher_no", "date", "voucher_type", "project_id", "narration")


class Voucher(models.Model):  # One double-entry transaction (header)

    company = models.ForeignKey(Company, on_delete=models.CASCADE)

    # "V-2025-000042", unique per company, one sequence per year
    voucher_no = models.CharField(max_length=20)
    date = models.DateField()
    voucher_type = models.CharField(
        max_length=10, choices=VOUCHER_TYPES, default="journal"
    )
    # Track workflow
    status = models.CharField(
        max_length=10, choices=VOUCHER_STATUS_CHOICES, default="draft"
    )
    project = models.ForeignKey(
        Project,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="vouchers",
    )
    narration = models.TextField(blank=True, default="")

    # Set on the counter-voucher created by a reversal
    reversal_of = models.ForeignKey(
        "self",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="reversals",
    )

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="+",
    )
    # Workflow timestamps
    submitted_at = models.DateTimeField(null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    posted_at = models.DateTimeField(null=True, blank=True)
    reversed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "date"], name="vchr_company_date_idx"),
            models.Index(fields=["company", "status"], name="vchr_company_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["company", "voucher_no"], name="uq_company_voucher_no"
            ),
        ]

    def __str__(self):
        return f"{self.voucher_no} ({self.status})"

    @property
    def can_edit(self):
        return can_edit(self.status)

    def can_transition_to(self, new_status):
        return new_status in ALLOWED_TRANSITIONS.get(self.status, [])

    def compute_totals(self):
        """Return (total_debit, total_credit) from persisted lines."""
        agg = self.lines.aggregate(
            total_debit=models.Sum("debit"),
            total_credit=models.Sum("credit"),
        )
        return (
            agg["total_debit"] or Decimal("0.00"),
            agg["total_credit"] or Decimal("0.00"),
        )

    def save(self, *args, **kwargs):
        if self.pk:  # Does this row already exist in DB?
            orig = Voucher.objects.filter(pk=self.pk).first()
            if orig and orig.status != "draft":
                # History is never edited, only reversed
                for field in FROZEN_FIELDS:
                    if getattr(orig, field) != getattr(self, field):
                        raise ValidationError(
                            f"Cannot modify {field} on a {orig.status} voucher."
                        )
                if orig.status == "reversed" and self.status != "reversed":
                    raise ValidationError("A reversed voucher is final.")
                if orig.status == "posted" and self.status not in (
                    "posted",
                    "reversed",
                ):
                    raise ValidationError("Cannot unpost a posted voucher")
        super().save(*args, **kwargs)


def can_edit(status):
    # Only drafts are mutable
    return status == "draft"


class VoucherLine(models.Model):  # Stores Lines ( credits / debits )

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    voucher = models.ForeignKey(
        Voucher, on_delete=models.CASCADE, related_name="lines"
    )
    account = models.ForeignKey(
        Account,
        # history must survive, so accounts with lines can't be deleted
        on_delete=models.PROTECT,
        related_name="voucher_lines",
    )
    debit = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    credit = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    description = models.CharField(max_length=255, blank=True, default="")

    # Optional analysis tags
    project = models.ForeignKey(
        Project,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="voucher_lines",
    )
    vendor = models.ForeignKey(
        Vendor,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="voucher_lines",
    )
    payment_method = models.ForeignKey(
        PaymentMethod,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="voucher_lines",
    )
    expense_category = models.ForeignKey(
        ExpenseCategory,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="voucher_lines",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "account"], name="vl_company_account_idx"),
            models.Index(fields=["company", "vendor"], name="vl_company_vendor_idx"),
            models.Index(fields=["company", "project"], name="vl_company_project_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(debit__gte=0) & models.Q(credit__gte=0),
                name="vl_non_negative_amounts",
            ),
            # exactly one side carries the amount
            models.CheckConstraint(
                condition=(
                    models.Q(debit__gt=0, credit=0)
                    | models.Q(debit=0, credit__gt=0)
                ),
                name="vl_one_sided_amount",
            ),
        ]

    def __str__(self):
        side = f"Dr {self.debit}" if self.debit else f"Cr {self.credit}"
        return f"{self.account.code} {side}"

    def clean(self):
        if self.debit < 0 or self.credit < 0:
            raise ValidationError("Debit and credit must be >= 0")
        if (self.debit > 0) == (self.credit > 0):
            raise ValidationError(
                "A voucher line needs either a debit or a credit amount.")

        # Tenant safety check on every linked record
        for field in ("voucher", "account", "project", "vendor",
                      "payment_method", "expense_category"):
            related = getattr(self, field, None)
            if related is not None and related.company_id != self.company_id:
                raise ValidationError(
                    f"VoucherLine.{field} must belong to the same company.")

    def save(self, *args, **kwargs):
        # copy company_id from the voucher
        if not getattr(self, "company_id", None) and self.voucher_id:
            self.company_id = self.voucher.company_id

        # Lines are frozen with their voucher
        status = (
            Voucher.objects.filter(pk=self.voucher_id)
            .values_list("status", flat=True)
            .first()
        )
        if status and not can_edit(status):
            raise ValidationError(
                f"Cannot modify lines of a {status} voucher.")

        # round to 2 decimal places before assigning
        self.debit = Decimal(self.debit or 0).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP)
        self.credit = Decimal(self.credit or 0).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP)

        self.full_clean()
        return super().save(*args, **kwargs)


class VoucherSequence(models.Model):
    """Counter row serializing voucher-number allocation per company and year."""

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    year = models.PositiveIntegerField()
    last_number = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["company", "year"], name="uq_voucher_sequence_year"
            ),
        ]

    def __str__(self):
        return f"{self.company_id}/{self.year}: {self.last_number}"
