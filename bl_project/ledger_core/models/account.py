from django.core.exceptions import ValidationError
from django.db import models
from ..managers import TenantManager
from .company import Company

# Choice Lists
AC_TYPES = [
    # Used in Account model to classify general ledger accounts
    ("asset", "Asset"),
    ("liability", "Liability"),
    ("equity", "Equity"),
    ("income", "Income"),
    ("expense", "Expense"),
]

# Types whose balance grows on the debit side.
# Liabilities, equity and income grow on the credit side.
DEBIT_NORMAL_TYPES = ("asset", "expense")


class Account(models.Model):
    """
    Actual ledger account entry in Chart of Accounts.
    - code should be unique per company
    - ac_type: determines reporting -BS vs P&L
    - an account with children is a group account and never takes postings
    """

    company = models.ForeignKey(  # Each account belongs to one company
        Company,  # All reports must filter by company_id to prevent data leaks
        on_delete=models.CASCADE,
    )
    # Every account has a code ("1010", "5020")
    # which lets you sort/group accounts consistently in reports.
    code = models.CharField(max_length=32)
    name = models.CharField(max_length=200)  # "Cash", "Direct Labor"

    # Classify account into one of the 5 basic accounting types
    ac_type = models.CharField(max_length=10, choices=AC_TYPES)

    # Optional hierarchy:
    # (e.g. 5000 Project Costs → 5010 Direct Materials, 5020 Direct Labor)
    parent = models.ForeignKey(
        "self",
        null=True,
        blank=True,
        on_delete=models.PROTECT,  # you can't delete a parent if children exist
        related_name="children",
    )
    # Created by company setup (1010 Cash, 2010 Accounts Payable, ...)
    is_system = models.BooleanField(default=False)
    # "soft deactivate" accounts (stop new postings) without deleting history
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            # For reports grouped by ac_type (Trial Balance, cost summary)
            models.Index(fields=["company", "ac_type"], name="acct_company_type_idx"),
            models.Index(fields=["company", "parent"],
                         name="acct_company_parent_idx"),  # Sub-accounts
        ]

        """ Each company defines its own chart of accounts.
               Codes repeat across companies but must be unique within one. """
        constraints = [
            models.UniqueConstraint(
                fields=["company", "code"], name="uq_company_account_code"
            )
        ]

    def __str__(self):
        return f"{self.code} – {self.name}"

    @property
    def normal_balance(self):
        return "debit" if self.ac_type in DEBIT_NORMAL_TYPES else "credit"

    @property
    def is_leaf(self):
        # Only accounts without children may receive voucher lines
        if not self.pk:
            return True
        return not Account.objects.filter(parent_id=self.pk).exists()

    def clean(self):
        """Enforce company consistency (multi-tenancy)"""
        if self.parent_id:
            if self.parent_id == self.pk:
                raise ValidationError("An account cannot be its own parent.")
            # Check if parent account belongs to same company
            if self.parent.company_id != self.company_id:
                raise ValidationError(
                    "Parent & child accounts must belong to the same company"
                )

    def save(self, *args, **kwargs):
        # Deactivation is allowed even for used accounts (history stays);
        # only the hierarchy rules are checked here
        self.clean()
        return super().save(*args, **kwargs)
