from django.core.exceptions import ValidationError
from django.db import models
from ..managers import TenantManager
from .account import Account
from .company import Company

PAYMENT_METHOD_TYPES = [
    ("cash", "Cash"),
    ("bank", "Bank"),
    ("mobile", "Mobile Wallet"),
    ("cheque", "Cheque"),
]


# ---------- Payment methods (how money leaves the company) ----------
class PaymentMethod(models.Model):

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    name = models.CharField(max_length=100)
    method_type = models.CharField(
        max_length=10, choices=PAYMENT_METHOD_TYPES, default="cash"
    )
    # Ledger account credited when this method pays a purchase
    account = models.ForeignKey(
        Account,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="payment_methods",
    )
    is_active = models.BooleanField(default=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["company", "name"], name="uq_company_payment_method"
            ),
        ]

    def __str__(self):
        return self.name

    def clean(self):
        # Can't pay Company A's purchases from Company B's bank
        if self.account and self.account.company_id != self.company_id:
            raise ValidationError(
                "Payment account must belong to the same company.")

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)


# ---------- Expense categories (cost summary grouping) ----------
class ExpenseCategory(models.Model):

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    name = models.CharField(max_length=100)
    is_active = models.BooleanField(default=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        verbose_name_plural = "expense categories"
        constraints = [
            models.UniqueConstraint(
                fields=["company", "name"], name="uq_company_expense_category"
            ),
        ]

    def __str__(self):
        return self.name
