from decimal import ROUND_HALF_UP, Decimal
from django.core.exceptions import ValidationError
from django.db import models
from ..managers import TenantManager
from .account import Account
from .company import Company
from .expense import PaymentMethod
from .project import Project
from .stock import StockItem
from .vendor import Vendor
from .voucher import VOUCHER_STATUS_CHOICES, Voucher

# Purchase status mirrors the status of its voucher
PURCHASE_STATUS_CHOICES = VOUCHER_STATUS_CHOICES

LINE_TYPES = [
    ("material", "Material"),  # stocked, goes through inventory
    ("service", "Service"),  # labor / subcontract work
    ("other", "Other"),  # site overhead, transport, misc
]

CENT = Decimal("0.01")


# ---------- Purchases / PurchaseLines ----------

# Header represents a supplier challan (goods received / work billed)
class Purchase(models.Model):

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    project = models.ForeignKey(
        Project,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="purchases",
    )
    vendor = models.ForeignKey(
        Vendor,
        null=True,
        blank=True,
        # prevent deleting a supplier who has purchases
        on_delete=models.PROTECT,
        related_name="purchases",
    )
    date = models.DateField()  # challan / invoice date, drives aging
    challan_no = models.CharField(max_length=64, blank=True, default="")
    reference = models.CharField(max_length=200, blank=True, default="")

    discount_percent = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal("0.00")
    )
    subtotal = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    total = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    paid_amount = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    due_amount = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )

    # Cash/bank account credited for paid_amount
    payment_account = models.ForeignKey(
        Account,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="+",
    )
    payment_method = models.ForeignKey(
        PaymentMethod,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="purchases",
    )

    # Accounting voucher generated for this purchase
    voucher = models.OneToOneField(
        Voucher,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="purchase",
    )
    status = models.CharField(
        max_length=10, choices=PURCHASE_STATUS_CHOICES, default="draft"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "vendor"], name="pu_company_vendor_idx"),
            models.Index(fields=["company", "project"], name="pu_company_project_idx"),
            models.Index(fields=["company", "date"], name="pu_company_date_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(discount_percent__gte=0)
                    & models.Q(discount_percent__lte=100)
                ),
                name="pu_discount_percent_range",
            ),
            models.CheckConstraint(
                condition=models.Q(paid_amount__gte=0),
                name="pu_paid_non_negative",
            ),
        ]

    def __str__(self):
        return f"Purchase: {self.challan_no or self.pk}"

    def recalc_totals(self, paid_amount=None):
        """ Recompute subtotal/total/due from lines and the discount """
        if paid_amount is not None:
            self.paid_amount = Decimal(paid_amount)
        subtotal = sum(
            (line.line_total for line in self.lines.all()), Decimal("0.00"))
        discount = subtotal * self.discount_percent / Decimal("100")
        self.subtotal = subtotal
        self.total = (subtotal - discount).quantize(CENT, rounding=ROUND_HALF_UP)
        # Overpayment shows up as a negative due, aging clamps it at 0
        self.due_amount = self.total - self.paid_amount

    def clean(self):
        for field in ("project", "vendor", "payment_account", "payment_method"):
            related = getattr(self, field, None)
            if related is not None and related.company_id != self.company_id:
                raise ValidationError(
                    f"Purchase.{field} must belong to the same company.")


class PurchaseLine(models.Model):  # One material / service / other line

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    purchase = models.ForeignKey(
        Purchase, on_delete=models.CASCADE, related_name="lines"
    )
    line_type = models.CharField(
        max_length=10, choices=LINE_TYPES, default="material"
    )
    # Stock item received (material lines)
    stock_item = models.ForeignKey(
        StockItem,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="purchase_lines",
    )
    # Free-text name when the material is not linked to a stock item yet
    material_name = models.CharField(max_length=200, blank=True, default="")
    description = models.CharField(max_length=255, blank=True, default="")

    # Pricing fields: quantity × unit_rate = line_total
    quantity = models.DecimalField(
        max_digits=18, decimal_places=3, default=Decimal("0")
    )
    unit = models.CharField(max_length=32, blank=True, default="")
    unit_rate = models.DecimalField(
        max_digits=18, decimal_places=4, default=Decimal("0")
    )
    line_total = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "purchase"],
                         name="pl_company_purchase_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity__gte=0) & models.Q(unit_rate__gte=0),
                name="pl_non_negative_amounts",
            ),
        ]

    def __str__(self):
        return f"{self.get_line_type_display()}: {self.item_name}"

    @property
    def item_name(self):
        if self.stock_item_id:
            return self.stock_item.name
        return self.material_name or self.description

    def save(self, *args, **kwargs):
        # copy company_id from the purchase
        if not getattr(self, "company_id", None) and self.purchase_id:
            self.company_id = self.purchase.company_id
        # Lump-sum lines (labor contracts) carry only a line_total
        if not self.line_total:
            self.line_total = (
                Decimal(self.quantity or 0) * Decimal(self.unit_rate or 0)
            ).quantize(CENT, rounding=ROUND_HALF_UP)
        if self.stock_item_id and self.stock_item.company_id != self.company_id:
            raise ValidationError(
                "PurchaseLine.stock_item must belong to the same company.")
        return super().save(*args, **kwargs)
