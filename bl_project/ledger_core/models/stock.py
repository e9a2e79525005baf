from decimal import Decimal
from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from ..managers import TenantManager
from .company import Company
from .project import Project
from .vendor import Vendor

MOVEMENT_TYPES = [
    ("in", "In"),
    ("out", "Out"),
    ("adjust", "Adjust"),  # signed quantity delta
    ("wastage", "Wastage"),
]

# Movement types that take stock out of the store
ISSUE_TYPES = ("out", "wastage")

# reference_type values written by the engine
PURCHASE_VOUCHER = "PURCHASE_VOUCHER"
PURCHASE_REVERSAL = "PURCHASE_REVERSAL"
OPENING_STOCK = "OPENING_STOCK"

DEFAULT_UNIT = "Piece"


def normalize_item_name(name):
    # "  Portland   Cement " → "portland cement"
    return " ".join((name or "").split()).lower()


# ---------- Stock items (materials kept in the site store) ----------
class StockItem(models.Model):

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    name = models.CharField(max_length=200)
    # Lookup key: trimmed, whitespace-collapsed, lower-cased name
    normalized_name = models.CharField(max_length=200, editable=False)
    unit = models.CharField(max_length=32, default=DEFAULT_UNIT)
    category = models.CharField(max_length=100, blank=True, default="")
    # Quantity below which the item is flagged for re-ordering
    reorder_level = models.DecimalField(
        max_digits=18, decimal_places=3, null=True, blank=True
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        constraints = [
            # "Cement" and " cement " are the same material
            models.UniqueConstraint(
                fields=["company", "normalized_name"],
                name="uq_company_stock_item_name",
            ),
        ]

    def __str__(self):
        return self.name

    def save(self, *args, **kwargs):
        self.name = " ".join((self.name or "").split())
        if not self.name:
            raise ValidationError("Stock item name is required.")
        self.normalized_name = normalize_item_name(self.name)
        return super().save(*args, **kwargs)


# ---------- Materialized balance per item ----------
class StockBalance(models.Model):
    """
    Cached on-hand quantity and weighted-average cost.
    The movement journal is the source of truth, this row can always
    be rebuilt from it.
    """

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    stock_item = models.OneToOneField(
        StockItem, on_delete=models.CASCADE, related_name="balance"
    )
    on_hand_qty = models.DecimalField(
        max_digits=18, decimal_places=3, default=Decimal("0")
    )
    avg_cost = models.DecimalField(
        max_digits=20, decimal_places=6, default=Decimal("0")
    )
    updated_at = models.DateTimeField(auto_now=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(avg_cost__gte=0),
                name="sb_avg_cost_non_negative",
            ),
        ]

    def __str__(self):
        return f"{self.stock_item}: {self.on_hand_qty} @ {self.avg_cost}"

    @property
    def stock_value(self):
        return self.on_hand_qty * self.avg_cost


# ---------- Append-only movement journal ----------
class StockMovement(models.Model):

    company = models.ForeignKey(Company, on_delete=models.CASCADE)
    stock_item = models.ForeignKey(
        StockItem, on_delete=models.PROTECT, related_name="movements"
    )
    movement_date = models.DateField()
    movement_type = models.CharField(max_length=10, choices=MOVEMENT_TYPES)
    # Positive for in/out/wastage, signed for adjust
    qty = models.DecimalField(max_digits=18, decimal_places=3)
    # Receipt cost for inbound rows, average cost at issue for outbound rows
    unit_cost = models.DecimalField(
        max_digits=20, decimal_places=6, null=True, blank=True
    )

    # What caused the movement (PURCHASE_VOUCHER + "12:40", ...)
    reference_type = models.CharField(max_length=40, blank=True, default="")
    reference_id = models.CharField(max_length=64, blank=True, default="")

    project = models.ForeignKey(
        Project,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="stock_movements",
    )
    vendor = models.ForeignKey(
        Vendor,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="stock_movements",
    )
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="+",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        indexes = [
            models.Index(fields=["company", "stock_item", "movement_date"],
                         name="sm_company_item_date_idx"),
            models.Index(fields=["company", "reference_type", "reference_id"],
                         name="sm_company_reference_idx"),
        ]
        constraints = [
            # Idempotency key: the same reference never posts twice
            models.UniqueConstraint(
                fields=["company", "stock_item", "movement_type",
                        "reference_type", "reference_id"],
                condition=~models.Q(reference_id=""),
                name="uq_stock_movement_reference",
            ),
        ]

    def __str__(self):
        return f"{self.movement_type} {self.qty} × {self.stock_item}"

    def save(self, *args, **kwargs):
        # Corrections are new movements, never edits
        if not self._state.adding:
            raise ValidationError("Stock movements are append-only.")
        return super().save(*args, **kwargs)
