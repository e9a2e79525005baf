import datetime
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_date
from ..exceptions import (InsufficientStockError, InvalidQuantityError,
                          OpeningStockError)
from ..models import StockBalance, StockItem, StockMovement
from ..models.stock import (DEFAULT_UNIT, ISSUE_TYPES, OPENING_STOCK,
                            PURCHASE_REVERSAL, PURCHASE_VOUCHER,
                            normalize_item_name)

logger = logging.getLogger(__name__)

QTY = Decimal("0.001")
COST = Decimal("0.000001")
ZERO = Decimal("0")


@dataclass
class StockAdjustment:
    movement: StockMovement
    balance: StockBalance
    # True when the idempotency key already existed: nothing was written
    duplicate: bool = False


@dataclass
class ReceiptResult:
    movements_created: int = 0
    lines_skipped: int = 0


@dataclass
class ReversalResult:
    movements_reversed: int = 0


@dataclass
class OpeningStockResult:
    movements_created: int = 0
    items_created: int = 0
    movements: List[StockMovement] = field(default_factory=list)


@dataclass
class StockLedgerRow:
    movement: StockMovement
    qty_in: Decimal
    qty_out: Decimal
    running_qty: Decimal


def _to_decimal(value, quant):
    if isinstance(value, Decimal):
        number = value
    else:
        try:
            number = Decimal(str(value).replace(",", "").strip())
        except (InvalidOperation, ValueError):
            raise InvalidQuantityError(f"Invalid number: {value!r}")
    if not number.is_finite():
        raise InvalidQuantityError(f"Invalid number: {value!r}")
    return number.quantize(quant, rounding=ROUND_HALF_UP)


# ----------------------------
# Weighted-average arithmetic
# ----------------------------
def is_inbound(movement_type, qty):
    return movement_type == "in" or (movement_type == "adjust" and qty > 0)


def apply_movement(on_hand, avg_cost, movement_type, qty, unit_cost=None):
    """
    Pure costing step: (on_hand, avg_cost) after one movement.

    Receipts re-weight the average; issues only reduce quantity.
    A receipt without a unit cost comes in at the current average.
    """
    if is_inbound(movement_type, qty):
        new_qty = on_hand + qty
        if unit_cost is None:
            return new_qty, avg_cost
        if new_qty <= 0:
            return new_qty, ZERO
        new_avg = (on_hand * avg_cost + qty * unit_cost) / new_qty
        # an oversold balance can push the mix below zero; avg_cost >= 0
        new_avg = max(new_avg, ZERO)
        return new_qty, new_avg.quantize(COST, rounding=ROUND_HALF_UP)

    # out / wastage / negative adjust
    return on_hand - abs(qty), avg_cost


def replay_movements(movements):
    """Rebuild (on_hand, avg_cost) from journal rows in insertion order."""
    on_hand, avg_cost = ZERO, ZERO
    for movement in movements:
        unit_cost = (movement.unit_cost
                     if is_inbound(movement.movement_type, movement.qty)
                     else None)
        on_hand, avg_cost = apply_movement(
            on_hand, avg_cost, movement.movement_type, movement.qty, unit_cost)
    return on_hand, avg_cost


# ----------------------------
# The single mutation entry point
# ----------------------------
def _locked_balance(company, stock_item):
    balance, _ = StockBalance.objects.get_or_create(
        company=company, stock_item=stock_item)
    # Read-modify-write happens under this row lock
    return StockBalance.objects.select_for_update().get(pk=balance.pk)


def _existing_movement(company, stock_item, movement_type, reference_type,
                      reference_id):
    if not reference_id:
        return None
    return StockMovement.objects.filter(
        company=company,
        stock_item=stock_item,
        movement_type=movement_type,
        reference_type=reference_type or "",
        reference_id=str(reference_id),
    ).first()


def adjust_stock(company, stock_item, movement_type, qty, *, unit_cost=None,
                 reference_type="", reference_id="", movement_date=None,
                 project=None, vendor=None, notes="", user=None):
    """
    Record one stock movement and update the item's balance.

    - in: average re-weighted with unit_cost, quantity up
    - out / wastage: quantity down, average unchanged
    - adjust: signed delta; positive with a cost behaves like "in",
      negative behaves like "out"

    When reference_id is given, (item, type, reference_type, reference_id)
    is an idempotency key: a repeat call returns the existing movement
    with duplicate=True and touches nothing.
    """
    qty = _to_decimal(qty, QTY)
    if movement_type in ("in", "out", "wastage"):
        if qty <= 0:
            raise InvalidQuantityError(
                f"Quantity must be greater than zero (got {qty})")
    elif movement_type == "adjust":
        if qty == 0:
            raise InvalidQuantityError("Adjustment quantity cannot be zero")
    else:
        raise ValidationError(f"Unknown movement type: {movement_type}")

    if unit_cost is not None:
        unit_cost = _to_decimal(unit_cost, COST)
        if unit_cost < 0:
            raise InvalidQuantityError("Unit cost cannot be negative")

    if stock_item.company_id != company.pk:
        raise ValidationError("Stock item must belong to the same company.")

    reference_id = "" if reference_id is None else str(reference_id)
    reference_type = reference_type or ""

    with transaction.atomic():
        balance = _locked_balance(company, stock_item)

        existing = _existing_movement(company, stock_item, movement_type,
                                      reference_type, reference_id)
        if existing:
            logger.debug("Skipping duplicate %s movement %s:%s for %s",
                         movement_type, reference_type, reference_id,
                         stock_item)
            return StockAdjustment(existing, balance, duplicate=True)

        inbound = is_inbound(movement_type, qty)
        new_qty, new_avg = apply_movement(
            balance.on_hand_qty, balance.avg_cost, movement_type, qty,
            unit_cost if inbound else None)

        movement = StockMovement.objects.create(
            company=company,
            stock_item=stock_item,
            movement_date=movement_date or timezone.localdate(),
            movement_type=movement_type,
            qty=qty,
            # issues are valued at the average they left the store with
            unit_cost=unit_cost if inbound else balance.avg_cost,
            reference_type=reference_type,
            reference_id=reference_id,
            project=project,
            vendor=vendor,
            notes=notes or "",
            created_by=user,
        )

        balance.on_hand_qty = new_qty
        balance.avg_cost = new_avg
        balance.save(update_fields=["on_hand_qty", "avg_cost", "updated_at"])

    return StockAdjustment(movement, balance)


def _issue(company, stock_item, movement_type, qty, **kwargs):
    qty = _to_decimal(qty, QTY)
    with transaction.atomic():
        balance = _locked_balance(company, stock_item)
        # a retried issue is a no-op, even if stock has since run low
        existing = _existing_movement(
            company, stock_item, movement_type,
            kwargs.get("reference_type"), kwargs.get("reference_id"))
        if existing:
            return StockAdjustment(existing, balance, duplicate=True)
        if qty > balance.on_hand_qty:
            raise InsufficientStockError(
                f"Only {balance.on_hand_qty} {stock_item.unit} of "
                f"{stock_item.name} on hand, cannot issue {qty}",
                on_hand=balance.on_hand_qty, requested=qty)
        return adjust_stock(company, stock_item, movement_type, qty, **kwargs)


def issue_stock(company, stock_item, qty, **kwargs):
    """Issue material to a site; refuses to go below zero on hand."""
    return _issue(company, stock_item, "out", qty, **kwargs)


def record_wastage(company, stock_item, qty, **kwargs):
    return _issue(company, stock_item, "wastage", qty, **kwargs)


def upsert_stock_item(company, name, unit=None):
    """Insert-or-fetch by normalized name. Returns (item, created)."""
    normalized = normalize_item_name(name)
    if not normalized:
        raise ValidationError("Material name is required.")
    item, created = StockItem.objects.get_or_create(
        company=company,
        normalized_name=normalized,
        defaults={"name": name, "unit": (unit or "").strip() or DEFAULT_UNIT},
    )
    if created:
        logger.info("Created stock item %r for company %s", item.name,
                    company.pk)
    return item, created


# ----------------------------
# Purchase linkage
# ----------------------------
def purchase_line_reference(purchase, line):
    # One idempotency key per purchase line
    return f"{purchase.pk}:{line.pk}"


def post_purchase_receipt(purchase, *, user=None):
    """Receive every MATERIAL line of a posted purchase into stock."""
    result = ReceiptResult()
    lines = (
        purchase.lines.filter(line_type="material")
        .select_related("stock_item")
        .order_by("id")
    )
    with transaction.atomic():
        for line in lines:
            if line.stock_item is None:
                logger.warning(
                    "Purchase %s line %s (%s): no stock item, not received",
                    purchase.pk, line.pk, line.item_name)
                result.lines_skipped += 1
                continue
            if line.quantity <= 0:
                logger.warning(
                    "Purchase %s line %s: quantity %s, not received",
                    purchase.pk, line.pk, line.quantity)
                result.lines_skipped += 1
                continue

            unit_cost = line.unit_rate
            if not unit_cost:
                unit_cost = line.line_total / line.quantity

            adjustment = adjust_stock(
                purchase.company,
                line.stock_item,
                "in",
                line.quantity,
                unit_cost=unit_cost,
                reference_type=PURCHASE_VOUCHER,
                reference_id=purchase_line_reference(purchase, line),
                movement_date=purchase.date,
                project=purchase.project,
                vendor=purchase.vendor,
                notes=f"Purchase {purchase.challan_no or purchase.pk}",
                user=user,
            )
            if not adjustment.duplicate:
                result.movements_created += 1
    return result


def reverse_purchase_receipt(purchase, *, user=None):
    """One compensating OUT per receipt movement of the purchase."""
    result = ReversalResult()
    receipts = (
        StockMovement.objects.filter(
            company=purchase.company,
            movement_type="in",
            reference_type=PURCHASE_VOUCHER,
            reference_id__startswith=f"{purchase.pk}:",
        )
        .select_related("stock_item")
        .order_by("id")
    )
    with transaction.atomic():
        for receipt in receipts:
            adjustment = adjust_stock(
                purchase.company,
                receipt.stock_item,
                "out",
                receipt.qty,
                reference_type=PURCHASE_REVERSAL,
                reference_id=receipt.reference_id,
                movement_date=timezone.localdate(),
                project=receipt.project,
                vendor=receipt.vendor,
                notes=f"Reversal of purchase {purchase.challan_no or purchase.pk}",
                user=user,
            )
            if not adjustment.duplicate:
                result.movements_reversed += 1
    return result


# ----------------------------
# Opening stock quick entry
# ----------------------------
def _row_date(value, default):
    value = value or default
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return parse_date(str(value or "").strip())


def _validate_opening_rows(company, rows, opening_date):
    """Return (clean_rows, errors); errors is a list of {row, message}."""
    clean, errors = [], []
    for index, row in enumerate(rows, start=1):
        problems = []
        try:
            row_date = _row_date(row.get("date"), opening_date)
        except ValueError:
            row_date = None
        if row_date is None:
            problems.append("date is missing or invalid")

        try:
            qty = _to_decimal(row.get("quantity"), QTY)
        except InvalidQuantityError:
            qty = None
        if qty is None or qty <= 0:
            problems.append("quantity must be greater than zero")

        try:
            unit_cost = _to_decimal(row.get("unit_cost") or 0, COST)
        except InvalidQuantityError:
            unit_cost = None
        if unit_cost is None or unit_cost < 0:
            problems.append("unit cost cannot be negative")

        item = None
        if row.get("stock_item_id"):
            item = StockItem.objects.for_company(company).filter(
                pk=row["stock_item_id"]).first()
            if item is None:
                problems.append("stock item not found")
        elif not normalize_item_name(row.get("name")):
            problems.append("material name is required")
        else:
            # a name row for a known material posts against that item
            item = StockItem.objects.for_company(company).filter(
                normalized_name=normalize_item_name(row["name"])).first()

        if problems:
            errors.append({"row": index, "message": "; ".join(problems)})
            continue
        clean.append({
            "date": row_date,
            "item": item,
            "name": row.get("name") or "",
            "unit": row.get("unit") or "",
            "qty": qty,
            "unit_cost": unit_cost,
            "notes": (row.get("notes") or "").strip(),
        })
    return clean, errors


def _merge_opening_rows(rows):
    """Collapse rows for the same material, weighting cost by quantity."""
    merged = {}
    for row in rows:
        # known materials were resolved to items; new names key by name
        key = (("item", row["item"].pk) if row["item"]
               else ("name", normalize_item_name(row["name"])))
        entry = merged.get(key)
        if entry is None:
            merged[key] = dict(row, value=row["qty"] * row["unit_cost"],
                               notes=[row["notes"]] if row["notes"] else [])
            continue
        entry["qty"] += row["qty"]
        entry["value"] += row["qty"] * row["unit_cost"]
        entry["date"] = min(entry["date"], row["date"])
        if row["notes"]:
            entry["notes"].append(row["notes"])
    return list(merged.values())


def opening_stock_bulk_upsert(company, rows, *, project=None,
                              opening_date=None, user=None):
    """
    Quick-entry opening balances for a project (or the whole company).
    All-or-nothing: one bad row rejects the batch.
    """
    clean, errors = _validate_opening_rows(company, rows, opening_date)
    if not rows:
        errors.append({"row": None, "message": "no rows submitted"})
    if errors:
        raise OpeningStockError(
            f"Opening stock rejected: {len(errors)} invalid row(s)",
            row_errors=errors)

    scope = f"project:{project.pk}" if project else f"company:{company.pk}"
    result = OpeningStockResult()

    with transaction.atomic():
        if StockMovement.objects.filter(
                company=company, reference_type=OPENING_STOCK,
                reference_id=scope).exists():
            raise OpeningStockError(
                "Opening stock was already recorded; use an adjustment to "
                "correct it",
                row_errors=[{"row": None,
                             "message": "opening stock already recorded"}])

        for entry in _merge_opening_rows(clean):
            item = entry["item"]
            if item is None:
                item, created = upsert_stock_item(
                    company, entry["name"], entry["unit"])
                result.items_created += int(created)

            adjustment = adjust_stock(
                company,
                item,
                "in",
                entry["qty"],
                unit_cost=entry["value"] / entry["qty"],
                reference_type=OPENING_STOCK,
                reference_id=scope,
                movement_date=entry["date"],
                project=project,
                notes="; ".join(entry["notes"]),
                user=user,
            )
            if not adjustment.duplicate:
                result.movements_created += 1
                result.movements.append(adjustment.movement)
    return result


# ----------------------------
# Journal replay / reporting
# ----------------------------
def rebuild_stock_balances(company):
    """Recompute every cached balance from the journal; returns items fixed."""
    fixed = 0
    for item in StockItem.objects.for_company(company).order_by("id"):
        on_hand, avg_cost = replay_movements(item.movements.order_by("id"))
        with transaction.atomic():
            balance = _locked_balance(company, item)
            if balance.on_hand_qty == on_hand and balance.avg_cost == avg_cost:
                continue
            logger.warning(
                "Stock balance drift for %s: cached %s @ %s, journal %s @ %s",
                item, balance.on_hand_qty, balance.avg_cost, on_hand, avg_cost)
            balance.on_hand_qty = on_hand
            balance.avg_cost = avg_cost
            balance.save(update_fields=["on_hand_qty", "avg_cost",
                                        "updated_at"])
            fixed += 1
    return fixed


def stock_ledger(stock_item, date_from=None, date_to=None):
    """Movements of one item in date order with a running quantity."""
    movements = stock_item.movements.order_by("movement_date", "id")
    running = ZERO
    if date_from:
        for movement in movements.filter(movement_date__lt=date_from):
            running += _signed_qty(movement)
        movements = movements.filter(movement_date__gte=date_from)
    if date_to:
        movements = movements.filter(movement_date__lte=date_to)

    rows = []
    for movement in movements:
        delta = _signed_qty(movement)
        running += delta
        rows.append(StockLedgerRow(
            movement=movement,
            qty_in=delta if delta > 0 else ZERO,
            qty_out=-delta if delta < 0 else ZERO,
            running_qty=running,
        ))
    return rows


def _signed_qty(movement) -> Decimal:
    if movement.movement_type in ISSUE_TYPES:
        return -movement.qty
    return movement.qty  # in: positive, adjust: already signed
