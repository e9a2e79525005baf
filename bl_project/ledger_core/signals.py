from django.core.exceptions import ValidationError
from django.db.models.signals import pre_delete
from django.dispatch import receiver

from .models import Account, StockMovement, Voucher, VoucherLine

"""Block deletion if account has ever been used in a voucher line."""


# pre_delete signal auto-fires just before Django deletes a model instance
@receiver(pre_delete, sender=Account)
def prevent_delete_used_or_system_account(sender, instance, **kwargs):
    if instance.is_system:
        raise ValidationError("System accounts cannot be deleted.")
    if VoucherLine.objects.filter(account=instance).exists():
        raise ValidationError(
            "Cannot delete account used in voucher lines; deactivate it.")


"""Only drafts can be deleted; posted history is reversed instead."""


@receiver(pre_delete, sender=Voucher)
def prevent_delete_non_draft_voucher(sender, instance, **kwargs):
    if instance.status != "draft":
        raise ValidationError(
            f"Cannot delete a {instance.status} voucher.")


@receiver(pre_delete, sender=VoucherLine)
def prevent_delete_frozen_voucher_line(sender, instance, **kwargs):
    status = (
        Voucher.objects.filter(pk=instance.voucher_id)
        .values_list("status", flat=True)
        .first()
    )
    if status and status != "draft":
        raise ValidationError(f"Cannot delete lines of a {status} voucher.")


"""The movement journal is append-only."""


@receiver(pre_delete, sender=StockMovement)
def prevent_delete_stock_movement(sender, instance, **kwargs):
    raise ValidationError(
        "Stock movements cannot be deleted; post a compensating movement.")
