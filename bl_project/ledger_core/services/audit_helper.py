from typing import Optional
from ..models import AuditLog, Company


def log_action(
    *,
    action: str,
    instance,
    user=None,
    company: Optional[Company] = None,
    changes: dict | None = None,
):
    """
    Central audit logger.
    Runs inside the caller's transaction, so a rolled back posting
    leaves no audit row behind.
    """

    if not company:
        company = getattr(instance, "company", None)

    # JSONField can't store Decimal / date, keep the audit payload textual
    if changes:
        changes = {
            key: value if value is None or isinstance(value, (bool, int, str))
            else str(value)
            for key, value in changes.items()
        }

    return AuditLog.objects.create(
        company=company,
        user=user,
        action=action,
        object_type=instance.__class__.__name__,
        object_id=str(instance.pk),
        changes=changes,
    )
