import logging
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task  # register this function as a Celery task
def rebuild_stock_balances(company_id):
    """
    Nightly maintenance: recompute every cached StockBalance of a company
    from its movement journal. Posting never waits on this task.
    """
    # import models lazily to avoid circular imports at module import time
    from .models import Company
    from .services.stock import rebuild_stock_balances as rebuild

    company = Company.objects.get(pk=company_id)
    fixed = rebuild(company)
    logger.info("Rebuilt stock balances for %s: %s corrected", company, fixed)
    return fixed
