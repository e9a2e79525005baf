import datetime
from decimal import Decimal

from django.contrib.auth import get_user_model

from ..models import Account, Company, EntityMembership
from ..services.accounts import ensure_system_accounts
from ..services.vouchers import create_voucher, transition_status


def make_company(name="Test Co"):
    """Company with the standard chart already in place."""
    company = Company.objects.create(name=name)
    ensure_system_accounts(company)
    return company


def make_member(company, username="alice"):
    # audit rows require the acting user to be a member of the company
    user = get_user_model().objects.create_user(username=username, password="pw")
    EntityMembership.objects.create(user=user, company=company)
    return user


def account(company, code):
    return Account.objects.get(company=company, code=code)


def post(voucher, user=None):
    """Walk a draft voucher through the whole approval chain."""
    for status in ("submitted", "approved", "posted"):
        voucher = transition_status(voucher.pk, status, user=user)
    return voucher


def simple_voucher(company, debit_code, credit_code, amount, *,
                   date=datetime.date(2025, 1, 10), **line_tags):
    amount = Decimal(amount)
    return create_voucher(
        company,
        date=date,
        lines=[
            {"account": account(company, debit_code), "debit": amount,
             **line_tags},
            {"account": account(company, credit_code), "credit": amount,
             **line_tags},
        ],
    )
