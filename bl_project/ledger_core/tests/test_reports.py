import datetime
from decimal import Decimal

from django.test import TestCase

from ..models import ExpenseCategory, Project, Purchase, Vendor
from ..services.reports import (account_running_balance, aging_bucket,
                                payables_aging_summary, project_cost_summary,
                                trial_balance, vendor_ledger,
                                vendor_payables_aging)
from ..services.vouchers import create_voucher, transition_status
from .helpers import account, make_company, post, simple_voucher


class AgingBucketTests(TestCase):

    def test_bucket_edges(self):
        self.assertEqual(aging_bucket(0), "d0_30")
        self.assertEqual(aging_bucket(30), "d0_30")
        self.assertEqual(aging_bucket(31), "d31_60")
        self.assertEqual(aging_bucket(40), "d31_60")
        self.assertEqual(aging_bucket(90), "d61_90")
        self.assertEqual(aging_bucket(91), "d90_plus")


""" Running balances """
class RunningBalanceTests(TestCase):

    def setUp(self):
        self.company = make_company()
        self.cash = account(self.company, "1010")
        self.capital = account(self.company, "3020")
        # owner puts in 1,000, then 400 goes on materials
        self.funding = post(simple_voucher(
            self.company, "1010", "3020", "1000.00",
            date=datetime.date(2025, 1, 10)))
        self.spend = post(simple_voucher(
            self.company, "5010", "1010", "400.00",
            date=datetime.date(2025, 2, 10)))
        # drafts never reach the books
        simple_voucher(self.company, "5010", "1010", "99.00",
                       date=datetime.date(2025, 2, 11))

    def test_asset_balance_is_debit_positive(self):
        statement = account_running_balance(self.cash)
        self.assertEqual([line.balance for line in statement.lines],
                         [Decimal("1000.00"), Decimal("600.00")])
        self.assertEqual(statement.opening_balance, Decimal("0.00"))
        self.assertEqual(statement.closing_balance, Decimal("600.00"))
        self.assertEqual(statement.total_debit, Decimal("1000.00"))
        self.assertEqual(statement.total_credit, Decimal("400.00"))

    def test_equity_balance_is_credit_positive(self):
        statement = account_running_balance(self.capital)
        self.assertEqual(statement.closing_balance, Decimal("1000.00"))

    def test_date_window_carries_an_opening_balance(self):
        statement = account_running_balance(
            self.cash, date_from=datetime.date(2025, 2, 1))
        self.assertEqual(statement.opening_balance, Decimal("1000.00"))
        self.assertEqual(len(statement.lines), 1)
        self.assertEqual(statement.lines[0].voucher_no, self.spend.voucher_no)
        self.assertEqual(statement.closing_balance, Decimal("600.00"))

        january = account_running_balance(
            self.cash, date_to=datetime.date(2025, 1, 31))
        self.assertEqual(january.closing_balance, Decimal("1000.00"))

    def test_reversed_voucher_nets_out(self):
        transition_status(self.spend, "reversed")
        statement = account_running_balance(self.cash)
        # original credit plus the reversal's debit
        self.assertEqual(len(statement.lines), 3)
        self.assertEqual(statement.closing_balance, Decimal("1000.00"))

    def test_trial_balance_balances(self):
        report = trial_balance(self.company)
        rows = {row.account.code: row for row in report.rows}

        self.assertEqual(rows["1010"].debit, Decimal("600.00"))
        self.assertEqual(rows["3020"].credit, Decimal("1000.00"))
        self.assertEqual(rows["5010"].debit, Decimal("400.00"))
        self.assertEqual(report.total_debit, report.total_credit)
        self.assertEqual(report.total_debit, Decimal("1000.00"))

    def test_trial_balance_as_of_date(self):
        report = trial_balance(self.company,
                               as_of=datetime.date(2025, 1, 31))
        self.assertEqual({row.account.code for row in report.rows},
                         {"1010", "3020"})


""" Payables """
class PayablesTests(TestCase):

    def setUp(self):
        self.company = make_company()
        self.vendor = Vendor.objects.create(company=self.company,
                                            name="Rahim Traders")
        self.as_of = datetime.date(2025, 6, 30)

    def purchase(self, days_old, total, paid="0", vendor=None, **kwargs):
        total, paid = Decimal(total), Decimal(paid)
        return Purchase.objects.create(
            company=self.company,
            vendor=vendor or self.vendor,
            date=self.as_of - datetime.timedelta(days=days_old),
            subtotal=total,
            total=total,
            paid_amount=paid,
            due_amount=total - paid,
            **kwargs,
        )

    def test_outstanding_amounts_land_in_age_buckets(self):
        self.purchase(40, "5000", paid="1000")
        self.purchase(10, "1000")
        self.purchase(120, "700")
        self.purchase(5, "300", paid="300")  # settled
        self.purchase(70, "900", status="reversed")

        aging = vendor_payables_aging(self.vendor, as_of=self.as_of)

        self.assertEqual(aging.buckets["d0_30"], Decimal("1000"))
        self.assertEqual(aging.buckets["d31_60"], Decimal("4000"))
        self.assertEqual(aging.buckets["d61_90"], Decimal("0"))
        self.assertEqual(aging.buckets["d90_plus"], Decimal("700"))
        self.assertEqual(aging.total_due, Decimal("5700"))
        self.assertEqual(aging.total_paid, Decimal("1300"))
        self.assertEqual(aging.total_billed, Decimal("7000"))
        self.assertEqual(aging.last_invoice_date,
                         self.as_of - datetime.timedelta(days=5))

    def test_overpayment_is_not_negative_due(self):
        self.purchase(10, "500", paid="600")
        aging = vendor_payables_aging(self.vendor, as_of=self.as_of)
        self.assertEqual(aging.total_due, Decimal("0"))

    def test_future_purchases_are_ignored(self):
        self.purchase(-3, "500")
        aging = vendor_payables_aging(self.vendor, as_of=self.as_of)
        self.assertEqual(aging.total_billed, Decimal("0"))

    def test_summary_adds_up_vendors(self):
        other = Vendor.objects.create(company=self.company, name="Karim Steel")
        Vendor.objects.create(company=self.company, name="No Purchases Yet")
        self.purchase(40, "5000", paid="1000")
        self.purchase(15, "2500", vendor=other)

        summary = payables_aging_summary(self.company, as_of=self.as_of)

        self.assertEqual([row.vendor.name for row in summary.rows],
                         ["Karim Steel", "Rahim Traders"])
        self.assertEqual(summary.totals.total_due, Decimal("6500"))
        self.assertEqual(summary.totals.buckets["d0_30"], Decimal("2500"))
        self.assertEqual(summary.totals.buckets["d31_60"], Decimal("4000"))

    def test_vendor_ledger_follows_payable_lines(self):
        post(simple_voucher(self.company, "5010", "2010", "800.00",
                            vendor=self.vendor))
        post(simple_voucher(self.company, "2010", "1010", "300.00",
                            vendor=self.vendor,
                            date=datetime.date(2025, 2, 1)))

        ledger = vendor_ledger(self.vendor)
        self.assertEqual([line.balance for line in ledger.lines],
                         [Decimal("800.00"), Decimal("500.00")])
        self.assertEqual(ledger.closing_balance, Decimal("500.00"))


""" Project costs """
class ProjectCostSummaryTests(TestCase):

    def setUp(self):
        self.company = make_company()
        self.project = Project.objects.create(company=self.company,
                                              name="Tower A")
        self.materials = ExpenseCategory.objects.create(company=self.company,
                                                        name="Materials")
        self.vendor = Vendor.objects.create(company=self.company,
                                            name="Rahim Traders")
        self.voucher = self.costs_voucher()

    def costs_voucher(self, project=None, date=datetime.date(2025, 3, 1)):
        return post(create_voucher(
            self.company,
            date=date,
            project=project or self.project,
            lines=[
                {"account": account(self.company, "5010"), "debit": "1000",
                 "expense_category": self.materials, "vendor": self.vendor},
                {"account": account(self.company, "5020"), "debit": "500"},
                {"account": account(self.company, "1010"), "credit": "1500"},
            ],
        ))

    def test_costs_group_by_category_then_account(self):
        summary = project_cost_summary(self.project)

        self.assertEqual(
            [(c.key, c.name, c.amount) for c in summary.by_category],
            [(f"category:{self.materials.pk}", "Materials", Decimal("1000.00")),
             (f"account:{account(self.company, '5020').pk}", "Direct Labor",
              Decimal("500.00"))])
        self.assertEqual(summary.grand_total, Decimal("1500.00"))
        self.assertIsNone(summary.allocated_overhead)

    def test_allocated_overhead_is_added_on_top(self):
        summary = project_cost_summary(self.project,
                                       allocated_overhead="200.00")
        self.assertEqual(summary.allocated_overhead, Decimal("200.00"))
        self.assertEqual(summary.grand_total, Decimal("1700.00"))

    def test_filters(self):
        by_category = project_cost_summary(self.project,
                                           category=self.materials)
        self.assertEqual(by_category.grand_total, Decimal("1000.00"))

        # vendor filter keeps whole vouchers that involve the vendor
        by_vendor = project_cost_summary(self.project, vendor=self.vendor)
        self.assertEqual(by_vendor.grand_total, Decimal("1500.00"))

        outside = project_cost_summary(self.project,
                                       date_from=datetime.date(2025, 4, 1))
        self.assertEqual(outside.by_category, [])
        self.assertEqual(outside.grand_total, Decimal("0"))

    def test_other_projects_and_reversals(self):
        other = Project.objects.create(company=self.company, name="Tower B")
        self.costs_voucher(project=other)
        transition_status(self.voucher, "reversed")

        self.assertEqual(project_cost_summary(self.project).grand_total,
                         Decimal("0"))
        self.assertEqual(project_cost_summary(other).grand_total,
                         Decimal("1500.00"))
