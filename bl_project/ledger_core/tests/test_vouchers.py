import datetime
import threading
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import connection, transaction
from django.test import TestCase, TransactionTestCase, skipUnlessDBFeature

from ..exceptions import (AccountInactiveOrMissingError, AccountNotLeafError,
                          InsufficientLinesError, InvalidLineAmountError,
                          InvalidTransitionError, UnbalancedVoucherError,
                          VoucherNotEditableError)
from ..models import Account, AuditLog, Voucher, VoucherLine
from ..services.vouchers import (allocate_voucher_number, create_voucher,
                                 delete_draft_voucher, transition_status,
                                 update_draft_voucher, validate_balance)
from .helpers import account, make_company, make_member, post, simple_voucher


""" Balance rule """
class BalanceRuleTests(TestCase):

    def test_equal_sides_pass_and_report_totals(self):
        totals = validate_balance([
            {"debit": "1000.00"},
            {"credit": Decimal("600.00")},
            {"credit": 400},
        ])
        self.assertEqual(totals.debit, Decimal("1000.00"))
        self.assertEqual(totals.credit, Decimal("1000.00"))

    def test_one_unit_difference_is_rejected(self):
        with self.assertRaises(UnbalancedVoucherError) as cm:
            validate_balance([{"debit": "1000"}, {"credit": "999"}])
        self.assertIn("Difference: 1.00", str(cm.exception))
        self.assertEqual(cm.exception.context["difference"], Decimal("1.00"))

    def test_a_single_cent_is_already_unbalanced(self):
        with self.assertRaises(UnbalancedVoucherError):
            validate_balance([{"debit": "100.01"}, {"credit": "100.00"}])

    def test_sub_cent_noise_rounds_away(self):
        # both sides quantize to 100.00
        validate_balance([{"debit": "100.004"}, {"credit": "100.00"}])

    def test_fewer_than_two_lines(self):
        with self.assertRaises(InsufficientLinesError):
            validate_balance([{"debit": "0"}])
        with self.assertRaises(InsufficientLinesError):
            validate_balance([])


""" Creating vouchers """
class CreateVoucherTests(TestCase):

    def setUp(self):
        self.company = make_company()
        self.cash = account(self.company, "1010")
        self.materials = account(self.company, "5010")
        self.user = make_member(self.company)

    def lines(self, debit="1000.00", credit="1000.00"):
        return [
            {"account": self.materials, "debit": debit,
             "description": "Cement"},
            {"account_id": self.cash.pk, "credit": credit},
        ]

    def test_balanced_voucher_is_saved_as_draft(self):
        voucher = create_voucher(self.company, date=datetime.date(2025, 3, 5),
                                 lines=self.lines(), narration="Site cement",
                                 user=self.user)

        self.assertEqual(voucher.status, "draft")
        self.assertEqual(voucher.voucher_no, "V-2025-000001")
        self.assertEqual(voucher.created_by, self.user)
        self.assertEqual(voucher.lines.count(), 2)
        self.assertEqual(voucher.compute_totals(),
                         (Decimal("1000.00"), Decimal("1000.00")))
        # creation is audited
        self.assertTrue(AuditLog.objects.filter(
            action="create", object_type="Voucher",
            object_id=str(voucher.pk)).exists())

    def test_unbalanced_voucher_writes_nothing(self):
        with self.assertRaises(UnbalancedVoucherError):
            create_voucher(self.company, date=datetime.date(2025, 3, 5),
                           lines=self.lines(credit="999.00"))
        self.assertEqual(Voucher.objects.for_company(self.company).count(), 0)
        self.assertEqual(
            VoucherLine.objects.for_company(self.company).count(), 0)

    def test_group_account_is_reported_with_its_line(self):
        group = Account.objects.create(
            company=self.company, code="5100", name="Subcontracts",
            ac_type="expense")
        Account.objects.create(
            company=self.company, code="5110", name="Electrical",
            ac_type="expense", parent=group)

        with self.assertRaises(AccountNotLeafError) as cm:
            create_voucher(self.company, date=datetime.date(2025, 3, 5),
                           lines=[{"account": group, "debit": "10"},
                                  {"account": self.cash, "credit": "10"}])
        self.assertEqual(cm.exception.line_index, 1)

    def test_inactive_account_is_rejected(self):
        self.cash.is_active = False
        self.cash.save()
        with self.assertRaises(AccountInactiveOrMissingError) as cm:
            create_voucher(self.company, date=datetime.date(2025, 3, 5),
                           lines=[{"account": self.materials, "debit": "10"},
                                  {"account": self.cash, "credit": "10"}])
        self.assertEqual(cm.exception.line_index, 2)
        self.assertEqual(cm.exception.account_code, "1010")

    def test_other_company_account_is_rejected(self):
        other = make_company("Other Co")
        with self.assertRaises(AccountInactiveOrMissingError):
            create_voucher(self.company, date=datetime.date(2025, 3, 5),
                           lines=[{"account": self.materials, "debit": "10"},
                                  {"account": account(other, "1010"),
                                   "credit": "10"}])

    def test_line_needs_exactly_one_side(self):
        with self.assertRaises(InvalidLineAmountError):
            create_voucher(self.company, date=datetime.date(2025, 3, 5),
                           lines=[{"account": self.materials, "debit": "10",
                                   "credit": "10"},
                                  {"account": self.cash, "credit": "0"}])
        with self.assertRaises(InvalidLineAmountError):
            create_voucher(self.company, date=datetime.date(2025, 3, 5),
                           lines=[{"account": self.materials, "debit": "-10"},
                                  {"account": self.cash, "credit": "-10"}])

    def test_amounts_are_rounded_half_up(self):
        voucher = create_voucher(
            self.company, date=datetime.date(2025, 3, 5),
            lines=[{"account": self.materials, "debit": "10.005"},
                   {"account": self.cash, "credit": "10.01"}])
        debit = voucher.lines.get(account=self.materials).debit
        self.assertEqual(debit, Decimal("10.01"))


""" Voucher numbers """
class VoucherNumberTests(TestCase):

    def setUp(self):
        self.company = make_company()

    def test_numbers_increment_within_a_year(self):
        first = simple_voucher(self.company, "5010", "1010", "10")
        second = simple_voucher(self.company, "5010", "1010", "20")
        self.assertEqual(first.voucher_no, "V-2025-000001")
        self.assertEqual(second.voucher_no, "V-2025-000002")

    def test_each_year_has_its_own_sequence(self):
        simple_voucher(self.company, "5010", "1010", "10")
        next_year = simple_voucher(self.company, "5010", "1010", "10",
                                   date=datetime.date(2026, 1, 2))
        self.assertEqual(next_year.voucher_no, "V-2026-000001")

    def test_each_company_has_its_own_sequence(self):
        simple_voucher(self.company, "5010", "1010", "10")
        other = make_company("Other Co")
        voucher = simple_voucher(other, "5010", "1010", "10")
        self.assertEqual(voucher.voucher_no, "V-2025-000001")

    def test_numbers_skip_past_existing_vouchers(self):
        # e.g. a number written by an older system
        Voucher.objects.create(company=self.company,
                               voucher_no="V-2025-000041",
                               date=datetime.date(2025, 1, 1))
        self.assertEqual(
            allocate_voucher_number(self.company, datetime.date(2025, 5, 1)),
            "V-2025-000042")


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentVoucherNumberTests(TransactionTestCase):
    """Parallel allocations must never hand out the same number."""

    def test_parallel_allocations_are_unique(self):
        company = make_company()
        # create the counter row up front, the threads only contend on its lock
        allocate_voucher_number(company, datetime.date(2025, 1, 1))

        numbers, errors = [], []

        def worker():
            try:
                with transaction.atomic():
                    numbers.append(allocate_voucher_number(
                        company, datetime.date(2025, 6, 1)))
            except Exception as exc:  # surfaced through `errors`
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(sorted(numbers),
                         [f"V-2025-{n:06d}" for n in range(2, 7)])


""" Status workflow """
class TransitionTests(TestCase):

    def setUp(self):
        self.company = make_company()
        self.user = make_member(self.company)
        self.voucher = simple_voucher(self.company, "5010", "1010", "250.00")

    def test_full_approval_chain(self):
        voucher = post(self.voucher, user=self.user)

        self.assertEqual(voucher.status, "posted")
        self.assertIsNotNone(voucher.submitted_at)
        self.assertIsNotNone(voucher.approved_at)
        self.assertIsNotNone(voucher.posted_at)
        actions = list(AuditLog.objects.filter(object_type="Voucher",
                                               object_id=str(voucher.pk))
                       .order_by("id").values_list("action", flat=True))
        self.assertEqual(actions, ["create", "submitted", "approved", "posted"])

    def test_stages_cannot_be_skipped(self):
        with self.assertRaises(InvalidTransitionError):
            transition_status(self.voucher.pk, "posted")
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, "draft")

    def test_posted_voucher_cannot_go_back(self):
        post(self.voucher)
        for status in ("draft", "submitted", "approved"):
            with self.assertRaises(InvalidTransitionError):
                transition_status(self.voucher.pk, status)

    def test_unknown_status_is_an_invalid_transition(self):
        with self.assertRaises(InvalidTransitionError):
            transition_status(self.voucher, "archived")

    def test_deactivated_account_blocks_posting(self):
        transition_status(self.voucher, "submitted")
        transition_status(self.voucher, "approved")
        cash = account(self.company, "1010")
        cash.is_active = False
        cash.save()

        with self.assertRaises(AccountInactiveOrMissingError) as cm:
            transition_status(self.voucher, "posted")
        self.assertEqual(cm.exception.line_index, 2)
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, "approved")

    def test_posted_lines_are_frozen(self):
        post(self.voucher)
        line = self.voucher.lines.order_by("pk").first()
        line.debit = Decimal("999.00")
        with self.assertRaises(ValidationError):
            line.save()
        line.refresh_from_db()
        self.assertEqual(line.debit, Decimal("250.00"))

    def test_posted_header_is_frozen(self):
        voucher = post(self.voucher)
        voucher.narration = "rewritten"
        with self.assertRaises(ValidationError):
            voucher.save()


""" Reversal """
class ReversalTests(TestCase):

    def setUp(self):
        self.company = make_company()
        self.user = make_member(self.company)
        self.original = post(
            simple_voucher(self.company, "5010", "1010", "400.00"))

    def test_reversal_swaps_every_line(self):
        transition_status(self.original, "reversed", user=self.user)
        self.original.refresh_from_db()
        self.assertEqual(self.original.status, "reversed")
        self.assertIsNotNone(self.original.reversed_at)

        counter = Voucher.objects.get(reversal_of=self.original)
        self.assertEqual(counter.status, "posted")
        self.assertEqual(counter.narration,
                         f"Reversal of {self.original.voucher_no}")

        original_lines = {
            line.account_id: (line.debit, line.credit)
            for line in self.original.lines.all()
        }
        for line in counter.lines.all():
            debit, credit = original_lines[line.account_id]
            self.assertEqual((line.debit, line.credit), (credit, debit))

        # the pair nets to nothing on every account
        for code in ("1010", "5010"):
            totals = VoucherLine.objects.filter(
                account=account(self.company, code)
            ).values_list("debit", "credit")
            net = sum(d - c for d, c in totals)
            self.assertEqual(net, Decimal("0.00"))

    def test_reversed_voucher_cannot_be_reversed_again(self):
        transition_status(self.original, "reversed")
        with self.assertRaises(InvalidTransitionError):
            transition_status(self.original, "reversed")

    def test_reversal_voucher_itself_cannot_be_reversed(self):
        transition_status(self.original, "reversed")
        counter = Voucher.objects.get(reversal_of=self.original)
        with self.assertRaises(InvalidTransitionError):
            transition_status(counter, "reversed")

    def test_reversal_onto_a_group_account_is_refused(self):
        # cash gained a sub-account after the original was posted
        Account.objects.create(company=self.company, code="1011",
                               name="Petty Cash", ac_type="asset",
                               parent=account(self.company, "1010"))
        with self.assertRaises(AccountNotLeafError) as cm:
            transition_status(self.original, "reversed")

        self.assertEqual(cm.exception.line_index, 2)
        self.assertEqual(cm.exception.account_code, "1010")
        self.original.refresh_from_db()
        self.assertEqual(self.original.status, "posted")
        self.assertFalse(
            Voucher.objects.filter(reversal_of=self.original).exists())

    def test_reversal_onto_an_inactive_account_is_refused(self):
        materials = account(self.company, "5010")
        materials.is_active = False
        materials.save()
        with self.assertRaises(AccountInactiveOrMissingError):
            transition_status(self.original, "reversed")
        self.assertFalse(
            Voucher.objects.filter(reversal_of=self.original).exists())

    def test_draft_cannot_be_reversed(self):
        draft = simple_voucher(self.company, "5010", "1010", "10.00")
        with self.assertRaises(InvalidTransitionError):
            transition_status(draft, "reversed")


""" Editing and deleting drafts """
class DraftMaintenanceTests(TestCase):

    def setUp(self):
        self.company = make_company()
        self.voucher = simple_voucher(self.company, "5010", "1010", "100.00")
        self.labor = account(self.company, "5020")
        self.bank = account(self.company, "1020")

    def new_lines(self, amount="300.00"):
        return [{"account": self.labor, "debit": amount},
                {"account": self.bank, "credit": amount}]

    def test_draft_lines_are_replaced(self):
        voucher = update_draft_voucher(self.voucher, lines=self.new_lines(),
                                       narration="Mason wages")
        self.assertEqual(voucher.narration, "Mason wages")
        self.assertEqual(
            set(voucher.lines.values_list("account__code", flat=True)),
            {"5020", "1020"})
        self.assertEqual(voucher.voucher_no, self.voucher.voucher_no)

    def test_moving_a_draft_to_another_year_renumbers_it(self):
        voucher = update_draft_voucher(self.voucher, lines=self.new_lines(),
                                       date=datetime.date(2026, 2, 1))
        self.assertEqual(voucher.voucher_no, "V-2026-000001")

    def test_unbalanced_update_keeps_old_lines(self):
        with self.assertRaises(UnbalancedVoucherError):
            update_draft_voucher(self.voucher, lines=[
                {"account": self.labor, "debit": "300.00"},
                {"account": self.bank, "credit": "200.00"},
            ])
        self.assertEqual(
            set(self.voucher.lines.values_list("account__code", flat=True)),
            {"5010", "1010"})

    def test_submitted_voucher_is_not_editable(self):
        transition_status(self.voucher, "submitted")
        with self.assertRaises(VoucherNotEditableError):
            update_draft_voucher(self.voucher, lines=self.new_lines())

    def test_draft_can_be_deleted(self):
        delete_draft_voucher(self.voucher)
        self.assertFalse(Voucher.objects.filter(pk=self.voucher.pk).exists())
        self.assertFalse(
            VoucherLine.objects.filter(voucher_id=self.voucher.pk).exists())

    def test_posted_voucher_cannot_be_deleted(self):
        post(self.voucher)
        with self.assertRaises(VoucherNotEditableError):
            delete_draft_voucher(self.voucher)
        # the model-level guard holds as well
        with self.assertRaises(ValidationError), transaction.atomic():
            Voucher.objects.get(pk=self.voucher.pk).delete()
        self.assertTrue(Voucher.objects.filter(pk=self.voucher.pk).exists())
