from django.core.management.base import BaseCommand, CommandError

from ledger_core.models import Company
from ledger_core.services.accounts import ensure_system_accounts


class Command(BaseCommand):
    help = "Create the standard construction chart of accounts (idempotent)."

    # Define command-line argument
    def add_arguments(self, parser):
        parser.add_argument(
            "--company",  # Define flag
            type=str,
            default=None,
            help="Slug of the company (default: every company)",
        )

    def handle(self, *args, **options):
        slug = options["company"]  # Read argument from add_arguments()
        companies = Company.objects.order_by("pk")
        if slug:
            companies = companies.filter(slug=slug)
            if not companies.exists():
                raise CommandError(f"No company with slug {slug!r}")

        for company in companies:
            accounts = ensure_system_accounts(company)
            self.stdout.write(self.style.SUCCESS(
                f"{company}: {len(accounts)} system accounts in place"))
