from django.core.exceptions import ValidationError


class LedgerValidationError(ValidationError):
    """
    Base class for ledger rule violations.
    Subclasses ValidationError so views and forms catching the Django
    error keep working; the extra attributes say where the problem is.
    """

    default_code = "ledger"

    def __init__(self, message, *, line_index=None, account_code=None,
                 code=None, **context):
        super().__init__(message, code=code or self.default_code)
        self.line_index = line_index      # 1-based line in the submitted set
        self.account_code = account_code
        self.context = context

    def __str__(self):
        return self.message


class UnbalancedVoucherError(LedgerValidationError):
    """Raised when total debit and total credit differ by 0.01 or more."""
    default_code = "unbalanced"


class PurchaseNotBalancedError(UnbalancedVoucherError):
    """Raised when a purchase's derived voucher lines do not balance."""
    default_code = "purchase_not_balanced"


class InsufficientLinesError(LedgerValidationError):
    """Raised when a voucher has fewer than two lines."""
    default_code = "insufficient_lines"


class InvalidLineAmountError(LedgerValidationError):
    """Raised when a line has a negative amount, or both or neither sides set."""
    default_code = "invalid_line_amount"


class InvalidTransitionError(LedgerValidationError):
    """Raised when a voucher status change is not an allowed edge."""
    default_code = "invalid_transition"


class VoucherNotEditableError(LedgerValidationError):
    """Raised when editing or deleting a voucher that left draft."""
    default_code = "not_editable"


class AccountNotLeafError(LedgerValidationError):
    """Raised when a posting targets a group (parent) account."""
    default_code = "account_not_leaf"


class AccountInactiveOrMissingError(LedgerValidationError):
    """Raised when a posting targets an unknown, foreign or disabled account."""
    default_code = "account_inactive_or_missing"


class MissingDefaultAccountError(LedgerValidationError):
    """Raised when a purchase needs a mapped system account that is unusable."""
    default_code = "missing_default_account"


class InvalidQuantityError(LedgerValidationError):
    """Raised for zero/negative stock quantities or negative unit costs."""
    default_code = "invalid_quantity"


class InsufficientStockError(InvalidQuantityError):
    """Raised when an issue would take more than is on hand."""
    default_code = "insufficient_stock"


class OpeningStockError(LedgerValidationError):
    """Raised when an opening stock batch is rejected; carries row errors."""
    default_code = "opening_stock"

    def __init__(self, message, *, row_errors=None, **kwargs):
        super().__init__(message, **kwargs)
        self.row_errors = row_errors or []


class ImportBlockedError(LedgerValidationError):
    """Raised when an import commit is attempted with blocking problems."""
    default_code = "import_blocked"

    def __init__(self, message, *, issues=None, **kwargs):
        super().__init__(message, **kwargs)
        self.issues = issues or []
