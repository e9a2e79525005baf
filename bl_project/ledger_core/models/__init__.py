from .account import Account
from .auditlog import AuditLog
from .company import Company, EntityMembership
from .expense import ExpenseCategory, PaymentMethod
from .project import Project
from .purchase import Purchase, PurchaseLine
from .stock import StockBalance, StockItem, StockMovement
from .vendor import Vendor
from .voucher import Voucher, VoucherLine, VoucherSequence
