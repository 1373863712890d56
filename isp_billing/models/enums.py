from enum import Enum


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class InvoiceStatus(str, Enum):
    UNPAID = "Unpaid"
    PARTIAL = "Partial"
    PAID = "Paid"


class InstrumentStatus(str, Enum):
    UNUSED = "Unused"
    USED = "Used"


class StaggeredStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"


class RebateType(str, Enum):
    LCP = "lcp"
    LCPNAP = "lcpnap"
    LOCATION = "location"


class DispatchStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DocumentType(str, Enum):
    INVOICE = "invoice"
    STATEMENT = "statement"


class PaymentIntentStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    API_RETRY = "API_RETRY"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentIntentStatus.PAID, PaymentIntentStatus.FAILED)


class PaymentSource(str, Enum):
    GATEWAY = "gateway"
    ADVANCE_CREDIT = "advance_credit"


class BillingRunMode(str, Enum):
    PREVIEW = "preview"
    GENERATE = "generate"
