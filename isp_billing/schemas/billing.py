from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from isp_billing.models.enums import RebateType

_PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


class BillingHistoryDayOut(BaseModel):
    day: date
    invoices: int
    total_amount_due: float


class BillingLastRunOut(BaseModel):
    id: str
    run_date: date
    mode: str
    generated: int
    skipped: int
    failed: int


class BillingDiagnosticsOut(BaseModel):
    on: date
    billing_period: str
    billing_days: list[int]
    advance_generation_days: int = 0
    scheduled_accounts: int
    scheduled_account_numbers: list[str]
    invoices_generated: int
    invoices_total_amount_due: float
    statements_generated: int
    statements_total_amount_due: float
    dispatch: dict[str, int]
    last_run: BillingLastRunOut | None = None
    history: list[BillingHistoryDayOut]


class DispatchEntryOut(BaseModel):
    id: str
    account_id: str | None = None
    invoice_id: str | None = None
    document_type: str
    recipient_email: str
    subject: str
    status: str
    attempts: int
    last_error: str | None = None
    sent_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class _OperatorRequest(BaseModel):
    operator_id: str | None = None
    remarks: str | None = Field(default=None, max_length=255)

    @field_validator("operator_id", "remarks")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class MassRebateCreateIn(_OperatorRequest):
    rebate_type: RebateType
    selected_rebate: str = Field(min_length=1, max_length=120)
    number_of_dates: int = Field(gt=0, le=31)
    billing_period: str = Field(pattern=_PERIOD_PATTERN)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "rebate_type": "lcp",
                "selected_rebate": "LCP-NORTH",
                "number_of_dates": 3,
                "billing_period": "2026-10",
                "remarks": "Fiber cut on the north trunk",
            }
        }
    )


class MassRebateOut(BaseModel):
    id: str
    rebate_type: str
    selected_rebate: str
    number_of_dates: int
    billing_period: str
    status: str
    remarks: str | None = None
    accounts_affected: int


class StaggeredInstallationCreateIn(_OperatorRequest):
    account_id: str = Field(min_length=1)
    staggered_balance: Decimal = Field(gt=0)
    months_to_pay: int = Field(gt=0, le=60)
    start_period: str = Field(pattern=_PERIOD_PATTERN)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "account_id": "acct-id",
                "staggered_balance": 1000.0,
                "months_to_pay": 3,
                "start_period": "2026-11",
            }
        }
    )


class StaggeredInstallmentOut(BaseModel):
    installment_no: int
    due_period: str
    amount: float
    status: str

    model_config = ConfigDict(from_attributes=True)


class StaggeredInstallationOut(BaseModel):
    id: str
    account_id: str
    staggered_balance: float
    months_to_pay: int
    monthly_payment: float
    start_period: str
    status: str
    remarks: str | None = None
    installments: list[StaggeredInstallmentOut]
