from isp_billing.models.account import BillingAccount, ServicePlan
from isp_billing.models.invoice import Invoice, PaymentTransaction, StatementOfAccount
from isp_billing.models.instruments import (
    AdvancedPayment,
    Discount,
    MassRebate,
    RebateUsage,
    ServiceChargeLog,
    StaggeredInstallation,
    StaggeredInstallment,
)
from isp_billing.models.dispatch import EmailQueue
from isp_billing.models.payment import PaymentIntent, WorkerLock
from isp_billing.models.billing_run import BillingRun
from isp_billing.models.audit_log import AuditLog
