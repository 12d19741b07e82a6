from app.models.audit import AuditAction, AuditEntityType, PaymentAuditLog  # noqa: F401
from app.models.billing import (  # noqa: F401
    BillingAttempt,
    BillingAttemptStatus,
    BillingCycle,
    BillingSubscription,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentMethodType,
    PaymentProvider,
    PaymentRefund,
    PaymentStatus,
    RefundStatus,
    SubscriptionStatus,
    TaxCategory,
)
from app.models.organization import Customer, Organization  # noqa: F401
from app.models.provider_payments import (  # noqa: F401
    KonbiniPayment,
    KonbiniStatus,
    KonbiniStore,
    PayPayCodeStatus,
    PayPayPayment,
)
from app.models.reminder import (  # noqa: F401
    PaymentReminder,
    ReminderMethod,
    ReminderStatus,
    ReminderType,
)
from app.models.scheduler import CronJob, CronJobStatus, PaymentReport  # noqa: F401
from app.models.sequence import NumberSequence  # noqa: F401
