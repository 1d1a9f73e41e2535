"""
Subscription Service Data Models

Defines data models for the subscription billing lifecycle: subscriptions,
their typed history records, collaborator-owned invoices and packages,
proration results and dunning projections.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from pydantic import BaseModel, ConfigDict, Field, model_validator


# ====================
# Enum Types
# ====================

class SubscriptionStatus(str, Enum):
    """Subscription status"""
    ACTIVE = "active"                    # Active subscription
    TRIALING = "trialing"               # In trial period
    PAST_DUE = "past_due"               # Payment overdue
    PAUSED = "paused"                   # Temporarily paused
    CANCELLED = "cancelled"             # Ended by administrative action
    EXPIRED = "expired"                 # Subscription has ended
    INCOMPLETE = "incomplete"           # Payment not completed


class BillingCycle(str, Enum):
    """Billing cycle"""
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def period_days(self) -> int:
        """Fixed period length in days"""
        return 365 if self is BillingCycle.YEARLY else 30


class InvoiceStatus(str, Enum):
    """Invoice status (owned by the invoicing service)"""
    DRAFT = "draft"
    SENT = "sent"
    OVERDUE = "overdue"
    PAID = "paid"
    VOID = "void"


class AssignmentStatus(str, Enum):
    """Workspace package assignment status (owned by the entitlement service)"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    REVOKED = "revoked"


class InitiatedBy(str, Enum):
    """Who initiated the action"""
    USER = "user"
    SYSTEM = "system"
    ADMIN = "admin"
    PAYMENT_PROVIDER = "payment_provider"
    DUNNING = "dunning"


class DunningStage(str, Enum):
    """Where a subscription sits in the dunning escalation"""
    NONE = "none"
    RETRY = "retry"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class DunningAction(str, Enum):
    """Next action the dunning sweep will take"""
    NONE = "none"
    RETRY = "retry"
    PAUSE = "pause"
    SUSPEND = "suspend"
    CANCEL = "cancel"


class NotificationType(str, Enum):
    """Customer notifications dispatched by the lifecycle"""
    PAYMENT_FAILED = "PaymentFailed"
    PAYMENT_RETRY = "PaymentRetry"
    SUBSCRIPTION_PAUSED = "SubscriptionPaused"
    ACCOUNT_SUSPENDED = "AccountSuspended"
    SUBSCRIPTION_CANCELLED = "SubscriptionCancelled"


# Statuses in which a subscription still grants access
LIVE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
)

MONEY_QUANTUM = Decimal("0.01")


def round_money(amount: Decimal) -> Decimal:
    """Round half-up to two decimal places"""
    return Decimal(amount).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


# ====================
# Typed History Records
# ====================

class StatusHistoryEntry(BaseModel):
    """One status transition, appended and never rewritten"""
    from_status: Optional[SubscriptionStatus] = None
    to_status: SubscriptionStatus
    changed_at: datetime
    reason: Optional[str] = None
    initiated_by: InitiatedBy = InitiatedBy.SYSTEM


class PeriodExtension(BaseModel):
    """Record of a renewal extending the billing period"""
    previous_period_end: datetime
    new_period_end: datetime
    extended_at: datetime
    reason: str = "renewal"


class PendingPlanChange(BaseModel):
    """Plan change scheduled for the end of the current period"""
    to_package_code: str
    requested_at: datetime
    scheduled_for: datetime


class PlanChangeRecord(BaseModel):
    """Most recent immediately-applied plan change"""
    from_package_code: Optional[str] = None
    to_package_code: str
    changed_at: datetime
    proration: Optional[Dict[str, Any]] = None


# ====================
# Core Data Models
# ====================

class Subscription(BaseModel):
    """Recurring subscription for a workspace package assignment"""
    subscription_id: str = Field(..., description="Unique subscription identifier")

    # Ownership
    workspace_id: str = Field(..., description="Owning workspace")
    package_assignment_id: str = Field(..., description="Entitlement package assignment")
    package_code: Optional[str] = Field(None, description="Code of the assigned package")

    # Gateway references
    gateway: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    gateway_customer_id: Optional[str] = None

    # State
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_cycle: BillingCycle = BillingCycle.MONTHLY

    # Period
    current_period_start: datetime
    current_period_end: datetime

    # Cancellation
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    ended_at: Optional[datetime] = None

    # Pausing
    paused_at: Optional[datetime] = None
    pause_count: int = Field(default=0, ge=0)

    # Set when dunning suspends the entitlement assignment; cleared on unpause
    suspended_at: Optional[datetime] = None

    # Optimistic concurrency counter, bumped on every write
    version: int = Field(default=0, ge=0)

    # Typed records
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    period_extensions: List[PeriodExtension] = Field(default_factory=list)
    pending_plan_change: Optional[PendingPlanChange] = None
    last_plan_change: Optional[PlanChangeRecord] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _period_end_after_start(self) -> "Subscription":
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.ended_at is not None

    @property
    def has_pending_cancellation(self) -> bool:
        return self.cancelled_at is not None and self.ended_at is None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def is_paused(self) -> bool:
        return self.status == SubscriptionStatus.PAUSED

    @property
    def is_past_due(self) -> bool:
        return self.status == SubscriptionStatus.PAST_DUE


class Invoice(BaseModel):
    """Invoice fields read and written by dunning"""
    invoice_id: str
    workspace_id: str
    subscription_id: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.SENT
    amount_due: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "GBP"
    due_date: Optional[datetime] = None
    auto_charge: bool = True

    # Dunning fields
    charge_attempts: int = Field(default=0, ge=0)
    last_charge_attempt: Optional[datetime] = None
    next_charge_attempt: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    version: int = Field(default=0, ge=0)

    @property
    def is_outstanding(self) -> bool:
        return self.status in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE)


class Package(BaseModel):
    """Catalog package with per-cycle prices"""
    code: str
    name: str
    monthly_price: Decimal = Field(default=Decimal("0"), ge=0)
    yearly_price: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "GBP"

    def get_price(self, billing_cycle: BillingCycle) -> Decimal:
        if BillingCycle(billing_cycle) is BillingCycle.YEARLY:
            return self.yearly_price
        return self.monthly_price


class PackageAssignment(BaseModel):
    """Workspace package assignment granted by the entitlement service"""
    assignment_id: str
    workspace_id: str
    package_code: str
    status: AssignmentStatus = AssignmentStatus.ACTIVE


# ====================
# Value Objects
# ====================

class ProrationResult(BaseModel):
    """Credit and charge for a mid-cycle plan change"""
    model_config = ConfigDict(frozen=True)

    days_remaining: int
    total_period_days: int
    used_fraction: Decimal
    current_plan_price: Decimal
    new_plan_price: Decimal
    credit_amount: Decimal
    prorated_new_plan_cost: Decimal
    net_amount: Decimal
    currency: str = "GBP"

    @property
    def is_upgrade(self) -> bool:
        return self.new_plan_price > self.current_plan_price

    @property
    def is_downgrade(self) -> bool:
        return self.new_plan_price < self.current_plan_price

    @property
    def is_same_price(self) -> bool:
        return abs(self.new_plan_price - self.current_plan_price) < MONEY_QUANTUM

    @property
    def requires_payment(self) -> bool:
        return self.net_amount > 0

    @property
    def credit_balance(self) -> Decimal:
        return -self.net_amount if self.net_amount < 0 else Decimal("0.00")

    @property
    def amount_due(self) -> Decimal:
        return self.net_amount if self.net_amount > 0 else Decimal("0.00")

    def to_dict(self) -> Dict[str, Any]:
        """Flatten for storage on plan change records and API responses"""
        return {
            "days_remaining": self.days_remaining,
            "total_period_days": self.total_period_days,
            "used_percentage": str(round_money(self.used_fraction * 100)),
            "current_plan_price": str(self.current_plan_price),
            "new_plan_price": str(self.new_plan_price),
            "credit_amount": str(self.credit_amount),
            "prorated_new_plan_cost": str(self.prorated_new_plan_cost),
            "net_amount": str(self.net_amount),
            "currency": self.currency,
            "is_upgrade": self.is_upgrade,
            "is_downgrade": self.is_downgrade,
            "requires_payment": self.requires_payment,
        }


class PlanChangeResult(BaseModel):
    """Outcome of a plan change request"""
    subscription: Subscription
    proration: Optional[ProrationResult] = None
    immediate: bool = True


class DunningStatus(BaseModel):
    """Read-only dunning projection for reporting"""
    stage: DunningStage = DunningStage.NONE
    days_overdue: int = 0
    next_action: DunningAction = DunningAction.NONE
    next_action_date: Optional[datetime] = None


class PauseStatus(BaseModel):
    """Voluntary pause allowance for a subscription"""
    can_pause: bool
    pause_count: int
    remaining_pause_cycles: int
    max_pause_cycles: int


class DunningRunSummary(BaseModel):
    """Counts produced by one sweep run"""
    dry_run: bool = False
    retried: int = 0
    paused: int = 0
    suspended: int = 0
    cancelled: int = 0
    expired: int = 0
    plan_changes_applied: int = 0
    errors: int = 0


# ====================
# Request/Response Models
# ====================

class CreateSubscriptionRequest(BaseModel):
    """Request to create a subscription after checkout fulfilment"""
    workspace_id: str
    package_assignment_id: str
    package_code: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    gateway: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    gateway_customer_id: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    """Request to cancel a subscription"""
    immediate: bool = False  # If True, end now; if False, cancel at period end
    reason: Optional[str] = None
    expire: bool = False  # Immediate only: end as expired instead of cancelled


class BulkCancelRequest(BaseModel):
    """Administrative bulk cancellation"""
    subscription_ids: List[str] = Field(..., min_length=1)
    reason: Optional[str] = None
    expire: bool = False


class BulkCancelResponse(BaseModel):
    """Per-subscription outcome of a bulk cancellation"""
    success: bool
    message: str
    results: Dict[str, str] = Field(default_factory=dict)


class RenewSubscriptionRequest(BaseModel):
    """Request to renew for another period"""
    supersede_cancellation: bool = True


class PauseSubscriptionRequest(BaseModel):
    """Request to pause a subscription"""
    force: bool = False


class ChangePlanRequest(BaseModel):
    """Request to move a subscription to another package"""
    new_package_code: str
    prorate: bool = True
    immediate: bool = True


class PreviewPlanChangeRequest(BaseModel):
    """Request to preview proration without changing anything"""
    new_package_code: str
    billing_cycle: Optional[BillingCycle] = None


class PaymentSignalRequest(BaseModel):
    """Payment failure or recovery signal for an invoice"""
    invoice_id: str
    subscription_id: Optional[str] = None


class DunningRunRequest(BaseModel):
    """Trigger a sweep run"""
    stage: Optional[str] = None
    dry_run: bool = False


class SubscriptionResponse(BaseModel):
    """Standard subscription response"""
    success: bool
    message: str
    subscription: Optional[Subscription] = None


class SubscriptionListResponse(BaseModel):
    """List of subscriptions response"""
    success: bool
    message: str
    subscriptions: List[Subscription] = Field(default_factory=list)
    total: int = 0


class PlanChangeResponse(BaseModel):
    """Plan change response"""
    success: bool
    message: str
    subscription: Optional[Subscription] = None
    proration: Optional[Dict[str, Any]] = None
    immediate: bool = True


class ProrationPreviewResponse(BaseModel):
    """Proration preview response"""
    success: bool
    message: str
    proration: Optional[Dict[str, Any]] = None


class InvoiceResponse(BaseModel):
    """Invoice response after a dunning signal"""
    success: bool
    message: str
    invoice: Optional[Invoice] = None


# ====================
# System Models
# ====================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    timestamp: str
    database_connected: bool = False


class ErrorResponse(BaseModel):
    """Error response"""
    success: bool = False
    error: str
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
