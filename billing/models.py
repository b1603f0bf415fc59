# models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    # MongoDB hands back naive UTC datetimes, so everything stored is naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


UtcDatetime = Annotated[datetime, AfterValidator(as_naive_utc)]


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"
    UNCOLLECTIBLE = "UNCOLLECTIBLE"


TERMINAL_STATUSES = (InvoiceStatus.VOID, InvoiceStatus.UNCOLLECTIBLE)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class ReconciliationStatus(str, Enum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    CREATED = "CREATED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class MatchedBy(str, Enum):
    EXTERNAL_CUSTOMER_ID = "external_customer_id"
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"


class MatchConfidence(str, Enum):
    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Document(BaseModel):
    """Base for anything persisted in a collection, keyed by a string ``_id``."""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)

    id: Optional[str] = None

    @classmethod
    def from_doc(cls, doc):
        if doc is None:
            return None
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)

    def to_doc(self) -> dict:
        # Missing fields stay missing so sparse unique indexes ignore them
        return self.model_dump(exclude={"id"}, exclude_none=True)


# --- Accounts -----------------------------------------------------------------

class Account(Document):
    tenant_id: Optional[str] = None
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    external_customer_id: Optional[str] = None
    source: Optional[str] = None
    source_metadata: Dict[str, Optional[str]] = Field(default_factory=dict)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# --- Inbound payment events ---------------------------------------------------

class PaymentEvent(BaseModel):
    """Normalized view of a processor payment notification. Never stored as-is."""

    customer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    description: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    external_invoice_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    paid_at: UtcDatetime = Field(default_factory=utcnow)


# --- Invoice building blocks --------------------------------------------------

class Discount(BaseModel):
    type: Literal["percentage", "fixed"]
    value: float = Field(ge=0)
    description: Optional[str] = None
    coupon_code: Optional[str] = None


class Tax(BaseModel):
    name: str
    rate: float = Field(ge=0)
    inclusive: bool = False


class LineItem(BaseModel):
    description: str
    quantity: int = Field(default=1, ge=1)
    unit_price: int = Field(ge=0)
    discount: Optional[Discount] = None
    tax_rate: Optional[float] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class InvoiceSummary(BaseModel):
    subtotal: int = 0
    discount_amount: int = 0
    tax_amount: int = 0
    total: int = 0
    amount_paid: int = 0
    amount_due: int = 0
    credits: int = 0


class Installment(BaseModel):
    number: int
    amount: int
    due_date: datetime
    status: Literal["pending", "paid", "missed"] = "pending"
    type: Literal["down_payment", "installment"] = "installment"


class PaymentPlan(BaseModel):
    total_amount: int = Field(gt=0)
    number_of_payments: int = Field(ge=1)
    frequency: Literal["weekly", "biweekly", "monthly"]
    start_date: UtcDatetime
    down_payment: int = Field(default=0, ge=0)

    @field_validator("down_payment")
    @classmethod
    def _down_payment_within_total(cls, value, info):
        total = info.data.get("total_amount")
        if total is not None and value >= total:
            raise ValueError("down_payment must be less than total_amount")
        return value


class PaymentPlanState(PaymentPlan):
    schedule: List[Installment] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class Reminder(BaseModel):
    type: Literal["before_due", "on_due", "after_due"]
    days_offset: int = Field(default=0, ge=0)
    channel: Literal["email", "sms", "both"] = "email"
    message: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.type}_{self.days_offset}"


class ReminderState(BaseModel):
    schedule: List[Reminder] = Field(default_factory=list)
    sent: List[str] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None


class CreditEntry(BaseModel):
    amount: int
    description: Optional[str] = None
    applied_at: datetime = Field(default_factory=utcnow)


class RefundEntry(BaseModel):
    amount: int
    reason: Optional[str] = None
    issued_at: datetime = Field(default_factory=utcnow)
    is_full_refund: bool = False


class PaymentHistoryEntry(BaseModel):
    payment_id: str
    amount: int
    method: str
    date: datetime = Field(default_factory=utcnow)


class DeliveryResult(BaseModel):
    method: Literal["processor_email", "email", "sms"]
    success: bool
    error: Optional[str] = None


class SendHistory(BaseModel):
    last_sent_at: Optional[datetime] = None
    send_count: int = 0
    last_delivery: List[DeliveryResult] = Field(default_factory=list)


class InvoiceMetadata(BaseModel):
    """Auxiliary invoice state, one explicit sub-structure per concern."""

    model_config = ConfigDict(use_enum_values=True)

    source: Optional[str] = None
    memo: Optional[str] = None
    footer: Optional[str] = None
    po_number: Optional[str] = None
    payment_terms: Optional[str] = None
    custom_fields: Dict[str, str] = Field(default_factory=dict)
    discount: Optional[Discount] = None
    taxes: List[Tax] = Field(default_factory=list)
    summary: Optional[InvoiceSummary] = None
    payment_plan: Optional[PaymentPlanState] = None
    reminders: ReminderState = Field(default_factory=ReminderState)
    credits: List[CreditEntry] = Field(default_factory=list)
    refunds: List[RefundEntry] = Field(default_factory=list)
    payments: List[PaymentHistoryEntry] = Field(default_factory=list)
    send_history: SendHistory = Field(default_factory=SendHistory)
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    processor_metadata: Dict[str, str] = Field(default_factory=dict)
    finalized_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    uncollectible_at: Optional[datetime] = None
    uncollectible_reason: Optional[str] = None
    extra: Dict[str, str] = Field(default_factory=dict)


class Invoice(Document):
    account_id: str
    tenant_id: Optional[str] = None
    order_id: Optional[str] = None
    invoice_number: Optional[str] = None
    external_invoice_id: Optional[str] = None
    external_invoice_number: Optional[str] = None
    external_invoice_url: Optional[str] = None
    external_pdf_url: Optional[str] = None
    description: Optional[str] = None
    amount: int
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    status: InvoiceStatus = InvoiceStatus.DRAFT
    due_date: Optional[UtcDatetime] = None
    paid_at: Optional[datetime] = None
    line_items: List[LineItem] = Field(default_factory=list)
    metadata: InvoiceMetadata = Field(default_factory=InvoiceMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Payment(Document):
    account_id: str
    tenant_id: Optional[str] = None
    invoice_id: Optional[str] = None
    amount: int
    currency: str = "usd"
    status: PaymentStatus = PaymentStatus.SUCCEEDED
    payment_method: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    notes: Optional[str] = None
    is_partial: bool = False
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class ReconciliationRecord(Document):
    event_id: str
    event_type: str
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    external_invoice_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    description: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    status: ReconciliationStatus
    matched_by: Optional[MatchedBy] = None
    match_confidence: Optional[MatchConfidence] = None
    account_id: Optional[str] = None
    invoice_id: Optional[str] = None
    account_created: bool = False
    tenant_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    processed_at: datetime = Field(default_factory=utcnow)


# --- Service inputs -----------------------------------------------------------

class CreateInvoiceOptions(BaseModel):
    account_id: str
    tenant_id: Optional[str] = None
    line_items: List[LineItem] = Field(min_length=1)
    description: Optional[str] = None
    memo: Optional[str] = None
    footer: Optional[str] = None
    due_in_days: Optional[int] = Field(default=None, ge=0)
    due_date: Optional[UtcDatetime] = None
    discount: Optional[Discount] = None
    taxes: List[Tax] = Field(default_factory=list)
    auto_send: bool = False
    auto_charge: bool = False
    collection_method: Literal["charge_automatically", "send_invoice"] = "send_invoice"
    custom_fields: Dict[str, str] = Field(default_factory=dict)
    invoice_number: Optional[str] = None
    po_number: Optional[str] = None
    order_id: Optional[str] = None
    payment_terms: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class UpdateInvoiceOptions(BaseModel):
    description: Optional[str] = None
    memo: Optional[str] = None
    footer: Optional[str] = None
    due_date: Optional[UtcDatetime] = None
    discount: Optional[Discount] = None
    custom_fields: Optional[Dict[str, str]] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class InvoiceFilters(BaseModel):
    account_id: Optional[str] = None
    tenant_id: Optional[str] = None
    status: List[InvoiceStatus] = Field(default_factory=list)
    from_date: Optional[UtcDatetime] = None
    to_date: Optional[UtcDatetime] = None
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None
    overdue: bool = False
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=200)
    order_by: Literal["created_at", "due_date", "amount"] = "created_at"
    order_dir: Literal["asc", "desc"] = "desc"


class RecordPaymentInput(BaseModel):
    amount: int = Field(gt=0)
    method: str = "manual"
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = None


class RefundInput(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None
    refund_to_payment_method: bool = False


class MatchResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    account: Optional[Account] = None
    matched_by: Optional[MatchedBy] = None
    confidence: Optional[MatchConfidence] = None


class ProcessingResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    success: bool
    account: Optional[Account] = None
    invoice: Optional[Invoice] = None
    match_result: MatchResult = Field(default_factory=MatchResult)
    account_created: bool = False
    duplicate: bool = False
    error: Optional[str] = None


class SendResult(BaseModel):
    success: bool
    delivery: List[DeliveryResult] = Field(default_factory=list)


class PaymentRecorded(BaseModel):
    invoice: Invoice
    payment: Payment
    is_paid: bool
    remaining_balance: int


class ReminderRun(BaseModel):
    processed: int = 0
    sent: int = 0
    errors: int = 0


class AccountInvoiceSummary(BaseModel):
    total_invoiced: int = 0
    total_paid: int = 0
    total_outstanding: int = 0
    overdue_amount: int = 0
    invoice_count: int = 0
    paid_count: int = 0
    open_count: int = 0
    overdue_count: int = 0
