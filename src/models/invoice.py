from pydantic import BaseModel, Field, field_validator
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Tuple, Any, Dict
from enum import Enum
import uuid


class InvoiceItemType(str, Enum):
    """Enumeration of invoice item types"""
    FIXED = "FIXED"
    RECURRING = "RECURRING"
    USAGE = "USAGE"
    CREDIT_ADJ = "CREDIT_ADJ"
    CBA_ADJ = "CBA_ADJ"
    ITEM_ADJ = "ITEM_ADJ"
    TAX = "TAX"
    EXTERNAL_CHARGE = "EXTERNAL_CHARGE"


class InvoiceStatus(str, Enum):
    """Enumeration of invoice states"""
    DRAFT = "DRAFT"
    COMMITTED = "COMMITTED"
    VOID = "VOID"


class InvoiceEventType(str, Enum):
    """Lifecycle events emitted after an invoice commit"""
    INVOICE = "INVOICE"
    NULL_INVOICE = "NULL_INVOICE"
    INVOICE_PAYMENT = "INVOICE_PAYMENT"
    PAYMENT = "PAYMENT"


class GenerationStatus(str, Enum):
    """Outcome of one invoice generation cycle"""
    COMMITTED = "COMMITTED"
    NOTHING_TO_BILL = "NOTHING_TO_BILL"
    ABORTED = "ABORTED"
    RESCHEDULED = "RESCHEDULED"
    DRY_RUN = "DRY_RUN"


def new_id() -> str:
    return str(uuid.uuid4())


class InvoiceItem(BaseModel):
    """A single charge or credit. Never mutated: rewrites produce a copy."""
    id: str = Field(default_factory=new_id, description="Invoice item identifier")
    invoice_id: Optional[str] = Field(None, description="Invoice the item belongs to")
    account_id: str = Field(..., description="Owning account")
    subscription_id: Optional[str] = Field(None, description="Subscription that produced the item")
    item_type: InvoiceItemType
    amount: Decimal = Field(..., description="Signed amount")
    currency: str = Field(..., min_length=3, max_length=3)
    start_date: date
    end_date: Optional[date] = None
    description: Optional[str] = None

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v):
        return v.upper()

    class Config:
        """Pydantic configuration"""
        frozen = True
        from_attributes = True

    def with_invoice_id(self, invoice_id: str) -> "InvoiceItem":
        """Copy of this item attached to another invoice."""
        return self.model_copy(update={"invoice_id": invoice_id})


class Invoice(BaseModel):
    """An invoice and its ordered items."""
    id: str = Field(default_factory=new_id)
    account_id: str
    invoice_number: Optional[int] = None
    invoice_date: date
    target_date: date
    currency: str = Field(..., min_length=3, max_length=3)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    items: Tuple[InvoiceItem, ...] = ()

    class Config:
        """Pydantic configuration"""
        frozen = True
        from_attributes = True

    @property
    def balance(self) -> Decimal:
        return sum((item.amount for item in self.items), Decimal("0"))

    @property
    def has_billable_items(self) -> bool:
        return any(item.amount != 0 for item in self.items)

    def with_items(self, items) -> "Invoice":
        return self.model_copy(update={"items": tuple(items)})

    def with_status(self, status: InvoiceStatus) -> "Invoice":
        return self.model_copy(update={"status": status})


class PluginProperty(BaseModel):
    """Free-form key/value forwarded to plugins"""
    key: str
    value: Any = None
    is_updatable: bool = False

    class Config:
        frozen = True


class CallContext(BaseModel):
    """Who asked for the operation and why"""
    user_token: str = Field(default_factory=new_id)
    created_by: str = "system"
    reason_code: Optional[str] = None
    comments: Optional[str] = None
    created_date: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True


class InvoiceContext(BaseModel):
    """State handed to plugin callbacks during a generation cycle"""
    account_id: str
    target_date: date
    invoice: Optional[Invoice] = None
    existing_invoices: Tuple[Invoice, ...] = ()
    is_dry_run: bool = False
    is_rescheduled: bool = False
    call_context: CallContext = Field(default_factory=CallContext)

    class Config:
        frozen = True


class PriorInvoiceResult(BaseModel):
    """Answer of the plugin gate before any item is computed"""
    is_aborted: bool = False
    reschedule_date: Optional[date] = None

    class Config:
        frozen = True


class InvoiceEvent(BaseModel):
    """One entry of the ordered lifecycle event sequence"""
    event_type: InvoiceEventType
    account_id: str
    invoice_id: str
    amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    sequence: int = 0

    class Config:
        frozen = True

    @property
    def routing_key(self) -> str:
        return f"invoice.event.{self.event_type.value.lower()}"

    def to_message(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "account_id": self.account_id,
            "invoice_id": self.invoice_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "sequence": self.sequence,
        }


class GenerationResult(BaseModel):
    """What a generation cycle produced"""
    status: GenerationStatus
    account_id: str
    invoices: Tuple[Invoice, ...] = ()
    events: Tuple[InvoiceEvent, ...] = ()
    reschedule_date: Optional[date] = None

    class Config:
        frozen = True
