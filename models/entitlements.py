"""
Entitlement documents in Firestore
- entitlements/{uid}: current product access for one student
- eduzz_events/{eventId}: raw webhook log, one document per delivery id
"""
import enum
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel

ENTITLEMENT_SOURCE = "eduzz"


class EventKind(str, enum.Enum):
    INVOICE_OPENED = "invoice_opened"
    INVOICE_PAID = "invoice_paid"
    INVOICE_CANCELED = "invoice_canceled"
    UNKNOWN = "unknown"


class AccessState(BaseModel):
    active: bool
    pending: bool


class NormalizedEvent(BaseModel):
    event_id: str
    event: str = ""
    email: str = ""
    invoice_id: str = ""
    invoice_status: str = ""
    product_id: str = ""
    product_title: str = ""
    shape: str = ""
    raw: dict[str, Any] = {}


class Entitlement(BaseModel):
    email: str = ""
    active: bool = False
    pending: bool = False
    source: str = ENTITLEMENT_SOURCE
    productId: Optional[str] = None
    productTitle: Optional[str] = None
    invoiceId: Optional[str] = None
    invoiceStatus: Optional[str] = None
    updatedAt: Optional[datetime] = None
    lastEventId: Optional[str] = None
    welcomeEmailSentAt: Optional[datetime] = None

    @classmethod
    def from_doc(cls, data: Optional[dict]) -> Optional["Entitlement"]:
        if not data:
            return None
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})


def entitlement_fields(event: NormalizedEvent, state: AccessState, now: datetime) -> dict:
    """Fields written on every reconciliation; welcomeEmailSentAt is never touched here."""
    return {
        "email": event.email,
        "active": state.active,
        "pending": state.pending,
        "source": ENTITLEMENT_SOURCE,
        "productId": event.product_id or None,
        "productTitle": event.product_title or None,
        "invoiceId": event.invoice_id or None,
        "invoiceStatus": event.invoice_status or None,
        "updatedAt": now,
        "lastEventId": event.event_id,
    }


def event_log_fields(event: NormalizedEvent, kind: EventKind) -> dict:
    return {
        "event": event.event or None,
        "kind": kind.value,
        "shape": event.shape or None,
        "email": event.email or None,
        "invoiceId": event.invoice_id or None,
        "invoiceStatus": event.invoice_status or None,
        "productId": event.product_id or None,
        "productTitle": event.product_title or None,
        "raw": event.raw,
    }
