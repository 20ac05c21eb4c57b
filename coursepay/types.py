from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Gateway(str, Enum):
    REDIRECT = "redirect"
    CHECKOUT = "checkout"
    BANK = "bank"


class IntentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not IntentStatus.PENDING


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class NotificationEvent:
    """Canonical notification produced by a gateway adapter."""

    gateway: Gateway
    intent_id: str
    external_reference: Optional[str]
    reported_amount: int
    reported_currency: str
    outcome: Outcome
    outcome_code: str
    raw_token: str
    raw_payload: bytes = b""


@dataclass(frozen=True)
class IntentRecord:
    id: str
    buyer_id: str
    course_id: str
    amount: int
    currency: str
    settlement_amount: int
    settlement_currency: str
    gateway: Gateway
    status: IntentStatus
    created_at: datetime
    updated_at: datetime
    buyer_email: Optional[str] = None
    external_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    admin_id: Optional[str] = None
    admin_notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "buyer_email": self.buyer_email,
            "course_id": self.course_id,
            "amount": self.amount,
            "currency": self.currency,
            "settlement_amount": self.settlement_amount,
            "settlement_currency": self.settlement_currency,
            "gateway": self.gateway.value,
            "status": self.status.value,
            "external_reference": self.external_reference,
            "bank_reference": self.bank_reference,
            "admin_id": self.admin_id,
            "admin_notes": self.admin_notes,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class GrantRecord:
    buyer_id: str
    course_id: str
    payment_intent_id: str
    granted_at: datetime


@dataclass(frozen=True)
class CourseRecord:
    id: str
    title: str
    price: int
    currency: str
    published: bool

    @property
    def purchasable(self) -> bool:
        return self.published and self.price > 0


@dataclass(frozen=True)
class LaunchParams:
    gateway: Gateway
    fields: Dict[str, Any] = field(default_factory=dict)
    url: Optional[str] = None


@dataclass(frozen=True)
class GrantResult:
    created: bool


@dataclass(frozen=True)
class NotificationResult:
    intent: IntentRecord
    duplicate: bool = False
    granted: bool = False
