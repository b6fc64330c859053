# cafepay/models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
import enum
from typing import Optional


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    numeric: str   # ISO 4217 numeric code, as encoded in the QR
    exponent: int  # minor-unit digits

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.exponent)


SUPPORTED_CURRENCIES = {
    "USD": CurrencyInfo("USD", "840", 2),
    "KHR": CurrencyInfo("KHR", "116", 0),
}


def now_utc():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MerchantIdentity:
    account_id: str  # e.g. "yourid@aclb"
    name: str
    city: str


@dataclass
class Order:
    id: str
    amount: Decimal
    currency: str
    fingerprint: str
    encoded_payload: str
    expires_at: datetime
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=now_utc)
    paid_at: Optional[datetime] = None


@dataclass(frozen=True)
class CreatedOrder:
    order: Order
    qr_image: str  # data URL


@dataclass(frozen=True)
class StatusResult:
    status: OrderStatus
    amount: Decimal
    currency: str
    note: Optional[str] = None


@dataclass(frozen=True)
class SettlementRecord:
    """A transaction reported by the settlement authority. Untrusted."""

    amount: Decimal
    currency: str
    hash: Optional[str] = None
    from_account: Optional[str] = None
    to_account: Optional[str] = None
    description: Optional[str] = None
    acknowledged_at_ms: Optional[int] = None
