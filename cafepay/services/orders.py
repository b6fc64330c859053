# cafepay/services/orders.py
import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Optional

from cafepay.errors import EncodingFailure, InvalidAmount, InvalidCurrency, MisconfiguredMerchant
from cafepay.khqr import MAX_AMOUNT_LENGTH, EncodeFailure, KHQRCodec, PaymentCodec, PaymentRequest, plain_amount
from cafepay.models import (
    SUPPORTED_CURRENCIES, CreatedOrder, MerchantIdentity, Order, OrderStatus, now_utc,
)
from cafepay.qrimage import to_data_url

logger = logging.getLogger("cafepay.orders")

PAYMENT_TTL = timedelta(minutes=10)
MERCHANT_CATEGORY_CODE = "5999"
PURPOSE = "Cafe order"


def parse_amount(raw: Any) -> Decimal:
    """Coerce client input (number or numeric string) to a finite, positive Decimal."""
    if raw is None or isinstance(raw, (bool, list, dict)):
        raise InvalidAmount()
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount()
    if not value.is_finite() or value <= 0:
        raise InvalidAmount()
    return value


def normalize_currency(raw: Optional[str], default: str) -> str:
    code = (raw or "").strip().upper() or default.strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise InvalidCurrency(f"Unsupported currency: {code}")
    return code


def quantize_amount(value: Decimal, currency: str) -> Decimal:
    """Round to the currency's minor unit, half up (KHR 10.7 -> 11).

    Rejects values that round to zero or do not fit the QR amount field.
    """
    try:
        scaled = value.quantize(SUPPORTED_CURRENCIES[currency].quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount()
    if scaled <= 0 or len(plain_amount(scaled)) > MAX_AMOUNT_LENGTH:
        raise InvalidAmount()
    return scaled


def validate_merchant(merchant: Optional[MerchantIdentity]) -> None:
    account = (merchant.account_id if merchant else "") or ""
    holder, sep, participant = account.strip().partition("@")
    if not (sep and holder and participant):
        raise MisconfiguredMerchant()


def generate_order_id(prefix: str, now: datetime) -> str:
    """``PREFIX-YYYYmmddHHMMSS-NNN`` in server local time.

    The 3-digit suffix only separates orders minted within the same second;
    collisions remain possible and are rejected by the ledger.
    """
    stamp = now.astimezone().strftime("%Y%m%d%H%M%S")
    return f"{prefix}-{stamp}-{secrets.randbelow(1000):03d}"


def _epoch_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


class OrderFactory:
    """Turns a raw creation request into an ``Order`` plus its QR image.

    The factory has no side effects: registering the order in the ledger
    is left to the caller.
    """

    def __init__(
        self,
        codec: Optional[PaymentCodec] = None,
        rasterizer: Optional[Callable[[str], str]] = None,
        default_currency: str = "USD",
        order_prefix: str = "CAFE",
        ttl: timedelta = PAYMENT_TTL,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.codec = codec or KHQRCodec()
        self.rasterizer = rasterizer or to_data_url
        self.default_currency = default_currency
        self.order_prefix = order_prefix
        self.ttl = ttl
        self.clock = clock

    def create_order(self, amount: Any, currency: Optional[str], merchant: MerchantIdentity) -> CreatedOrder:
        value = parse_amount(amount)
        code = normalize_currency(currency, self.default_currency)
        validate_merchant(merchant)
        value = quantize_amount(value, code)

        now = self.clock()
        order_id = generate_order_id(self.order_prefix, now)
        expires_at = now + self.ttl

        result = self.codec.encode(PaymentRequest(
            account_id=merchant.account_id.strip(),
            merchant_name=merchant.name,
            merchant_city=merchant.city,
            currency=code,
            amount=value,
            merchant_category_code=MERCHANT_CATEGORY_CODE,
            bill_number=order_id,
            purpose=PURPOSE,
            store_label=merchant.name,
            created_at_ms=_epoch_ms(now),
            expires_at_ms=_epoch_ms(expires_at),
        ))
        if isinstance(result, EncodeFailure):
            logger.error("khqr encoding failed", extra={"order_id": order_id, "codec_message": result.message})
            raise EncodingFailure(detail=result.message or None)

        order = Order(
            id=order_id,
            amount=value,
            currency=code,
            fingerprint=result.md5,
            encoded_payload=result.payload,
            expires_at=expires_at,
            status=OrderStatus.PENDING,
            created_at=now,
        )
        qr_image = self.rasterizer(result.payload)
        logger.info(
            "order created",
            extra={"order_id": order.id, "amount": str(value), "currency": code, "md5": order.fingerprint},
        )
        return CreatedOrder(order=order, qr_image=qr_image)
