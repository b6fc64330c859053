"""KHQR payload codec.

KHQR is Bakong's profile of the EMV merchant-presented QR format: a flat
sequence of tag/length/value fields (two-digit tag, two-digit length),
some of which nest their own TLV templates, closed by a CRC16-CCITT
checksum over the whole string. This module builds individual-account
payloads and parses them back.

``KHQRCodec.encode`` never raises on bad input; it returns an
``EncodeFailure`` with a diagnostic message so callers resolve a single
result type at the boundary.
"""

import binascii
import hashlib
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol, Union

from cafepay.models import SUPPORTED_CURRENCIES

# Top-level tags
PAYLOAD_FORMAT_INDICATOR = "00"
POINT_OF_INITIATION = "01"
INDIVIDUAL_ACCOUNT = "29"
MERCHANT_CATEGORY_CODE = "52"
TRANSACTION_CURRENCY = "53"
TRANSACTION_AMOUNT = "54"
COUNTRY_CODE = "58"
MERCHANT_NAME = "59"
MERCHANT_CITY = "60"
ADDITIONAL_DATA = "62"
CRC = "63"
TIMESTAMP = "99"

# Sub-tags of 29
ACCOUNT_ID = "00"
ACCOUNT_INFORMATION = "01"
ACQUIRING_BANK = "02"

# Sub-tags of 62
BILL_NUMBER = "01"
MOBILE_NUMBER = "02"
STORE_LABEL = "03"
TERMINAL_LABEL = "07"
PURPOSE_OF_TRANSACTION = "08"

# Sub-tags of 99
CREATION_TIMESTAMP = "00"
EXPIRATION_TIMESTAMP = "01"

STATIC_QR = "11"
DYNAMIC_QR = "12"

MAX_ACCOUNT_ID = 32
MAX_MERCHANT_NAME = 25
MAX_MERCHANT_CITY = 15
MAX_ADDITIONAL_FIELD = 25
MAX_AMOUNT_LENGTH = 13

_ACCOUNT_RE = re.compile(r"^[^@\s]+@[^@\s]+$")
_NUMERIC_TO_ALPHA = {c.numeric: c.code for c in SUPPORTED_CURRENCIES.values()}


@dataclass(frozen=True)
class PaymentRequest:
    account_id: str
    merchant_name: str
    merchant_city: str
    currency: str
    amount: Optional[Decimal] = None
    merchant_category_code: str = "5999"
    bill_number: Optional[str] = None
    mobile_number: Optional[str] = None
    store_label: Optional[str] = None
    terminal_label: Optional[str] = None
    purpose: Optional[str] = None
    account_information: Optional[str] = None
    acquiring_bank: Optional[str] = None
    created_at_ms: Optional[int] = None
    expires_at_ms: Optional[int] = None


@dataclass(frozen=True)
class EncodeSuccess:
    payload: str
    md5: str


@dataclass(frozen=True)
class EncodeFailure:
    message: str


EncodeResult = Union[EncodeSuccess, EncodeFailure]


class PaymentCodec(Protocol):
    def encode(self, request: PaymentRequest) -> EncodeResult:
        ...


class KHQRDecodeError(ValueError):
    pass


class _InvalidField(ValueError):
    pass


def crc16(data: str) -> str:
    """CRC-16/CCITT-FALSE (poly 0x1021, init 0xFFFF) as 4 uppercase hex digits."""
    return f"{binascii.crc_hqx(data.encode('utf-8'), 0xFFFF):04X}"


def plain_amount(amount: Decimal) -> str:
    """Amount as written into tag 54: plain notation, no trailing zeros."""
    text = format(amount, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def md5(payload: str) -> str:
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def _tlv(tag: str, value: str) -> str:
    if len(value) > 99:
        raise _InvalidField(f"Value of tag {tag} is too long")
    return f"{tag}{len(value):02d}{value}"


def _format_amount(amount: Decimal, currency: str) -> str:
    try:
        amount = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise _InvalidField("Amount is invalid")
    if not amount.is_finite() or amount <= 0:
        raise _InvalidField("Amount is invalid")

    exponent = SUPPORTED_CURRENCIES[currency].exponent
    try:
        scaled = amount.quantize(SUPPORTED_CURRENCIES[currency].quantum)
    except InvalidOperation:
        raise _InvalidField("Amount is too long")
    if amount != scaled:
        if exponent == 0:
            raise _InvalidField(f"{currency} amount must be a whole number")
        raise _InvalidField(f"{currency} amount cannot have more than {exponent} decimal places")

    text = plain_amount(amount)
    if len(text) > MAX_AMOUNT_LENGTH:
        raise _InvalidField("Amount is too long")
    return text


def _optional(tag: str, value: Optional[str], label: str, limit: int = MAX_ADDITIONAL_FIELD) -> str:
    if not value:
        return ""
    if len(value) > limit:
        raise _InvalidField(f"{label} length is invalid")
    return _tlv(tag, value)


def _build(req: PaymentRequest) -> str:
    account_id = (req.account_id or "").strip()
    if not account_id:
        raise _InvalidField("Bakong Account ID cannot be null or empty")
    if len(account_id) > MAX_ACCOUNT_ID:
        raise _InvalidField("Bakong Account ID length is invalid")
    if not _ACCOUNT_RE.match(account_id):
        raise _InvalidField("Bakong Account ID is invalid")

    if not req.merchant_name:
        raise _InvalidField("Merchant name cannot be null or empty")
    if len(req.merchant_name) > MAX_MERCHANT_NAME:
        raise _InvalidField("Merchant name length is invalid")
    if not req.merchant_city:
        raise _InvalidField("Merchant city cannot be null or empty")
    if len(req.merchant_city) > MAX_MERCHANT_CITY:
        raise _InvalidField("Merchant city length is invalid")

    currency = (req.currency or "").upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise _InvalidField(f"Unsupported currency: {req.currency}")

    mcc = req.merchant_category_code
    if not (mcc and len(mcc) == 4 and mcc.isdigit()):
        raise _InvalidField("Merchant category code is invalid")

    dynamic = req.amount is not None
    if dynamic:
        if req.expires_at_ms is None:
            raise _InvalidField("Expiration timestamp is required for dynamic KHQR")
        if len(str(req.expires_at_ms)) != 13:
            raise _InvalidField("Expiration timestamp is invalid")
        if req.created_at_ms is not None and req.expires_at_ms <= req.created_at_ms:
            raise _InvalidField("Expiration timestamp must be after creation")

    account = _tlv(ACCOUNT_ID, account_id)
    account += _optional(ACCOUNT_INFORMATION, req.account_information, "Account information", 32)
    account += _optional(ACQUIRING_BANK, req.acquiring_bank, "Acquiring bank", 32)

    parts = [
        _tlv(PAYLOAD_FORMAT_INDICATOR, "01"),
        _tlv(POINT_OF_INITIATION, DYNAMIC_QR if dynamic else STATIC_QR),
        _tlv(INDIVIDUAL_ACCOUNT, account),
        _tlv(MERCHANT_CATEGORY_CODE, mcc),
        _tlv(TRANSACTION_CURRENCY, SUPPORTED_CURRENCIES[currency].numeric),
    ]
    if dynamic:
        parts.append(_tlv(TRANSACTION_AMOUNT, _format_amount(req.amount, currency)))
    parts += [
        _tlv(COUNTRY_CODE, "KH"),
        _tlv(MERCHANT_NAME, req.merchant_name),
        _tlv(MERCHANT_CITY, req.merchant_city),
    ]

    additional = "".join([
        _optional(BILL_NUMBER, req.bill_number, "Bill number"),
        _optional(MOBILE_NUMBER, req.mobile_number, "Mobile number"),
        _optional(STORE_LABEL, req.store_label, "Store label"),
        _optional(TERMINAL_LABEL, req.terminal_label, "Terminal label"),
        _optional(PURPOSE_OF_TRANSACTION, req.purpose, "Purpose of transaction"),
    ])
    if additional:
        parts.append(_tlv(ADDITIONAL_DATA, additional))

    if dynamic:
        stamps = ""
        if req.created_at_ms is not None:
            stamps += _tlv(CREATION_TIMESTAMP, str(req.created_at_ms))
        stamps += _tlv(EXPIRATION_TIMESTAMP, str(req.expires_at_ms))
        parts.append(_tlv(TIMESTAMP, stamps))

    body = "".join(parts) + CRC + "04"
    return body + crc16(body)


class KHQRCodec:
    """Encodes individual-account KHQR payloads."""

    def encode(self, request: PaymentRequest) -> EncodeResult:
        try:
            payload = _build(request)
        except _InvalidField as e:
            return EncodeFailure(str(e))
        return EncodeSuccess(payload=payload, md5=md5(payload))


def _parse_tlv(data: str) -> list[tuple[str, str]]:
    fields = []
    pos = 0
    while pos < len(data):
        header = data[pos:pos + 4]
        if len(header) < 4 or not header.isdigit():
            raise KHQRDecodeError(f"Malformed field header at offset {pos}")
        tag, length = header[:2], int(header[2:])
        value = data[pos + 4:pos + 4 + length]
        if len(value) != length:
            raise KHQRDecodeError(f"Truncated value for tag {tag}")
        fields.append((tag, value))
        pos += 4 + length
    return fields


def decode(payload: str) -> dict:
    """Parse a KHQR string into a flat dict of known fields.

    Raises:
        KHQRDecodeError: when the string is not well-formed TLV or the
            trailing CRC does not match.
    """
    if len(payload) < 8 or payload[-8:-4] != CRC + "04":
        raise KHQRDecodeError("Missing CRC field")
    if crc16(payload[:-4]) != payload[-4:].upper():
        raise KHQRDecodeError("CRC mismatch")

    out: dict = {}
    for tag, value in _parse_tlv(payload[:-8]):
        if tag == PAYLOAD_FORMAT_INDICATOR:
            out["payload_format_indicator"] = value
        elif tag == POINT_OF_INITIATION:
            out["point_of_initiation"] = value
        elif tag == INDIVIDUAL_ACCOUNT:
            sub = dict(_parse_tlv(value))
            out["bakong_account_id"] = sub.get(ACCOUNT_ID)
            out["account_information"] = sub.get(ACCOUNT_INFORMATION)
            out["acquiring_bank"] = sub.get(ACQUIRING_BANK)
        elif tag == MERCHANT_CATEGORY_CODE:
            out["merchant_category_code"] = value
        elif tag == TRANSACTION_CURRENCY:
            out["transaction_currency"] = _NUMERIC_TO_ALPHA.get(value, value)
        elif tag == TRANSACTION_AMOUNT:
            out["transaction_amount"] = value
        elif tag == COUNTRY_CODE:
            out["country_code"] = value
        elif tag == MERCHANT_NAME:
            out["merchant_name"] = value
        elif tag == MERCHANT_CITY:
            out["merchant_city"] = value
        elif tag == ADDITIONAL_DATA:
            sub = dict(_parse_tlv(value))
            out["bill_number"] = sub.get(BILL_NUMBER)
            out["mobile_number"] = sub.get(MOBILE_NUMBER)
            out["store_label"] = sub.get(STORE_LABEL)
            out["terminal_label"] = sub.get(TERMINAL_LABEL)
            out["purpose_of_transaction"] = sub.get(PURPOSE_OF_TRANSACTION)
        elif tag == TIMESTAMP:
            sub = dict(_parse_tlv(value))
            out["creation_timestamp"] = sub.get(CREATION_TIMESTAMP)
            out["expiration_timestamp"] = sub.get(EXPIRATION_TIMESTAMP)
    out["crc"] = payload[-4:]
    return out
