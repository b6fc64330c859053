# tests/test_orders.py
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cafepay.errors import EncodingFailure, InvalidAmount, InvalidCurrency, MisconfiguredMerchant
from cafepay.khqr import EncodeFailure, decode
from cafepay.models import MerchantIdentity, OrderStatus
from cafepay.services.orders import OrderFactory, generate_order_id, parse_amount

ORDER_ID_RE = re.compile(r"^CAFE-\d{14}-\d{3}$")


def test_create_order_returns_pending_order_with_payload(factory, merchant):
    created = factory.create_order(1.50, "usd", merchant)
    order = created.order

    assert ORDER_ID_RE.match(order.id)
    assert order.status == OrderStatus.PENDING
    assert order.amount == Decimal("1.50")
    assert order.currency == "USD"
    assert len(order.fingerprint) == 32
    assert created.qr_image == "data:image/png;base64,stub"

    d = decode(order.encoded_payload)
    assert Decimal(d["transaction_amount"]) == order.amount
    assert d["transaction_currency"] == "USD"
    assert d["bill_number"] == order.id


def test_expiry_is_ten_minutes_after_creation(merchant):
    fixed = datetime(2025, 10, 17, 2, 30, tzinfo=timezone.utc)
    f = OrderFactory(rasterizer=lambda p: "", clock=lambda: fixed)
    order = f.create_order("2", None, merchant).order
    assert order.created_at == fixed
    assert order.expires_at == fixed + timedelta(minutes=10)
    d = decode(order.encoded_payload)
    assert d["expiration_timestamp"] == str(int(order.expires_at.timestamp() * 1000))


def test_currency_defaults_to_configured_default(merchant):
    f = OrderFactory(rasterizer=lambda p: "", default_currency="KHR")
    assert f.create_order(4000, None, merchant).order.currency == "KHR"
    assert f.create_order(4000, "", merchant).order.currency == "KHR"


def test_khr_amount_is_rounded_to_whole_riel(factory, merchant):
    order = factory.create_order(10.7, "KHR", merchant).order
    assert order.amount == Decimal("11")
    assert decode(order.encoded_payload)["transaction_amount"] == "11"


def test_khr_half_rounds_up(factory, merchant):
    assert factory.create_order("10.5", "KHR", merchant).order.amount == Decimal("11")


def test_usd_amount_is_rounded_to_cents(factory, merchant):
    assert factory.create_order("1.005", "USD", merchant).order.amount == Decimal("1.01")


def test_amount_string_is_coerced(factory, merchant):
    assert factory.create_order(" 2.25 ", "USD", merchant).order.amount == Decimal("2.25")


@pytest.mark.parametrize("amount", [0, -3, "0", "abc", "", None, float("nan"), float("inf"), True, [1], {"v": 1}])
def test_invalid_amount_is_rejected(factory, merchant, amount):
    with pytest.raises(InvalidAmount):
        factory.create_order(amount, "USD", merchant)


def test_amount_rounding_to_zero_is_rejected(factory, merchant):
    with pytest.raises(InvalidAmount):
        factory.create_order(0.4, "KHR", merchant)


def test_unsupported_currency_is_rejected(factory, merchant):
    with pytest.raises(InvalidCurrency) as e:
        factory.create_order(1, "eur", merchant)
    assert "EUR" in e.value.message


@pytest.mark.parametrize("account_id", ["", "   ", "no-separator", "@aclb", "cafe@"])
def test_misconfigured_merchant_is_rejected(factory, account_id):
    merchant = MerchantIdentity(account_id=account_id, name="CVG Cafe", city="Phnom Penh")
    with pytest.raises(MisconfiguredMerchant):
        factory.create_order(1, "USD", merchant)


def test_codec_failure_propagates_detail(merchant):
    class BrokenCodec:
        def encode(self, request):
            return EncodeFailure("Merchant name length is invalid")

    f = OrderFactory(codec=BrokenCodec(), rasterizer=lambda p: "")
    with pytest.raises(EncodingFailure) as e:
        f.create_order(1, "USD", merchant)
    assert e.value.detail == "Merchant name length is invalid"
    assert e.value.to_body() == {
        "ok": False,
        "error": "Failed to generate KHQR",
        "detail": "Merchant name length is invalid",
    }


def test_real_codec_rejects_overlong_merchant_name(factory):
    merchant = MerchantIdentity(account_id="cafe@aclb", name="A" * 40, city="Phnom Penh")
    with pytest.raises(EncodingFailure) as e:
        factory.create_order(1, "USD", merchant)
    assert e.value.detail == "Merchant name length is invalid"


def test_ids_differ_across_orders(factory, merchant):
    ids = {factory.create_order(1, "USD", merchant).order.id for _ in range(5)}
    # same-second ids can collide on the 3-digit suffix, but not all five
    assert len(ids) > 1


def test_generate_order_id_uses_local_timestamp():
    now = datetime(2025, 10, 17, 2, 30, 5, tzinfo=timezone.utc)
    oid = generate_order_id("CAFE", now)
    assert oid.startswith("CAFE-" + now.astimezone().strftime("%Y%m%d%H%M%S") + "-")


def test_parse_amount_accepts_decimal():
    assert parse_amount(Decimal("3.5")) == Decimal("3.5")


def test_real_rasterizer_produces_png_data_url(merchant):
    created = OrderFactory().create_order(1, "USD", merchant)
    assert created.qr_image.startswith("data:image/png;base64,")


@pytest.mark.parametrize("amount, currency", [
    (10000000000000, "USD"),
    ("12345678901.23", "USD"),
    ("99999999999999", "KHR"),
])
def test_amount_too_long_for_qr_is_invalid_amount(factory, merchant, amount, currency):
    with pytest.raises(InvalidAmount):
        factory.create_order(amount, currency, merchant)


def test_longest_amount_that_fits_is_accepted(factory, merchant):
    order = factory.create_order("9999999999999", "KHR", merchant).order
    assert decode(order.encoded_payload)["transaction_amount"] == "9999999999999"
