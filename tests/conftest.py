# tests/conftest.py
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from cafepay.config import Settings
from cafepay.main import create_app
from cafepay.models import MerchantIdentity, SettlementRecord
from cafepay.services.ledger import OrderLedger
from cafepay.services.orders import OrderFactory

ACCOUNT_ID = "cafe_test@aclb"


class FakeSettlement:
    """Settlement port that returns a canned record (or raises) and counts calls."""

    def __init__(self, record=None, error=None):
        self.record = record
        self.error = error
        self.calls = []

    def check_transaction_by_md5(self, md5):
        self.calls.append(md5)
        if self.error is not None:
            raise self.error
        return self.record


def paid(amount, currency="USD"):
    return SettlementRecord(amount=Decimal(str(amount)), currency=currency, hash="abc123")


@pytest.fixture
def merchant():
    return MerchantIdentity(account_id=ACCOUNT_ID, name="CVG Cafe", city="Phnom Penh")


@pytest.fixture
def factory():
    # Skip PNG rendering in unit tests
    return OrderFactory(rasterizer=lambda payload: "data:image/png;base64,stub")


@pytest.fixture
def ledger():
    return OrderLedger()


@pytest.fixture
def test_settings():
    return Settings(
        bakong_account_id=ACCOUNT_ID,
        bakong_token="",
        merchant_name="CVG Cafe",
        merchant_city="Phnom Penh",
        default_currency="USD",
    )


@pytest.fixture
def settlement():
    return FakeSettlement()


@pytest.fixture
def app(test_settings):
    return create_app(settings=test_settings)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
