"""HTTP client for the Bakong settlement API.

Only one operation is consumed: look a transaction up by the MD5 of the
KHQR payload that was presented to the payer. The client makes exactly one
request per call with an explicit timeout and never retries; polling
cadence belongs to the POS client.

Bakong answers ``{"responseCode": 0, "data": {...}}`` when the
transaction exists and ``{"responseCode": 1, "errorCode": 1, ...}`` when
it does not. Anything that is not a 2xx JSON answer is a
``SettlementError``.
"""

import logging
from decimal import Decimal, InvalidOperation
from time import perf_counter
from typing import Optional, Protocol

import httpx

from cafepay.errors import SettlementError
from cafepay.logging_config import REQUEST_ID_CTX
from cafepay.metrics import settlement_errors, settlement_latency
from cafepay.models import SettlementRecord

logger = logging.getLogger("cafepay.settlement")

CHECK_BY_MD5_PATH = "/v1/check_transaction_by_md5"
BODY_EXCERPT = 500


class SettlementPort(Protocol):
    """Port for the settlement authority consumed by the ledger."""

    def check_transaction_by_md5(self, md5: str) -> Optional[SettlementRecord]:
        """Return the settlement record for ``md5`` or None when not paid yet.

        Raises:
            SettlementError: On transport failure or a non-success response.
        """
        raise NotImplementedError()


def _parse_record(data: dict) -> SettlementRecord:
    try:
        amount = Decimal(str(data["amount"]))
        currency = str(data["currency"]).strip().upper()
    except (KeyError, TypeError, InvalidOperation) as e:
        raise SettlementError(f"settlement record missing amount/currency: {e!r}")
    if not amount.is_finite() or not currency:
        raise SettlementError("settlement record has an unusable amount/currency")
    return SettlementRecord(
        amount=amount,
        currency=currency,
        hash=data.get("hash"),
        from_account=data.get("fromAccountId"),
        to_account=data.get("toAccountId"),
        description=data.get("description"),
        acknowledged_at_ms=data.get("acknowledgedDateMs"),
    )


class BakongClient(SettlementPort):
    """Settlement client backed by ``httpx``."""

    def __init__(self, base_url: str, token: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        rid = REQUEST_ID_CTX.get()
        if rid and rid != "-":
            headers["X-Request-ID"] = rid
        return headers

    def check_transaction_by_md5(self, md5: str) -> Optional[SettlementRecord]:
        start = perf_counter()
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(
                    f"{self.base_url}{CHECK_BY_MD5_PATH}",
                    json={"md5": md5},
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            settlement_errors.labels("timeout").inc()
            raise SettlementError(f"settlement request timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            settlement_errors.labels("transport").inc()
            raise SettlementError(f"settlement transport error: {e!r}") from e
        finally:
            settlement_latency.observe(perf_counter() - start)

        if not 200 <= resp.status_code < 300:
            settlement_errors.labels(f"{resp.status_code}").inc()
            raise SettlementError(
                f"settlement API returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=(resp.text or "")[:BODY_EXCERPT],
            )

        try:
            body = resp.json()
        except ValueError as e:
            settlement_errors.labels("invalid_json").inc()
            raise SettlementError("settlement API returned a non-JSON body", status_code=resp.status_code) from e

        if not isinstance(body, dict):
            settlement_errors.labels("invalid_json").inc()
            raise SettlementError("settlement API returned an unexpected body", status_code=resp.status_code)

        data = body.get("data")
        if body.get("responseCode") == 0 and isinstance(data, dict) and data:
            return _parse_record(data)

        logger.debug(
            "no settlement yet",
            extra={"md5": md5, "response_code": body.get("responseCode"), "error_code": body.get("errorCode")},
        )
        return None
