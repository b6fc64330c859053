from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from cafepay.models import OrderStatus


class OrderCreate(BaseModel):
    # Left untyped: OrderFactory coerces it so any bad value (booleans included) is InvalidAmount
    amount: Any = None
    currency: Optional[str] = Field(default=None, description="USD or KHR; defaults to CURRENCY")


class _CamelOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class OrderCreated(_CamelOut):
    ok: Literal[True] = True
    order_id: str = Field(alias="orderId")
    amount: float
    currency: str
    fingerprint: str
    qr_image: str = Field(alias="qrImage")
    expires_at: datetime = Field(alias="expiresAt")


class OrderStatusOut(_CamelOut):
    ok: Literal[True] = True
    status: OrderStatus
    amount: float
    currency: str
    note: Optional[str] = None


class OrderDetail(_CamelOut):
    order_id: str = Field(alias="orderId")
    amount: float
    currency: str
    fingerprint: str
    status: OrderStatus
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")
    paid_at: Optional[datetime] = Field(default=None, alias="paidAt")


class ErrorOut(BaseModel):
    ok: Literal[False] = False
    error: str
    detail: Optional[str] = None
