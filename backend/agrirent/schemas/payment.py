import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from agrirent.models.enums import TransactionStatus, TransactionType


class PaymentInitiateRequest(BaseModel):
    booking_id: uuid.UUID


class PaymentInitiateResponse(BaseModel):
    transaction_id: uuid.UUID
    order_id: str
    amount: Decimal
    currency: str
    is_mock: bool


class PaymentConfirmRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=255)


class TransactionResponse(BaseModel):
    id: uuid.UUID
    type: TransactionType
    amount: Decimal
    status: TransactionStatus
    booking_id: uuid.UUID
    gateway: str
    gateway_order_id: str | None
    notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    total_earnings: Decimal


class DisputeResolveRequest(BaseModel):
    resolution: str = Field(min_length=1, max_length=2000)
    refund_amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
