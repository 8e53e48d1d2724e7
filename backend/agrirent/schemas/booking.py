import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from agrirent.models.enums import BookingStatus, DisputeCode, OTPPurpose, PaymentStatus


class BookingCreateRequest(BaseModel):
    machine_id: uuid.UUID
    requested_start_at: datetime
    area_units: Decimal | None = Field(None, gt=0, max_digits=10, decimal_places=2)


class ConfirmRequest(BaseModel):
    action: Literal["accept", "reject"] = "accept"
    reason: str | None = Field(None, max_length=500)


class OTPRequest(BaseModel):
    # Clients send the code as typed; ints are accepted and normalised to their digits
    otp: str | int

    @field_validator("otp")
    @classmethod
    def validate_otp(cls, v: str | int) -> str:
        code = str(v).strip()
        if not code.isdigit():
            raise ValueError("Code must be numeric")
        return code


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class DisputeRequest(BaseModel):
    code: DisputeCode
    description: str | None = Field(None, max_length=2000)


class ResendOTPRequest(BaseModel):
    type: OTPPurpose


class BookingResponse(BaseModel):
    id: uuid.UUID
    farmer_id: uuid.UUID
    owner_id: uuid.UUID
    machine_id: uuid.UUID
    status: BookingStatus
    requested_start_at: datetime
    arrival_deadline_at: datetime | None
    otp_expires_at: datetime | None
    arrival_verified_at: datetime | None
    completion_verified_at: datetime | None
    timer_started_at: datetime | None
    timer_stopped_at: datetime | None
    duration_minutes: int | None
    billing_scheme: str
    billing_rate: Decimal
    billing_unit: str
    area_units: Decimal | None
    calculated_amount: Decimal | None
    paid_amount: Decimal | None
    refunded_amount: Decimal
    payment_status: PaymentStatus
    payment_transaction_id: str | None
    paid_at: datetime | None
    dispute_code: str | None
    dispute_description: str | None
    dispute_resolution: str | None
    dispute_resolved_at: datetime | None
    cancellation_reason: str | None
    cancelled_by: str | None
    cancelled_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}
