import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agrirent.database import Base
from agrirent.models.enums import BookingStatus, PaymentStatus
from agrirent.models.types import GUID


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("billing_rate >= 0", name="billing_rate_positive"),
        CheckConstraint("calculated_amount IS NULL OR calculated_amount >= 0", name="calculated_amount_positive"),
        CheckConstraint("refunded_amount >= 0", name="refunded_amount_positive"),
        CheckConstraint(
            "timer_stopped_at IS NULL OR timer_started_at IS NOT NULL", name="timer_started_before_stop"
        ),
        Index("ix_booking_farmer_created", "farmer_id", "created_at"),
        Index("ix_booking_owner_created", "owner_id", "created_at"),
        Index("ix_booking_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    farmer_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    machine_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("machines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[BookingStatus] = mapped_column(
        String(30), nullable=False, default=BookingStatus.REQUESTED, index=True
    )

    requested_start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    arrival_deadline_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Codes live in the OTP authority only; the booking keeps the timestamps.
    otp_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arrival_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    timer_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    timer_stopped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    billing_scheme: Mapped[str] = mapped_column(String(10), nullable=False)
    billing_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    billing_unit: Mapped[str] = mapped_column(String(10), nullable=False)
    area_units: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    calculated_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    paid_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))

    payment_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    dispute_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    dispute_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_raised_by: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    dispute_raised_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Only populated once the booking leaves the active path.
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(10), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    farmer: Mapped["User"] = relationship("User", foreign_keys=[farmer_id], lazy="raise")
    owner: Mapped["User"] = relationship("User", foreign_keys=[owner_id], lazy="raise")
    machine: Mapped["Machine"] = relationship("Machine", lazy="raise")
    review: Mapped["Review | None"] = relationship(
        "Review", back_populates="booking", uselist=False, lazy="raise"
    )

    def is_party(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.farmer_id, self.owner_id)
