import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agrirent.database import Base
from agrirent.models.enums import BillingScheme, BillingUnit, MachineType
from agrirent.models.types import GUID


class Machine(Base):
    __tablename__ = "machines"
    __table_args__ = (
        CheckConstraint("rate >= 0", name="rate_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    machine_type: Mapped[MachineType] = mapped_column(String(20), nullable=False)
    billing_scheme: Mapped[BillingScheme] = mapped_column(String(10), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    unit: Mapped[BillingUnit] = mapped_column(String(10), nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    owner: Mapped["User"] = relationship("User", lazy="raise")
