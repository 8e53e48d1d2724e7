import enum

# Stored as VARCHAR columns; CHECK constraints on the tables keep the value sets honest.


class UserRole(str, enum.Enum):
    FARMER = "farmer"
    OWNER = "owner"
    ADMIN = "admin"


class MachineType(str, enum.Enum):
    TRACTOR = "tractor"
    HARVESTER = "harvester"
    SPRAYER = "sprayer"
    THRESHER = "thresher"
    OTHER = "other"


class BookingStatus(str, enum.Enum):
    REQUESTED = "requested"
    OWNER_CONFIRMED = "owner_confirmed"
    ARRIVED_OTP_VERIFIED = "arrived_otp_verified"
    IN_PROGRESS = "in_progress"
    COMPLETED_PENDING_PAYMENT = "completed_pending_payment"
    PAID = "paid"
    CANCELLED = "cancelled"
    AUTO_CANCELLED = "auto_cancelled"
    DISPUTED = "disputed"


class BillingScheme(str, enum.Enum):
    TIME = "time"
    AREA = "area"
    DAILY = "daily"


class BillingUnit(str, enum.Enum):
    HOUR = "hour"
    BIGHA = "bigha"
    DAY = "day"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    VERIFIED = "verified"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"


class TransactionType(str, enum.Enum):
    PAYMENT = "payment"
    DEBIT = "debit"
    CREDIT = "credit"
    REFUND = "refund"
    HOLD = "hold"
    RELEASE = "release"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"
    VERIFIED = "verified"


class DisputeCode(str, enum.Enum):
    LATE_ARRIVAL = "LATE_ARRIVAL"
    OTP_MISMATCH = "OTP_MISMATCH"
    BILLING_ISSUE = "BILLING_ISSUE"
    OTHER = "OTHER"


class CancelledBy(str, enum.Enum):
    FARMER = "farmer"
    OWNER = "owner"
    SYSTEM = "system"
    ADMIN = "admin"


class OTPPurpose(str, enum.Enum):
    ARRIVAL = "arrival"
    COMPLETION = "completion"


class NotificationType(str, enum.Enum):
    BOOKING_REQUESTED = "booking_requested"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_CANCELLED = "booking_cancelled"
    WORK_STARTED = "work_started"
    WORK_COMPLETED = "work_completed"
    BOOKING_DISPUTED = "booking_disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    PAYMENT_RECEIVED = "payment_received"
    NEW_REVIEW = "new_review"
