"""Prometheus metrics for booking and payment observability."""

from prometheus_client import Counter, Histogram

# Booking lifecycle counters
BOOKINGS_CREATED = Counter(
    "agrirent_bookings_created_total",
    "Total bookings requested",
    ["billing_scheme"],
)
BOOKING_TRANSITIONS = Counter(
    "agrirent_booking_transitions_total",
    "Booking status changes",
    ["from_status", "to_status"],
)
BOOKINGS_CANCELLED = Counter(
    "agrirent_bookings_cancelled_total",
    "Total bookings cancelled",
    ["cancelled_by"],
)

# One-time code checks
OTP_VERIFICATIONS = Counter(
    "agrirent_otp_verifications_total",
    "OTP verification attempts by outcome",
    ["purpose", "outcome"],
)

# Payment counters
PAYMENTS_FINALIZED = Counter(
    "agrirent_payments_finalized_total",
    "Total bookings settled as paid",
)
PAYMENTS_REFUNDED = Counter(
    "agrirent_payments_refunded_total",
    "Total dispute refunds issued",
)

# Stripe API call duration
STRIPE_CALL_DURATION = Histogram(
    "agrirent_stripe_call_duration_seconds",
    "Duration of Stripe API calls",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

# Scheduler job counters
SCHEDULER_JOB_RUNS = Counter(
    "agrirent_scheduler_job_runs_total",
    "Total scheduler job executions",
    ["job_name", "status"],
)
