from agrirent.models.audit_log import AuditLog
from agrirent.models.booking import Booking
from agrirent.models.machine import Machine
from agrirent.models.notification import Notification
from agrirent.models.review import Review
from agrirent.models.transaction import Transaction
from agrirent.models.user import User
from agrirent.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "AuditLog",
    "User",
    "Machine",
    "Booking",
    "Transaction",
    "Review",
    "Notification",
    "ProcessedWebhookEvent",
]
