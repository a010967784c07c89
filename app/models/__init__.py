from app.models.user import User
from app.models.payment import PaymentRecord
from app.models.usage_record import UsageRecord

__all__ = [
    "User",
    "PaymentRecord",
    "UsageRecord",
]
