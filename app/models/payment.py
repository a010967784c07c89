from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.time import utcnow

PAYMENT_PENDING = "pending"
# A succeeded payment whose account or plan could not be resolved yet
PAYMENT_UNMATCHED = "unmatched"
PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_FAILED = "failed"
# Provider annotations recorded after a payment already succeeded
PAYMENT_REFUNDED = "refunded"
PAYMENT_DISPUTED = "disputed"

TERMINAL_STATUSES = {PAYMENT_SUCCEEDED, PAYMENT_FAILED, PAYMENT_REFUNDED, PAYMENT_DISPUTED}
OPEN_STATUSES = {PAYMENT_PENDING, PAYMENT_UNMATCHED}


class PaymentRecord(Base):
    """
    One row per external payment coming from Dodo Payments.

    external_payment_id is the idempotency key: a credit grant is applied at
    most once per key, however many times the webhook is delivered.
    """

    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True, index=True)
    external_payment_id = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Amount in minor units (e.g. 900 for USD 9.00)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")
    status = Column(String, nullable=False, default=PAYMENT_PENDING)

    payer_email = Column(String, nullable=True)
    payer_name = Column(String, nullable=True)
    plan_id = Column(String, nullable=True)
    credits_granted = Column(Integer, nullable=False, default=0)
    metadata_json = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="payments")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
