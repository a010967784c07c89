from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.time import utcnow


class User(Base):
    """
    Account row. Identity fields are owned by the identity provider; the credit
    fields are only ever changed through app.services.ledger.
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("purchased_credits >= 0", name="ck_users_purchased_credits_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String, unique=True, index=True, nullable=False)  # Identity provider subject ("sub")
    email = Column(String, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)

    # Post allocations and AI-tool credits
    free_posts_used = Column(Integer, default=0, nullable=False)
    purchased_credits = Column(Integer, default=0, nullable=False)
    unlimited_until = Column(DateTime, nullable=True)

    # Optimistic concurrency counter, bumped on every write to this row
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    payments = relationship("PaymentRecord", back_populates="user")
    usage_records = relationship("UsageRecord", back_populates="user")

    __mapper_args__ = {"version_id_col": version}

    def has_unlimited_window(self, now) -> bool:
        return self.unlimited_until is not None and now < self.unlimited_until
