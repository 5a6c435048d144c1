"""CreditTransaction model for the append-only credit ledger."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_TYPES = ("debit", "credit", "refund", "reset")


class CreditTransaction(Base):
    """Immutable ledger entry. `idempotency_key` is unique across the table."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    feature = Column(String, nullable=True)
    description = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    idempotency_key = Column(String, nullable=False, unique=True, index=True)
    external_ref = Column(String, nullable=True, index=True)
    balance_after = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_transactions")
