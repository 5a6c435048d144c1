"""CreditAccount model: the derived balance for one user."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditAccount(Base):
    """Per-user credit counters. Only the ledger service writes these."""

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("credits_total >= 0", name="ck_credit_accounts_total_non_negative"),
        CheckConstraint("credits_used >= 0", name="ck_credit_accounts_used_non_negative"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    credits_total = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="credit_account")

    @property
    def remaining(self) -> int:
        return max(int(self.credits_total or 0) - int(self.credits_used or 0), 0)
