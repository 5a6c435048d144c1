"""Job model for queued, credit-charged work."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


JOB_STATUSES = ("queued", "processing", "completed", "failed")
TERMINAL_JOB_STATUSES = ("completed", "failed")


class Job(Base):
    """Queued live-refresh job. Status only moves forward."""

    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    kind = Column(String, nullable=False, default="live_refresh")
    status = Column(String, nullable=False, default="queued", index=True)
    provider = Column(String, nullable=False)
    credits_charged = Column(Integer, nullable=False, default=0)
    idempotency_key = Column(String, nullable=False, unique=True, index=True)
    queue_message_id = Column(String, nullable=True)
    result_count = Column(Integer, nullable=False, default=0)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="jobs")
    project = relationship("Project", back_populates="jobs")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES
