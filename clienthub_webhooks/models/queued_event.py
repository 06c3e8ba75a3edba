import uuid
from datetime import datetime
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, Text, Uuid
from clienthub_webhooks.db.session import Base


STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class QueuedEvent(Base):
    __tablename__ = "webhook_events_queue"
    __table_args__ = (
        Index("idx_webhook_queue_status_scheduled", "status", "scheduled_for"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    webhook_id = Column(
        Uuid,
        ForeignKey("webhook_configurations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type = Column(Text, nullable=False)
    event_id = Column(Text, nullable=False)
    # snapshot taken at enqueue time, never rewritten
    payload = Column(JSON, nullable=False)
    scheduled_for = Column(DateTime, nullable=False, default=datetime.utcnow)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    # "pending", "processing", "completed", "failed"
    status = Column(Text, nullable=False, default=STATUS_PENDING)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
