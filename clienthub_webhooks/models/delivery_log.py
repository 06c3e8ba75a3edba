import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Text, Uuid
from clienthub_webhooks.db.session import Base


class DeliveryLog(Base):
    __tablename__ = "webhook_delivery_logs"

    id = Column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    webhook_id = Column(
        Uuid,
        ForeignKey("webhook_configurations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type = Column(Text, nullable=False)
    event_id = Column(Text, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    # None when the request never completed (timeout, network error)
    status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    response_headers = Column(JSON, nullable=True)
    attempt_number = Column(Integer, nullable=False, default=1)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )
