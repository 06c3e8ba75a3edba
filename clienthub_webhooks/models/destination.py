import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Text, Uuid
from clienthub_webhooks.db.session import Base


DEFAULT_EVENTS = ["client.created", "client.updated", "client.deleted"]


class WebhookDestination(Base):
    __tablename__ = "webhook_configurations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    url = Column(Text, nullable=False)
    secret_key = Column(Text, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    events = Column(JSON, nullable=False, default=lambda: list(DEFAULT_EVENTS))
    headers = Column(JSON, nullable=False, default=dict)
    http_method = Column(Text, nullable=False, default="POST")
    # consecutive failures; 10 opens the circuit
    failure_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in (self.events or [])
