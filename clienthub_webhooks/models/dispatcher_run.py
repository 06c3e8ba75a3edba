import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Integer, Text, Uuid
from clienthub_webhooks.db.session import Base


class DispatcherRun(Base):
    __tablename__ = "webhook_dispatcher_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    triggered_by = Column(Text, nullable=False, default="http")
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    events_processed = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=True)
    error_message = Column(Text, nullable=True)
