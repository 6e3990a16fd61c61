import uuid

from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB, UUID

from account_security.db.base import Base


class SecurityEventLog(Base):
    __tablename__ = "security_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(1024), nullable=True)
    resource = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False)
    outcome = Column(String(16), nullable=False)
    severity = Column(String(16), nullable=False, index=True)
    details = Column(JSONB, nullable=False, default=dict)
    occurred_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
