import uuid

from sqlalchemy import Boolean, Column, DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB, UUID

from account_security.db.base import Base


class UserSession(Base):
    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("ix_user_sessions_user_tenant_active", "user_id", "tenant_id", "is_active"),
        Index("ix_user_sessions_tenant_created", "tenant_id", "created_at"),
        Index("ix_user_sessions_active_expires", "is_active", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    session_token = Column(String(255), nullable=False, unique=True)
    ip_address = Column(String(64), nullable=False, index=True)
    user_agent = Column(String(1024), nullable=False)
    device_info = Column(JSONB, nullable=False, default=dict)
    location = Column(JSONB, nullable=False, default=dict)
    fingerprint = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_activity = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, server_default="true")
    terminated_by = Column(String(64), nullable=True)
    terminated_at = Column(DateTime(timezone=True), nullable=True)
    termination_reason = Column(String(255), nullable=True)
    security_flags = Column(JSONB, nullable=False, default=list)
    activity_log = Column(JSONB, nullable=False, default=list)
    session_metadata = Column("metadata", JSONB, nullable=False, default=dict)
