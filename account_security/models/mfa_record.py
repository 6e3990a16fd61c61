import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, UUID

from account_security.db.base import Base
from account_security.models.types import EncryptedString


class MfaRecord(Base):
    """One TOTP enrollment per (user, tenant). Soft lifecycle only; rows are never deleted."""

    __tablename__ = "mfa_records"
    __table_args__ = (UniqueConstraint("user_id", "tenant_id", name="uq_mfa_records_user_tenant"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    secret = Column(EncryptedString(), nullable=False)
    is_enabled = Column(Boolean, nullable=False, server_default="false")
    is_verified = Column(Boolean, nullable=False, server_default="false")
    # SHA-256 digests; a digest is never in both lists at once.
    backup_codes = Column(JSONB, nullable=False, default=list)
    used_backup_codes = Column(JSONB, nullable=False, default=list)
    failed_attempts = Column(Integer, nullable=False, server_default="0")
    locked_until = Column(DateTime(timezone=True), nullable=True, index=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    activity_log = Column(JSONB, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
