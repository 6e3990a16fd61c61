from account_security.models.mfa_record import MfaRecord
from account_security.models.security_event import SecurityEventLog
from account_security.models.user_session import UserSession

__all__ = [
    "MfaRecord",
    "SecurityEventLog",
    "UserSession",
]
