"""TOTP engine: secrets, codes, backup codes and provisioning URIs.

Codes follow RFC 6238 with HMAC-SHA1, 30 second steps and 6 digits, which is
what every mainstream authenticator app expects.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
import secrets
import string
import time
from datetime import datetime

import pyotp

from account_security.core.errors import InvalidSecretFormat, TotpError

TIME_STEP_SECONDS = 30
CODE_DIGITS = 6
DEFAULT_SECRET_BYTES = 32
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_COUNT = 10
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits

_SECRET_RE = re.compile(r"^[A-Z2-7]+=*$")
_CODE_RE = re.compile(r"^\d{6}$")
_BACKUP_CODE_RE = re.compile(r"^[A-Z0-9]{8}$")
MIN_SECRET_LENGTH = 16


def _unix_seconds(now: datetime | float | None) -> float:
    if now is None:
        return time.time()
    if isinstance(now, datetime):
        return now.timestamp()
    return float(now)


def generate_secret(byte_length: int = DEFAULT_SECRET_BYTES) -> str:
    # b32encode pads with "=" to a multiple of 8 characters.
    return base64.b32encode(secrets.token_bytes(byte_length)).decode("ascii")


def current_time_step(now: datetime | float | None = None) -> int:
    return int(_unix_seconds(now) // TIME_STEP_SECONDS)


def seconds_remaining(now: datetime | float | None = None) -> int:
    seconds = _unix_seconds(now)
    next_step_at = (int(seconds // TIME_STEP_SECONDS) + 1) * TIME_STEP_SECONDS
    return max(0, int(next_step_at - seconds))


def _totp(secret: str) -> pyotp.TOTP:
    if not secret or not _SECRET_RE.match(secret):
        raise InvalidSecretFormat("Secret is not valid base32")
    totp = pyotp.TOTP(secret, digits=CODE_DIGITS, digest=hashlib.sha1, interval=TIME_STEP_SECONDS)
    try:
        totp.byte_secret()
    except (binascii.Error, ValueError) as exc:
        raise InvalidSecretFormat("Secret is not valid base32") from exc
    return totp


def code_at(secret: str, time_step: int) -> str:
    """Return the 6-digit code for ``time_step`` (floor(unix_seconds / 30))."""
    if time_step < 0:
        raise TotpError("Time step must be non-negative", time_step=time_step)
    return _totp(secret).generate_otp(time_step)


def current_code(secret: str, now: datetime | float | None = None) -> str:
    return code_at(secret, current_time_step(now))


def verify(
    secret: str,
    code: str,
    window: int = 1,
    now: datetime | float | None = None,
) -> bool:
    """Check ``code`` against steps ``[-window, window]`` around ``now``.

    Tolerates +/- 30s * window of clock drift between client and server.
    """
    totp = _totp(secret)
    if not code or not _CODE_RE.match(code):
        return False
    step = current_time_step(now)
    for offset in range(-window, window + 1):
        candidate_step = step + offset
        if candidate_step < 0:
            continue
        if pyotp.utils.strings_equal(totp.generate_otp(candidate_step), code):
            return True
    return False


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    return [
        "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        for _ in range(count)
    ]


def hash_backup_code(code: str) -> str:
    """Digest stored in place of the plain backup code."""
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def build_provisioning_uri(secret: str, account: str, issuer: str) -> str:
    # Authenticator apps expect the secret without base32 padding.
    totp = pyotp.TOTP(secret.rstrip("="), digits=CODE_DIGITS, interval=TIME_STEP_SECONDS)
    return totp.provisioning_uri(name=account, issuer_name=issuer)


def manual_entry_key(account: str, issuer: str) -> str:
    return f"{issuer}:{account}"


def mask_secret(secret: str) -> str:
    return f"{secret[:8]}****"


def is_valid_secret(secret: str | None) -> bool:
    return bool(secret) and len(secret) >= MIN_SECRET_LENGTH and bool(_SECRET_RE.match(secret))


def is_valid_code(code: str | None) -> bool:
    return bool(code) and bool(_CODE_RE.match(code))


def is_valid_backup_code(code: str | None) -> bool:
    return bool(code) and bool(_BACKUP_CODE_RE.match(code))


def totp_drift(client_time: float, server_time: float | None = None) -> float:
    """Absolute clock difference in seconds."""
    return abs(client_time - _unix_seconds(server_time))


def is_drift_acceptable(drift: float, max_drift: float = TIME_STEP_SECONDS) -> bool:
    return drift <= max_drift
