"""Periodic expiry sweep for sessions and MFA locks."""

from __future__ import annotations

import asyncio
import logging

from account_security.services.mfa import MfaService
from account_security.services.sessions import SessionService

logger = logging.getLogger(__name__)


async def run_once(sessions: SessionService, mfa: MfaService) -> tuple[int, int]:
    expired = await sessions.sweep_expired()
    released = await mfa.cleanup_expired_locks()
    return expired, released


async def run_forever(sessions: SessionService, mfa: MfaService, interval_seconds: float) -> None:
    while True:
        try:
            expired, released = await run_once(sessions, mfa)
            if expired or released:
                logger.info("Sweep expired %s sessions, released %s MFA locks", expired, released)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Expiry sweep failed")
        await asyncio.sleep(interval_seconds)
