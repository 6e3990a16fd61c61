#!/usr/bin/env python3
"""
Run one expiry sweep: terminate expired sessions and release expired MFA locks.

Intended for cron-style deployments that set SESSION_SWEEP_INTERVAL_SECONDS=0.

Usage:
    python scripts/sweep_expired.py
"""

from __future__ import annotations

import asyncio
import logging

from account_security.api import deps
from account_security.core.logging import configure_logging
from account_security.services import sweeper
from account_security.utils.cache import close_cache

logger = logging.getLogger("sweep_expired")


async def main() -> None:
    configure_logging()
    try:
        expired, released = await sweeper.run_once(deps.get_session_service(), deps.get_mfa_service())
        logger.info("Expired %s sessions, released %s MFA locks", expired, released)
    finally:
        await close_cache()


if __name__ == "__main__":
    asyncio.run(main())
