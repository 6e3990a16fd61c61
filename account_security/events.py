import asyncio
import logging

from fastapi import FastAPI

from account_security.api import deps
from account_security.core.settings import settings
from account_security.services import sweeper
from account_security.services.security_events import CHANNEL_ALERT, CHANNEL_HIGH_SEVERITY
from account_security.utils.cache import RedisCache, close_cache, get_cache
from account_security.utils.event_bus import RedisEventForwarder, get_event_bus

logger = logging.getLogger(__name__)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Application startup")
        cache = get_cache()
        if isinstance(cache, RedisCache):
            RedisEventForwarder(cache.client).attach(get_event_bus(), [CHANNEL_HIGH_SEVERITY, CHANNEL_ALERT])
        if settings.session_sweep_interval_seconds > 0:
            app.state.sweeper = asyncio.create_task(
                sweeper.run_forever(
                    deps.get_session_service(),
                    deps.get_mfa_service(),
                    settings.session_sweep_interval_seconds,
                )
            )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        task = getattr(app.state, "sweeper", None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        get_event_bus().clear()
        await close_cache()
