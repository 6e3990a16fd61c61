from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.middleware import SlowAPIMiddleware

from account_security.api.v1 import api_router
from account_security.core.errors import register_exception_handlers
from account_security.core.health import APP_VERSION
from account_security.core.limiter import limiter
from account_security.core.logging import configure_logging
from account_security.core.response_envelope import register_response_envelope
from account_security.core.settings import settings
from account_security.events import register_event_handlers
from account_security.middlewares.request_context import RequestContextMiddleware

# Identity is resolved upstream and forwarded in these headers.
IDENTITY_HEADERS = ["X-Tenant-ID", "X-User-ID", "X-User-Role"]


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Account Security Service",
        description="TOTP MFA, login sessions, security events and anomaly checks per tenant.",
        version=APP_VERSION,
    )
    register_exception_handlers(app)
    register_response_envelope(app)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", *IDENTITY_HEADERS],
        expose_headers=["X-Request-ID"],
    )
    app.include_router(api_router, prefix="/api/v1")
    register_event_handlers(app)
    return app


app = create_app()
