from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from loguru import logger
from sqlalchemy import Engine

from flowlogic.config import Settings, settings
from flowlogic.db import build_session_factory, engine_from_settings
from flowlogic.errors import install_error_handlers
from flowlogic.logging import configure_logging
from flowlogic.routers import alerts, auth, billing, dashboard, ingestions
from flowlogic.security.headers import install_security_headers
from flowlogic.security.sessions import install_auth_session_middleware
from flowlogic.security.trial import install_trial_enforcement


def create_app(engine: Engine | None = None, config: Settings = settings) -> FastAPI:
    """Build the API. Run with ``uvicorn --factory flowlogic.main:create_app``."""
    configure_logging(config.log_level)
    engine = engine or engine_from_settings(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info('FlowLogic API starting ({})', engine.url.render_as_string(hide_password=True))
        yield
        engine.dispose()

    app = FastAPI(title='FlowLogic API', lifespan=lifespan)
    app.state.settings = config
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)

    install_error_handlers(app)
    # Last installed runs first: sessions resolve the principal before the trial gate reads it.
    install_security_headers(app)
    install_trial_enforcement(app)
    install_auth_session_middleware(app)

    app.include_router(auth.router)
    app.include_router(alerts.router)
    app.include_router(dashboard.router)
    app.include_router(ingestions.router)
    app.include_router(billing.router)

    @app.get('/robots.txt', response_class=PlainTextResponse)
    def robots_txt() -> str:
        return 'User-agent: *\nDisallow: /\n'

    return app
