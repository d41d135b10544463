import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Callable, Dict, Optional

from fastapi import FastAPI

from config import (
    CLEANER_INTERVAL_MINUTES,
    DATABASE_URL,
    FIXED_CLIENTS,
    GRANT_REQUEST_EXPIRE_MINUTES,
    LOG_FORMAT,
    LOG_LEVEL,
)
from idp.clients import ClientRegistry
from idp.database import Database
from idp.errors import IdpError
from idp.logging_config import setup_logging
from idp.models import utcnow
from idp.routes import idp_error_handler, router
from idp.sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    state = app.state
    if state.configure_logging:
        setup_logging(LOG_LEVEL, LOG_FORMAT)

    state.database.init_db()
    with state.database.session() as db:
        ClientRegistry(db, clock=state.clock).init_clients(state.clients)

    sweeper = None
    if state.cleaner_interval:
        sweeper = ExpirationSweeper(
            state.database, clock=state.clock, grant_request_lifetime=state.grant_request_lifetime
        )
        sweeper.start(state.cleaner_interval)
    logger.info("[STARTUP] Authorization server ready")

    yield

    # Shutdown
    if sweeper is not None:
        sweeper.stop()
    state.database.dispose()


def create_app(
    database: Optional[Database] = None,
    clock: Callable = utcnow,
    clients: Dict = FIXED_CLIENTS,
    cleaner_interval: Optional[float] = CLEANER_INTERVAL_MINUTES * 60,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the application.

    Args:
        database: Database to use, one for DATABASE_URL if omitted
        clock: Returns the current naive UTC time
        clients: Clients registered on startup
        cleaner_interval: Seconds between expiration sweeps, None disables the sweeper
        configure_logging: Install the process wide log handlers on startup
    """
    app = FastAPI(title="idp", lifespan=lifespan)
    app.state.database = database or Database(DATABASE_URL)
    app.state.clock = clock
    app.state.clients = clients
    app.state.cleaner_interval = cleaner_interval
    app.state.configure_logging = configure_logging
    app.state.grant_request_lifetime = timedelta(minutes=GRANT_REQUEST_EXPIRE_MINUTES)

    app.include_router(router)
    app.add_exception_handler(IdpError, idp_error_handler)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )
