"""Periodic removal of expired grant requests, access tokens and sessions."""

import logging
import threading
from datetime import timedelta
from typing import Callable, Dict, Optional

from config import GRANT_REQUEST_EXPIRE_MINUTES
from .database import Database, transaction
from .errors import StorageFault
from .models import AccessToken, GrantRequest, LoginSession, utcnow

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """
    Three independent, idempotent purges.

    Each purge runs in its own transaction. A purge that is still running
    when the same purge is started again is skipped, different purges may
    overlap freely.
    """

    def __init__(
        self,
        database: Database,
        clock: Callable = utcnow,
        grant_request_lifetime: timedelta = timedelta(minutes=GRANT_REQUEST_EXPIRE_MINUTES),
    ):
        self.database = database
        self.clock = clock
        self.grant_request_lifetime = grant_request_lifetime
        self._locks = {
            "grant_requests": threading.Lock(),
            "access_tokens": threading.Lock(),
            "sessions": threading.Lock(),
        }
        self._shutdown = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _purge(self, name: str, model, condition) -> int:
        lock = self._locks[name]
        if not lock.acquire(blocking=False):
            logger.debug("[SWEEP] %s purge already running, skipped", name)
            return 0
        try:
            with self.database.session() as db, transaction(db):
                removed = db.query(model).filter(condition).delete(synchronize_session=False)
        finally:
            lock.release()

        if removed:
            logger.info("[SWEEP] Removed %d expired %s", removed, name)
        return removed

    def purge_grant_requests(self) -> int:
        """Remove grant requests older than the life time, whatever their state."""
        cutoff = self.clock() - self.grant_request_lifetime
        return self._purge("grant_requests", GrantRequest, GrantRequest.created_at <= cutoff)

    def purge_access_tokens(self) -> int:
        return self._purge("access_tokens", AccessToken, AccessToken.expires <= self.clock())

    def purge_sessions(self) -> int:
        return self._purge("sessions", LoginSession, LoginSession.expires <= self.clock())

    def run_once(self) -> Dict[str, int]:
        return {
            "grant_requests": self.purge_grant_requests(),
            "access_tokens": self.purge_access_tokens(),
            "sessions": self.purge_sessions(),
        }

    # ---- background loop ----

    def _worker(self, interval: float):
        while not self._shutdown.wait(interval):
            try:
                self.run_once()
            except StorageFault:
                # already logged with the rollback; try again next round
                continue
            except Exception:
                logger.exception("[SWEEP] Sweep failed, retrying next round")

    def start(self, interval: float):
        """Run all purges every interval seconds in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._shutdown.clear()
        self._thread = threading.Thread(
            target=self._worker, args=(interval,), name="expiration-sweeper", daemon=True
        )
        self._thread.start()
        logger.info("[SWEEP] Started, interval %.0fs", interval)

    def stop(self, timeout: float = 5.0):
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
