"""
Telegram long-polling intake.

Used when no public webhook is available (local development). One poller
per process, owned by the FastAPI app (app.state.telegram_poller) and
handed to routes through a dependency.

The loop runs on at most one background thread. It is started either by
an admin (runs until stopped) or by a user generating a linking code
(runs while at least one watched code is outstanding).
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from clarity_mdt.core.config import settings
from clarity_mdt.db.session import SessionLocal
from clarity_mdt.services import telegram_link_service, verification_service
from clarity_mdt.services.telegram_client import TelegramClient, TelegramError
from clarity_mdt.utils import as_utc, utcnow

logger = logging.getLogger(__name__)


class TelegramPoller:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        interval: float | None = None,
    ):
        self._session_factory = session_factory
        self._interval = settings.TELEGRAM_POLL_INTERVAL_SECONDS if interval is None else interval
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._client: TelegramClient | None = None
        self._persistent = False
        self._offset: int | None = None
        self._watched: dict[UUID, datetime] = {}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def watched_users(self) -> list[UUID]:
        with self._lock:
            return list(self._watched)

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "persistent": self._persistent,
            "watched_sessions": len(self._watched),
        }

    def start(self, client: TelegramClient, persistent: bool = True) -> bool:
        """
        Start the polling thread. Returns False when it was already running
        (the client is still replaced).
        """
        with self._lock:
            self._client = client
            self._persistent = self._persistent or persistent
            if self.is_running:
                return False
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="telegram-poller",
                daemon=True,
            )
            self._thread.start()
        logger.info("Telegram polling started")
        return True

    def stop(self, timeout: float | None = None) -> bool:
        """Stop the polling thread. Returns False when it was not running."""
        with self._lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None
            self._persistent = False
        if thread is None:
            return False
        if thread is not threading.current_thread():
            thread.join(timeout if timeout is not None else self._interval + settings.TELEGRAM_TIMEOUT_SECONDS)
        logger.info("Telegram polling stopped")
        return True

    def shutdown(self) -> None:
        """Stop and forget every watched session (application teardown)."""
        with self._lock:
            self._watched.clear()
        self.stop()

    # -------------------------------------------------------------------------
    # Watched linking sessions
    # -------------------------------------------------------------------------

    def watch(self, user_id: UUID, expires_at: datetime, client: TelegramClient | None = None) -> None:
        """Keep polling until `expires_at` on behalf of `user_id`."""
        with self._lock:
            self._watched[user_id] = as_utc(expires_at)
            if client is not None and not self.is_running:
                self.start(client, persistent=False)

    def unwatch(self, user_id: UUID) -> None:
        with self._lock:
            self._watched.pop(user_id, None)
            idle = not self._watched and not self._persistent
        if idle and self.is_running:
            logger.info("No pending Telegram links, stopping polling")
            self.stop()

    def _expire_sessions(self, now: datetime) -> None:
        with self._lock:
            for user_id, expires_at in list(self._watched.items()):
                if now > expires_at:
                    del self._watched[user_id]

    def _idle(self) -> bool:
        with self._lock:
            return not self._watched and not self._persistent

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def poll_once(self, now: datetime | None = None, client: TelegramClient | None = None) -> int:
        """
        Fetch one batch of updates and route each text message.

        Returns the number of messages handled.
        """
        now = now or utcnow()
        client = client or self._client
        self._expire_sessions(now)
        if client is None:
            return 0

        try:
            updates = client.get_updates(offset=self._offset, timeout=1)
        except TelegramError as exc:
            logger.warning("Telegram getUpdates failed: %s", exc)
            return 0

        handled = 0
        db = self._session_factory()
        try:
            verification_service.purge_expired(db, now)
            for update in updates:
                if not isinstance(update, dict):
                    continue
                update_id = update.get("update_id")
                if isinstance(update_id, int):
                    self._offset = max(self._offset or 0, update_id + 1)
                parsed = telegram_link_service.parse_update(update)
                if parsed is None:
                    continue
                sender, text = parsed
                telegram_link_service.handle_incoming_text(
                    db, sender, text, client=client, poller=self, now=now
                )
                handled += 1
        finally:
            db.close()
        return handled

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                # Keep the loop alive; the next tick retries
                logger.exception("Telegram polling iteration failed")
            if self._idle():
                logger.info("Telegram polling idle, stopping")
                with self._lock:
                    if self._stop_event is stop_event:
                        self._thread = None
                break
            stop_event.wait(self._interval)
