"""Connection lifecycle manager.

Owns the single live transport session and keeps a registry of persistent
subscriptions that is re-applied to every new session.

State machine:

    Idle -> Connecting -> Open -> Closing -> Reconnecting -> Connecting ...
                                          -> LoggedOut  (terminal, auth revoked)
                                          -> Failed     (terminal, retry budget spent)

Reconnect delay after attempt n is min(1000 ms * 2**n, 60000 ms); after
MAX_RECONNECT_ATTEMPTS closes without an Open in between, the manager gives
up. Terminal conditions go to the on_fatal callback, never raised into the
transport's event thread.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable

from chatvault.observability.logging import get_logger

from .errors import (
    ConnectionFatalError,
    ConnectionInProgressError,
    LoggedOutError,
    ReconnectBudgetExhaustedError,
)
from .scheduler import ScheduledCall, Scheduler, ThreadingScheduler
from .transport import (
    ConnectionUpdate,
    EventHandler,
    Transport,
    TransportConfig,
    TransportEvent,
    TransportSession,
)

logger = get_logger(__name__)

MAX_RECONNECT_ATTEMPTS = 10
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 60_000


def backoff_delay_ms(attempt: int) -> int:
    """Delay before reconnect attempt number `attempt` (1-based)."""
    return min(BASE_DELAY_MS * 2**attempt, MAX_DELAY_MS)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    LOGGED_OUT = "logged_out"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ConnectionState.LOGGED_OUT, ConnectionState.FAILED})


@dataclass(frozen=True)
class ConnectOptions:
    """Per-connect overrides; None keeps the manager default."""

    sync_full_history: bool | None = None


class ConnectionManager:
    """Keeps one transport session alive and its subscriptions attached.

    Args:
        transport: Session factory.
        save_credentials: Called with every credentials update, unbatched.
        load_credentials: Returns the credentials to connect with.
        scheduler: Delayed-call scheduler for reconnects (fake in tests).
        on_fatal: Receives LoggedOutError / ReconnectBudgetExhaustedError.
        on_pairing_challenge: Receives pairing (QR) strings.
        sync_full_history: Default for TransportConfig.sync_full_history.
        max_reconnect_attempts: Reconnect budget between two Open states.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        save_credentials: Callable[[Any], None],
        load_credentials: Callable[[], Any] | None = None,
        scheduler: Scheduler | None = None,
        on_fatal: Callable[[ConnectionFatalError], None] | None = None,
        on_pairing_challenge: Callable[[str], None] | None = None,
        sync_full_history: bool = False,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        self._transport = transport
        self._save_credentials = save_credentials
        self._load_credentials = load_credentials
        self._scheduler = scheduler or ThreadingScheduler()
        self._on_fatal = on_fatal
        self._on_pairing_challenge = on_pairing_challenge
        self._sync_full_history = sync_full_history
        self._max_attempts = max_reconnect_attempts

        self._lock = threading.RLock()
        self._state = ConnectionState.IDLE
        self._session: TransportSession | None = None
        self._connecting = False
        self._attempts = 0
        self._options = ConnectOptions()
        self._subscriptions: list[tuple[TransportEvent, EventHandler]] = []
        self._pending: ScheduledCall | None = None
        self._pending_seq: int | None = None
        self._seq = itertools.count(1)
        # Bumped by disconnect(); a reconnect started before it must not retry.
        self._generation = 0
        self.fatal_error: ConnectionFatalError | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def session(self) -> TransportSession | None:
        return self._session

    @property
    def subscriptions(self) -> tuple[tuple[TransportEvent, EventHandler], ...]:
        with self._lock:
            return tuple(self._subscriptions)

    def register_persistent(self, event: TransportEvent, handler: EventHandler) -> None:
        """Subscribe a handler on every current and future session."""
        with self._lock:
            self._subscriptions.append((event, handler))
            if self._session is not None:
                self._session.on(event, handler)

    def connect(self, options: ConnectOptions | None = None) -> TransportSession:
        """Open a session, or return the one already open or being opened.

        An open session is replaced only when options differ from the ones
        it was opened with; the old session is ended first.

        Raises:
            ConnectionInProgressError: If a connect is in flight and its
                session handle does not exist yet.
            Exception: Whatever transport.connect raises; state is reset.
        """
        with self._lock:
            session = self._connect_locked(options)
        assert session is not None
        return session

    def _connect_locked(
        self,
        options: ConnectOptions | None = None,
        *,
        expected_generation: int | None = None,
    ) -> TransportSession | None:
        """Body of connect(); the caller holds self._lock.

        With expected_generation (scheduled reconnects), returns None without
        connecting when disconnect() ran since the reconnect was scheduled.
        """
        if expected_generation is not None and (
            expected_generation != self._generation
            or self._state is not ConnectionState.RECONNECTING
        ):
            logger.info("scheduled reconnect abandoned after disconnect")
            return None

        if self._connecting:
            logger.warning("connection attempt already in progress")
            if self._session is not None:
                return self._session
            raise ConnectionInProgressError("connection in progress, session not yet available")

        if self._session is not None and self._state is ConnectionState.OPEN:
            if options is None or options == self._options:
                logger.info("session already open")
                return self._session
            logger.info("replacing open session with new connect options")
            stale, self._session = self._session, None
            stale.end()

        if options is not None:
            self._options = options
        self._cancel_pending()
        self._connecting = True
        self._state = ConnectionState.CONNECTING
        self.fatal_error = None

        sync_full_history = self._options.sync_full_history
        if sync_full_history is None:
            sync_full_history = self._sync_full_history

        try:
            credentials = self._load_credentials() if self._load_credentials else None
            config = TransportConfig(credentials=credentials, sync_full_history=sync_full_history)
            logger.info(
                "opening transport session",
                extra={"extra_fields": {"sync_full_history": sync_full_history}},
            )
            session = self._transport.connect(config)
        except Exception:
            self._connecting = False
            self._state = ConnectionState.IDLE
            raise

        self._session = session
        session.on(TransportEvent.CREDENTIALS_UPDATED, self._handle_credentials)
        session.on(
            TransportEvent.CONNECTION_STATE_CHANGED,
            partial(self._handle_connection_update, session),
        )
        for event, handler in self._subscriptions:
            session.on(event, handler)
        logger.info(
            "event handlers registered on session",
            extra={"extra_fields": {"handler_count": len(self._subscriptions)}},
        )
        return session

    def disconnect(self) -> None:
        """End the active session if any. Safe to call repeatedly."""
        with self._lock:
            self._generation += 1
            self._cancel_pending()
            session = self._session
            self._session = None
            self._connecting = False
            if self._state not in TERMINAL_STATES:
                self._state = ConnectionState.IDLE

        if session is not None:
            logger.info("disconnecting transport session")
            session.end()
            logger.info("transport session disconnected")

    def _handle_credentials(self, credentials: Any) -> None:
        try:
            self._save_credentials(credentials)
        except Exception:
            logger.exception("failed to persist credentials update")

    def _handle_connection_update(self, session: TransportSession, event: Any) -> None:
        update = ConnectionUpdate.from_event(event)

        if update.pairing_challenge:
            self._deliver_pairing_challenge(update.pairing_challenge)

        with self._lock:
            if session is not self._session:
                logger.debug("ignoring state change from a replaced session")
                return
            if update.is_open:
                self._state = ConnectionState.OPEN
                self._attempts = 0
                self._connecting = False
                logger.info("connected to WhatsApp")
            elif update.is_closed:
                self._handle_close(update)

    def _handle_close(self, update: ConnectionUpdate) -> None:
        self._state = ConnectionState.CLOSING
        self._connecting = False
        self._session = None
        logger.warning(
            "connection closed",
            extra={
                "extra_fields": {
                    "status_code": update.status_code,
                    "logged_out": update.is_logged_out,
                }
            },
        )

        if update.is_logged_out:
            self._cancel_pending()
            self._state = ConnectionState.LOGGED_OUT
            self._fail(LoggedOutError(update.status_code))
            return

        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._attempts >= self._max_attempts:
            self._state = ConnectionState.FAILED
            self._fail(ReconnectBudgetExhaustedError(self._attempts))
            return

        self._attempts += 1
        delay_ms = backoff_delay_ms(self._attempts)
        self._state = ConnectionState.RECONNECTING
        seq = next(self._seq)
        self._pending_seq = seq
        self._pending = self._scheduler.call_later(delay_ms / 1000, partial(self._reconnect, seq))
        logger.info(
            "reconnecting with exponential backoff",
            extra={
                "extra_fields": {
                    "attempt": self._attempts,
                    "max_attempts": self._max_attempts,
                    "delay_ms": delay_ms,
                }
            },
        )

    def _reconnect(self, seq: int) -> None:
        with self._lock:
            if seq != self._pending_seq or self._state is not ConnectionState.RECONNECTING:
                logger.info("scheduled reconnect skipped")
                return
            self._pending = None
            self._pending_seq = None
            generation = self._generation

            try:
                self._connect_locked(expected_generation=generation)
            except ConnectionInProgressError:
                return
            except Exception:
                logger.exception("reconnection failed")
                # A failed connect counts as one more transient close.
                if generation == self._generation and self._state is ConnectionState.IDLE:
                    self._schedule_reconnect()

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
        self._pending = None
        self._pending_seq = None

    def _fail(self, error: ConnectionFatalError) -> None:
        self.fatal_error = error
        logger.error(str(error))
        if self._on_fatal is not None:
            try:
                self._on_fatal(error)
            except Exception:
                logger.exception("on_fatal callback failed")

    def _deliver_pairing_challenge(self, challenge: str) -> None:
        logger.info("pairing challenge received")
        if self._on_pairing_challenge is None:
            return
        try:
            self._on_pairing_challenge(challenge)
        except Exception:
            logger.exception("pairing challenge callback failed")
