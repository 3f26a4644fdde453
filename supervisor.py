"""
Connection supervisor for the WhatsApp session.

The supervisor owns the one live `WhatsAppWebSession`, is the only writer of
connection status, and turns every `close` into a decision from
`disconnect_policy.classify`: retry after a delay, purge the stored session and
pair again, or stop.

Flask request threads, retry timers, the keep-alive scheduler and the session
watcher all call in here concurrently, so the reconnect guard and status are
mutated under a single lock. Observers are notified after the lock is released.
"""
import logging
import threading
from enum import Enum

import whatsapp_session
from config import Config
from credential_store import CredentialGuardian, RetryCounter
from disconnect_policy import (DisconnectReason, PurgeAndRetry, RetryAfter, Stop,
                               classify, describe)
from whatsapp_session import WhatsAppWebSession, is_connection_error

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


class ConnectionStatus:
    def __init__(self):
        self.state = ConnectionState.IDLE
        self.reconnecting = False
        self.qr = None

    @property
    def connected(self):
        return self.state == ConnectionState.OPEN


class NullNotifier:
    """Observer that ignores everything; used when no dashboard is attached."""

    def connection_status(self, connected, reconnecting):
        pass

    def qr(self, payload):
        pass


def _start_timer(delay, callback):
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class ConnectionSupervisor:
    def __init__(self, store, session_factory=None, notifier=None,
                 max_retries=None, base_delay=None, delay_cap=None,
                 purge_restart_delay=None, logout_policy=None, timer=None):
        self.store = store
        self.session_factory = session_factory or WhatsAppWebSession
        self.notifier = notifier or NullNotifier()
        self.max_retries = Config.MAX_RECONNECT_ATTEMPTS if max_retries is None else max_retries
        self.base_delay = Config.RECONNECT_BASE_DELAY if base_delay is None else base_delay
        self.delay_cap = Config.RECONNECT_DELAY_CAP if delay_cap is None else delay_cap
        self.purge_restart_delay = Config.PURGE_RESTART_DELAY if purge_restart_delay is None else purge_restart_delay
        self.logout_policy = logout_policy or Config.LOGOUT_POLICY
        self.timer = timer or _start_timer

        self.retry_counter = RetryCounter()
        self.guardian = CredentialGuardian(store, self.retry_counter)
        self.status = ConnectionStatus()
        self.session = None
        self.is_connecting = False
        self.message_listeners = []

        self._lock = threading.Lock()
        self._pending_retry = None
        self._shutting_down = False

    # ---- read side -------------------------------------------------------

    @property
    def connected(self):
        return self.status.connected

    @property
    def retry_attempts(self):
        return self.retry_counter.value

    def snapshot(self):
        with self._lock:
            return {
                "state": self.status.state.value,
                "connected": self.status.connected,
                "reconnecting": self.status.reconnecting,
                "is_connecting": self.is_connecting,
                "retry_attempts": self.retry_counter.value,
                "qr": self.status.qr,
            }

    def on_message(self, callback):
        self.message_listeners.append(callback)

    # ---- connection attempts ---------------------------------------------

    def start(self):
        """Begin a connection attempt unless one is already in flight."""
        with self._lock:
            if self._shutting_down:
                logger.info("Shutdown in progress, not connecting")
                return False
            if self.status.state == ConnectionState.STOPPED:
                logger.info("🛑 Logged out under the stop policy, not reconnecting")
                return False
            if self.is_connecting:
                logger.info("⚠️  A connection attempt is already in progress, ignoring")
                return False
            self.is_connecting = True
            self.status.state = ConnectionState.CONNECTING
            self._pending_retry = None

        logger.info(f"🔄 Connecting to WhatsApp (attempt {self.retry_counter.value + 1}/{self.max_retries})")

        try:
            session = self.session_factory(self.store)
            self._subscribe(session)
            with self._lock:
                self.session = session
            session.start()
        except Exception as e:
            logger.error(f"❌ Critical error starting WhatsApp session: {e}")
            self._handle_close(None, DisconnectReason.BAD_SESSION)
        return True

    def _subscribe(self, session):
        handlers = {
            whatsapp_session.CONNECTING: self._handle_connecting,
            whatsapp_session.QR: self._handle_qr,
            whatsapp_session.OPEN: self._handle_open,
            whatsapp_session.CLOSE: self._handle_close,
            whatsapp_session.CREDS_UPDATE: self._handle_creds_update,
            whatsapp_session.MESSAGE: self._handle_message,
        }
        for event, handler in handlers.items():
            session.on(event, self._bind(session, handler))

    def _bind(self, session, handler):
        def callback(*args):
            if session is not self.session:
                logger.debug("Ignoring event from a replaced session")
                return
            handler(session, *args)
        return callback

    def _retry(self):
        with self._lock:
            self._pending_retry = None
            redundant = self.status.connected or self.is_connecting
        if redundant:
            logger.info("Scheduled reconnect skipped, session already open or connecting")
            return
        self.start()

    def _schedule_retry(self, delay):
        with self._lock:
            if self._shutting_down:
                return
            self._pending_retry = self.timer(delay, self._retry)

    # ---- session events --------------------------------------------------

    def _handle_connecting(self, session):
        with self._lock:
            self.status.state = ConnectionState.CONNECTING
            self.status.reconnecting = True
        logger.info("🔄 Connecting to WhatsApp...")
        self.notifier.connection_status(False, True)

    def _handle_qr(self, session, payload):
        with self._lock:
            self.status.state = ConnectionState.CONNECTING
            self.status.qr = payload
        logger.info("📱 QR code generated, scan it with WhatsApp")
        self.notifier.qr(payload)

    def _handle_open(self, session):
        with self._lock:
            self.status.state = ConnectionState.OPEN
            self.status.reconnecting = False
            self.status.qr = None
            self.is_connecting = False
            self.retry_counter.reset()
        logger.info("✅ WhatsApp connected")

        self.notifier.connection_status(True, False)
        self.notifier.qr(None)
        self._persist_credentials()

    def _handle_creds_update(self, session):
        self._persist_credentials()

    def _handle_message(self, session, message):
        for callback in list(self.message_listeners):
            try:
                callback(message)
            except Exception as e:
                logger.error(f"❌ Error processing message: {e}")

    def _persist_credentials(self):
        try:
            self.store.save()
            logger.info("💾 Credentials saved")
        except Exception as e:
            logger.error(f"❌ Error saving credentials: {e}")

    def _handle_close(self, session, reason):
        with self._lock:
            if session is not None and session is not self.session:
                logger.debug("Ignoring close for a session that was already replaced")
                return
            old_session = self.session
            self.session = None
            self.is_connecting = False
            self.status.state = ConnectionState.DISCONNECTED
            self.status.qr = None
            shutting_down = self._shutting_down

        if old_session is not None:
            old_session.close()

        logger.info(f"❌ Connection closed. Reason: {int(reason)} ({describe(reason)})")

        if shutting_down:
            self.notifier.connection_status(False, False)
            return

        if reason == DisconnectReason.LOGGED_OUT:
            attempts = self.retry_counter.value
        else:
            attempts = self.retry_counter.increment()

        decision = classify(reason, attempts, self.max_retries, self.base_delay,
                            self.delay_cap, self.logout_policy)

        if isinstance(decision, RetryAfter):
            logger.info(f"🔄 Retrying in {decision.delay}s (attempt {attempts}/{self.max_retries})")
            self._schedule_retry(decision.delay)
        elif isinstance(decision, PurgeAndRetry):
            logger.info("🗑️  Session lost or retry budget exhausted, purging and pairing again")
            self.guardian.purge()
            self._schedule_retry(self.purge_restart_delay)
        elif isinstance(decision, Stop):
            logger.warning("🛑 Logged out, not reconnecting")
            with self._lock:
                self.status.state = ConnectionState.STOPPED

        with self._lock:
            self.status.reconnecting = decision.reconnecting

        self.notifier.connection_status(False, decision.reconnecting)
        self.notifier.qr(None)

    # ---- outbound --------------------------------------------------------

    def send_message(self, target, text):
        """Send through the live session; connection-level failures restart the state machine."""
        with self._lock:
            session = self.session
            connected = self.status.connected
        if session is None or not connected:
            raise whatsapp_session.NotConnectedError("WhatsApp not connected")

        try:
            session.send_message(target, text)
        except Exception as e:
            self.handle_transport_failure(e, session)
            raise

    def handle_transport_failure(self, error, session=None):
        if not is_connection_error(error):
            return False
        with self._lock:
            if self.session is None or (session is not None and session is not self.session):
                return False
            session = self.session
        logger.info("🔄 Connection error detected while sending, marking as disconnected")
        self._handle_close(session, DisconnectReason.CONNECTION_LOST)
        return True

    # ---- lifecycle -------------------------------------------------------

    def shutdown(self, logout=False):
        with self._lock:
            self._shutting_down = True
            pending, self._pending_retry = self._pending_retry, None
            session, self.session = self.session, None
            self.is_connecting = False
            self.status.state = ConnectionState.STOPPED
            self.status.reconnecting = False

        if pending is not None:
            pending.cancel()

        if session is not None:
            if logout and session.is_open:
                logger.info("👋 Logging out of WhatsApp...")
                session.logout()
            session.close()
