from collections import defaultdict

import pytest

from credential_store import CredentialStore
from message_store import MessageHistory
from supervisor import ConnectionSupervisor


class FakeSession:
    """Stands in for WhatsAppWebSession; tests drive its events by hand."""

    def __init__(self, store):
        self.store = store
        self.listeners = defaultdict(list)
        self.started = False
        self.closed = False
        self.logged_out = False
        self.is_open = False
        self.sent = []
        self.send_error = None

    def on(self, event, callback):
        self.listeners[event].append(callback)

    def emit(self, event, *args):
        if event == "open":
            self.is_open = True
        for callback in list(self.listeners[event]):
            callback(*args)

    def start(self):
        self.started = True

    def send_message(self, target, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((target, text))

    def logout(self):
        self.logged_out = True

    def close(self):
        self.closed = True
        self.is_open = False


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.callback()


class FakeTimers:
    def __init__(self):
        self.scheduled = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.scheduled.append(timer)
        return timer

    @property
    def last(self):
        return self.scheduled[-1]

    @property
    def delays(self):
        return [t.delay for t in self.scheduled]


class RecordingNotifier:
    def __init__(self):
        self.statuses = []
        self.qrs = []
        self.messages = []

    def connection_status(self, connected, reconnecting):
        self.statuses.append((connected, reconnecting))

    def qr(self, payload):
        self.qrs.append(payload)

    def new_message(self, record):
        self.messages.append(record)


class SessionFactory:
    def __init__(self):
        self.sessions = []

    def __call__(self, store):
        session = FakeSession(store)
        self.sessions.append(session)
        return session

    @property
    def current(self):
        return self.sessions[-1]


@pytest.fixture()
def store(tmp_path):
    store = CredentialStore(str(tmp_path / "profile"))
    store.ensure()
    return store


@pytest.fixture()
def history(tmp_path):
    return MessageHistory(path=str(tmp_path / "messages.json"), max_in_memory=100, max_persisted=50)


@pytest.fixture()
def sessions():
    return SessionFactory()


@pytest.fixture()
def timers():
    return FakeTimers()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def supervisor(store, sessions, timers, notifier):
    return ConnectionSupervisor(
        store,
        session_factory=sessions,
        notifier=notifier,
        max_retries=5,
        base_delay=5,
        delay_cap=30,
        purge_restart_delay=30,
        logout_policy="re-pair",
        timer=timers,
    )
