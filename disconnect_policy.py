"""
Disconnect classification for the WhatsApp session.

Every time the session closes, the supervisor asks `classify` what to do next:
retry after a delay, wipe the stored session and pair again, or stop.
"""
from enum import IntEnum

from credential_store import should_purge


class DisconnectReason(IntEnum):
    BAD_SESSION = 500
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411


REASON_LABELS = {
    DisconnectReason.BAD_SESSION: "Corrupted session",
    DisconnectReason.CONNECTION_CLOSED: "Connection closed",
    DisconnectReason.CONNECTION_LOST: "Connection lost or timed out",
    DisconnectReason.CONNECTION_REPLACED: "Connection replaced by another client",
    DisconnectReason.LOGGED_OUT: "Logged out",
    DisconnectReason.RESTART_REQUIRED: "Restart required",
    DisconnectReason.MULTIDEVICE_MISMATCH: "Multi-device mismatch",
}

LOGOUT_RE_PAIR = "re-pair"
LOGOUT_STOP = "stop"


class Decision:
    """Base class for classifier outcomes."""

    reconnecting = True

    def __eq__(self, other):
        return type(self) is type(other) and vars(self) == vars(other)

    def __hash__(self):
        return hash((type(self), tuple(sorted(vars(self).items()))))

    def __repr__(self):
        return f"{type(self).__name__}({', '.join(f'{k}={v!r}' for k, v in vars(self).items())})"


class Stop(Decision):
    reconnecting = False


class RetryAfter(Decision):
    def __init__(self, delay):
        self.delay = delay


class PurgeAndRetry(Decision):
    pass


def describe(reason):
    """Human readable label for a disconnect reason code."""
    try:
        return REASON_LABELS[DisconnectReason(reason)]
    except ValueError:
        return "Unknown"


def is_logout(reason):
    return reason == DisconnectReason.LOGGED_OUT


def backoff_delay(retry_count, base_delay, delay_cap):
    """Linear backoff with a ceiling."""
    return min(base_delay * retry_count, delay_cap)


def classify(reason, retry_count, max_retries, base_delay, delay_cap, logout_policy=LOGOUT_RE_PAIR):
    """
    Decide what to do after a disconnect.

    `retry_count` is the number of consecutive failures *including* this one;
    the caller increments it before classifying so the first retry is never
    immediate.
    """
    if is_logout(reason):
        if logout_policy == LOGOUT_STOP:
            return Stop()
        return PurgeAndRetry()

    if should_purge(retry_count, max_retries):
        return PurgeAndRetry()

    return RetryAfter(backoff_delay(retry_count, base_delay, delay_cap))
