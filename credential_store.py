import json
import logging
import os
import shutil
import threading
from datetime import datetime

logger = logging.getLogger(__name__)

MARKER_FILE = "session.json"

# Chrome caches that can be dropped without losing the WhatsApp Web session
CACHE_DIRS = ["Cache", "Code Cache", "GPUCache", "Service Worker", "ServiceWorkerCache", "Application Cache"]


def should_purge(retry_count, max_retries):
    """Repeated failures mean the stored session can no longer be trusted."""
    return retry_count >= max_retries


class RetryCounter:
    """Consecutive failed connection attempts since the last open or purge."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    @property
    def value(self):
        return self._value

    def increment(self):
        with self._lock:
            self._value += 1
            return self._value

    def reset(self):
        with self._lock:
            self._value = 0


class CredentialStore:
    """
    Chrome user-data directory holding the paired WhatsApp Web session.

    Chrome writes the key material itself while the browser runs; `save()`
    records a marker file so we know when the session was paired and last
    persisted.
    """

    def __init__(self, path):
        self.path = path

    @property
    def marker_path(self):
        return os.path.join(self.path, MARKER_FILE)

    def exists(self):
        return os.path.isdir(self.path) and bool(os.listdir(self.path))

    def ensure(self):
        os.makedirs(self.path, exist_ok=True)

    def load(self):
        """Return the marker data, or an empty dict when nothing has been saved."""
        if not os.path.exists(self.marker_path):
            return {}
        with open(self.marker_path, "r") as f:
            return json.load(f)

    def save(self):
        """Persist the marker; raises on I/O errors so callers can log them."""
        self.ensure()
        try:
            data = self.load()
        except ValueError:
            logger.warning("Session marker was unreadable, rewriting it")
            data = {}

        now = datetime.now().isoformat()
        data.setdefault("paired_at", now)
        data["last_saved"] = now
        data["saves"] = data.get("saves", 0) + 1

        tmp_path = self.marker_path + ".tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.marker_path)
        return data

    def purge_all(self):
        shutil.rmtree(self.path)

    def clean_cache(self):
        """Remove Chrome cache folders but keep the session itself."""
        if not os.path.exists(self.path):
            return
        for cache_dir in CACHE_DIRS:
            for base in (self.path, os.path.join(self.path, "Default")):
                cache_path = os.path.join(base, cache_dir)
                if os.path.exists(cache_path):
                    shutil.rmtree(cache_path, ignore_errors=True)
                    logger.debug(f"🧹 Cleaned: {cache_dir}")

    def size(self):
        total_size = 0
        for dirpath, dirnames, filenames in os.walk(self.path):
            for f in filenames:
                fp = os.path.join(dirpath, f)
                if os.path.exists(fp):
                    total_size += os.path.getsize(fp)
        return total_size


class CredentialGuardian:
    """Owns destructive purges of the credential store."""

    def __init__(self, store, retry_counter):
        self.store = store
        self.retry_counter = retry_counter

    def should_purge(self, retry_count, max_retries):
        return should_purge(retry_count, max_retries)

    def purge(self):
        """Delete the stored session so the next attempt shows a fresh QR code."""
        if os.path.exists(self.store.path):
            logger.info(f"🧹 Purging stored session at {self.store.path}")
            try:
                self.store.purge_all()
                logger.info("✅ Stored session purged")
            except OSError as e:
                logger.error(f"❌ Error purging stored session: {e}")
        self.retry_counter.reset()
