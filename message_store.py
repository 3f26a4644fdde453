import json
import logging
import os
import threading
import time
from datetime import datetime

import pandas as pd

from config import Config

logger = logging.getLogger(__name__)

SENT = "sent"
RECEIVED = "received"

EXPORT_COLUMNS = ["id", "type", "from", "contact", "text", "timestamp"]


def make_record(direction, contact, text, sender=None, message_id=None):
    """Build a message record as stored in history and sent to the dashboard."""
    return {
        "id": message_id or str(int(time.time() * 1000)),
        "from": sender or contact.split("@")[0],
        "contact": contact,
        "text": text,
        "timestamp": datetime.now().isoformat(),
        "type": direction,
    }


class MessageHistory:
    """Newest-first message log, bounded in memory and on disk."""

    def __init__(self, path=None, max_in_memory=None, max_persisted=None):
        self.path = path or Config.MESSAGES_FILE
        self.max_in_memory = max_in_memory or Config.MAX_MESSAGES_IN_MEMORY
        self.max_persisted = max_persisted or Config.MAX_MESSAGES_PERSISTED
        self.messages = []
        self._lock = threading.Lock()

    def __len__(self):
        return len(self.messages)

    def records(self):
        with self._lock:
            return list(self.messages)

    def add(self, record):
        with self._lock:
            self.messages.insert(0, record)
            del self.messages[self.max_in_memory:]
            return len(self.messages)

    def trim(self, limit=None):
        """Drop everything past `limit`; returns the number of records removed."""
        limit = self.max_persisted if limit is None else limit
        with self._lock:
            removed = max(len(self.messages) - limit, 0)
            del self.messages[limit:]
        return removed

    def load(self):
        try:
            if os.path.exists(self.path):
                with open(self.path, "r") as f:
                    data = json.load(f)
                with self._lock:
                    self.messages = data[:self.max_in_memory]
                logger.info(f"📚 Loaded {len(self.messages)} messages from {self.path}")
        except Exception as e:
            logger.error(f"❌ Error loading messages: {e}")
            with self._lock:
                self.messages = []
        return len(self.messages)

    def save(self):
        try:
            to_save = self.records()[:self.max_persisted]
            with open(self.path, "w") as f:
                json.dump(to_save, f, indent=2)
            logger.info(f"💾 Saved {len(to_save)} messages")
            return True
        except Exception as e:
            logger.error(f"❌ Error saving messages: {e}")
            return False

    def to_csv(self):
        df = pd.DataFrame(self.records(), columns=EXPORT_COLUMNS)
        return df.to_csv(index=False)
