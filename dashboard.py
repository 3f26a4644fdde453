import logging

from flask_socketio import emit

logger = logging.getLogger(__name__)


class Dashboard:
    """Pushes connection status, QR codes and messages to browser clients."""

    def __init__(self, socketio, history):
        self.socketio = socketio
        self.history = history
        self.supervisor = None
        socketio.on_event("connect", self._on_connect)
        socketio.on_event("disconnect", self._on_disconnect)

    def attach(self, supervisor):
        self.supervisor = supervisor

    def _on_connect(self, auth=None):
        logger.info("🌐 Dashboard client connected")
        snapshot = self.supervisor.snapshot() if self.supervisor else {}

        emit("connection-status", {
            "connected": snapshot.get("connected", False),
            "reconnecting": snapshot.get("reconnecting", False),
        })
        emit("messages-history", self.history.records())

        if snapshot.get("qr"):
            emit("qr", snapshot["qr"])
        elif snapshot.get("connected"):
            emit("qr", None)

    def _on_disconnect(self, *args):
        logger.info("🌐 Dashboard client disconnected")

    def connection_status(self, connected, reconnecting):
        self.socketio.emit("connection-status", {"connected": connected, "reconnecting": reconnecting})

    def qr(self, payload):
        self.socketio.emit("qr", payload)

    def new_message(self, record):
        self.socketio.emit("new-message", record)
