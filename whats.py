import atexit
import logging
import signal
import sys
import threading
import time
from collections import deque
from datetime import datetime

from flask import Flask, Response, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_socketio import SocketIO

from config import Config
from credential_store import CredentialStore
from dashboard import Dashboard
from keep_alive import KeepAlive, check_internet_connection
from message_store import RECEIVED, SENT, MessageHistory, make_record
from supervisor import ConnectionSupervisor
from whatsapp_session import NotConnectedError, to_jid

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window request limit per client address."""

    def __init__(self, max_requests, window):
        self.max_requests = max_requests
        self.window = window
        self._hits = {}
        self._lock = threading.Lock()

    def allow(self, key, now=None):
        now = time.time() if now is None else now
        with self._lock:
            self._evict(now)
            hits = self._hits.setdefault(key, deque())
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def _evict(self, now):
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and now - hits[0] >= self.window:
                hits.popleft()
            if not hits:
                del self._hits[key]


class WhatsAppBot:
    """Everything the server needs: connection supervisor, history, dashboard and keep-alive."""

    def __init__(self, socketio, store=None, session_factory=None, history=None,
                 auto_replies=None, supervisor_options=None):
        self.started_at = time.time()
        self.store = store or CredentialStore(Config.PROFILE_PATH)
        self.history = history or MessageHistory()
        self.dashboard = Dashboard(socketio, self.history)
        self.supervisor = ConnectionSupervisor(self.store, session_factory=session_factory,
                                               notifier=self.dashboard, **(supervisor_options or {}))
        self.dashboard.attach(self.supervisor)
        self.keep_alive = KeepAlive(self.supervisor, self.history, started_at=self.started_at)
        self.auto_replies = Config.AUTO_REPLIES if auto_replies is None else auto_replies
        self.supervisor.on_message(self.handle_incoming)
        self._stopped = False

    def uptime(self):
        return time.time() - self.started_at

    def record(self, record):
        count = self.history.add(record)
        self.dashboard.new_message(record)
        return count

    def handle_incoming(self, message):
        record = make_record(RECEIVED, message["contact"], message["text"],
                             sender=message.get("from"), message_id=message.get("id"))
        count = self.record(record)
        logger.info(f"📨 Message from {record['from']}: {record['text']}")

        if count % Config.SAVE_EVERY == 0:
            self.history.save()

        self.auto_reply(record)

    def auto_reply(self, record):
        text = record["text"].lower()
        for keyword, reply in self.auto_replies.items():
            if keyword.lower() in text:
                try:
                    self.send(record["contact"], reply, sender="Bot")
                    logger.info(f"📤 Auto-reply sent to {record['from']}")
                except Exception as e:
                    logger.error(f"❌ Error sending auto-reply: {e}")
                return True
        return False

    def send(self, target, text, sender="API Bot"):
        self.supervisor.send_message(target, text)
        record = make_record(SENT, target, text, sender=sender)
        self.record(record)
        self.history.save()
        return record

    def start(self, connect_delay=None):
        self.store.ensure()
        self.history.load()
        self.keep_alive.start()

        connect_delay = Config.STARTUP_DELAY if connect_delay is None else connect_delay
        timer = threading.Timer(connect_delay, self.supervisor.start)
        timer.daemon = True
        timer.start()

    def shutdown(self):
        if self._stopped:
            return
        self._stopped = True
        logger.info("🧹 Performing cleanup...")
        self.keep_alive.stop()
        self.history.save()
        self.supervisor.shutdown(logout=Config.LOGOUT_ON_SHUTDOWN)
        try:
            self.store.clean_cache()
        except OSError as e:
            logger.warning(f"Could not clean browser cache: {e}")
        logger.info("✅ Shutdown complete, session preserved")


def create_app(bot_options=None, api_key=None, rate_limit=None):
    app = Flask(__name__, static_folder=Config.STATIC_DIR, static_url_path="")
    app.config['SECRET_KEY'] = Config.SECRET_KEY
    CORS(app)
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")

    bot = WhatsAppBot(socketio, **(bot_options or {}))
    api_key = Config.BOT_API_KEY if api_key is None else api_key
    limiter = rate_limit or RateLimiter(Config.RATE_LIMIT_REQUESTS, Config.RATE_LIMIT_WINDOW)

    app.config['BOT'] = bot
    app.config['SOCKETIO'] = socketio

    @app.route('/', methods=['GET'])
    def index():
        return send_from_directory(Config.STATIC_DIR, 'index.html')

    @app.route('/health', methods=['GET'])
    def health_check():
        snapshot = bot.supervisor.snapshot()
        return jsonify({
            "success": True,
            "connected": snapshot["connected"],
            "reconnecting": snapshot["reconnecting"],
            "retryAttempts": snapshot["retry_attempts"],
            "timestamp": datetime.now().isoformat(),
            "status": "ok",
            "uptime": bot.uptime(),
            "messages": len(bot.history),
            "isConnecting": snapshot["is_connecting"],
            "keepAlive": bot.keep_alive.stats,
        })

    @app.route('/ping', methods=['GET'])
    def ping():
        ping_time = datetime.now().isoformat()
        logger.info(f"🏓 Self-ping received: {ping_time}")
        return jsonify({
            "pong": True,
            "timestamp": ping_time,
            "uptime": bot.uptime(),
            "connected": bot.supervisor.connected,
            "message": "Bot is up and running",
        })

    @app.route('/status', methods=['GET'])
    def status_check():
        """Check detailed status"""
        snapshot = bot.supervisor.snapshot()
        profile_exists = bot.store.exists()
        try:
            marker = bot.store.load() if profile_exists else {}
        except ValueError:
            marker = {}

        status = {
            "connection": snapshot["state"],
            "connected": snapshot["connected"],
            "reconnecting": snapshot["reconnecting"],
            "retry_attempts": snapshot["retry_attempts"],
            "qr_pending": snapshot["qr"] is not None,
            "profile_path": bot.store.path,
            "profile_exists": profile_exists,
            "profile_size": bot.store.size() if profile_exists else 0,
            "paired_at": marker.get("paired_at"),
            "credentials_saved_at": marker.get("last_saved"),
            "internet": check_internet_connection(),
            "current_time": datetime.now().isoformat(),
        }
        return jsonify({"status": "success", "data": status})

    @app.route('/messages/export', methods=['GET'])
    def export_messages():
        return Response(
            bot.history.to_csv(),
            mimetype='text/csv',
            headers={"Content-Disposition": "attachment; filename=messages.csv"},
        )

    @app.route('/send-message', methods=['POST'])
    def send_message():
        if not limiter.allow(request.remote_addr or "unknown"):
            return jsonify({"success": False, "error": "Too many requests, please try again later"}), 429

        auth_header = request.headers.get('Authorization')
        if not api_key or auth_header != f"Bearer {api_key}":
            logger.warning("❌ Unauthorized access attempt on /send-message")
            return jsonify({"success": False, "error": "Unauthorized"}), 401

        if not bot.supervisor.connected:
            logger.warning("⚠️  Send attempted while WhatsApp is disconnected")
            return jsonify({"success": False, "error": "WhatsApp not connected"}), 503

        data = request.get_json(silent=True) or {}
        phone = data.get('phone')
        message = data.get('message')

        if not phone or not message:
            return jsonify({"success": False, "error": "Phone and message are required"}), 400

        if not isinstance(phone, str) or not isinstance(message, str):
            return jsonify({"success": False, "error": "Phone and message must be strings"}), 400

        if not phone.strip() or not message.strip():
            return jsonify({"success": False, "error": "Phone and message cannot be empty"}), 400

        target = to_jid(phone)
        logger.info(f"📤 API: sending message to {phone} (normalized: {target})")

        try:
            bot.send(target, message.strip())
        except NotConnectedError:
            return jsonify({"success": False, "error": "WhatsApp not connected"}), 503
        except Exception as e:
            logger.error(f"❌ API: error sending message: {e}")
            return jsonify({"success": False, "error": "Failed to send message"}), 500

        logger.info(f"✅ API: message sent to {phone}")
        return jsonify({"success": True})

    return app


def main():
    logger.info("🚀 Starting WhatsApp Bot Server...")
    logger.info(f"🌐 Public URL: {Config.PUBLIC_URL or 'not configured'}")

    app = create_app()
    bot = app.config['BOT']
    socketio = app.config['SOCKETIO']

    atexit.register(bot.shutdown)

    def handle_signal(signum, frame):
        logger.info(f"🛑 Shutting down (signal {signum})...")
        bot.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    bot.start()

    logger.info(f"🌐 Server starting on http://{Config.HOST}:{Config.PORT}")
    logger.info(f"❤️  Health check: http://localhost:{Config.PORT}/health")
    logger.info(f"🏓 Ping endpoint: http://localhost:{Config.PORT}/ping")
    logger.info(f"💾 Session stored in: {Config.PROFILE_PATH}")
    socketio.run(app, host=Config.HOST, port=Config.PORT, debug=False,
                 use_reloader=False, allow_unsafe_werkzeug=True)


if __name__ == '__main__':
    main()
