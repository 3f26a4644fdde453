"""
Keep the bot awake on free-tier hosting.

Free instances sleep after 15 minutes without traffic, so the bot pings its own
public URL every 13 minutes and runs its housekeeping jobs on the same
scheduler. The module can also be run on another machine as an external
pinger:

    python keep_alive.py https://your-app.onrender.com
"""
import logging
import sys
import threading
import time
from datetime import datetime

import requests
import schedule

from config import Config

logger = logging.getLogger(__name__)

PING_INTERVAL = 14 * 60
RETRY_INTERVAL = 2 * 60
MAX_QUICK_RETRIES = 3


def check_internet_connection():
    """Check if we have internet connection"""
    try:
        response = requests.get("https://www.google.com", timeout=10)
        return response.status_code == 200
    except requests.RequestException:
        return False


def format_uptime(seconds):
    seconds = int(seconds)
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


class KeepAlive:
    """Self-ping plus periodic maintenance, driven by `schedule`."""

    def __init__(self, supervisor, history, public_url=None, started_at=None, scheduler=None):
        self.supervisor = supervisor
        self.history = history
        self.public_url = public_url if public_url is not None else Config.PUBLIC_URL
        self.started_at = started_at or time.time()
        self.scheduler = scheduler or schedule.Scheduler()
        self.stats = {
            "totalPings": 0,
            "successfulPings": 0,
            "failedPings": 0,
            "lastPing": None,
            "lastSuccess": None,
        }
        self._stop = threading.Event()
        self._thread = None

    def uptime(self):
        return time.time() - self.started_at

    def perform_self_ping(self):
        if not self.public_url:
            logger.info("⚠️  Public URL not configured, skipping self-ping")
            return False

        self.stats["totalPings"] += 1
        self.stats["lastPing"] = datetime.now().isoformat()
        ping_number = self.stats["totalPings"]
        start_time = time.time()

        logger.info(f"🚀 Sending self-ping #{ping_number} to {self.public_url}/ping")

        try:
            response = requests.get(f"{self.public_url}/ping", timeout=Config.PING_TIMEOUT)
        except requests.Timeout:
            logger.warning(f"⏰ Timeout on self-ping #{ping_number}")
            self.stats["failedPings"] += 1
            return False
        except requests.RequestException as e:
            logger.warning(f"❌ Error on self-ping #{ping_number}: {e}")
            self.stats["failedPings"] += 1
            return False

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"⚠️  Self-ping #{ping_number} got a non-JSON response: {response.text[:100]}")
            self.stats["failedPings"] += 1
            return False

        self.stats["successfulPings"] += 1
        self.stats["lastSuccess"] = datetime.now().isoformat()
        response_time = (time.time() - start_time) * 1000
        connected = bool(data.get("connected"))
        logger.info(f"✅ Self-ping OK ({response_time:.0f}ms) - Uptime: {int(data.get('uptime', 0))}s, "
                    f"WhatsApp: {'connected' if connected else 'disconnected'}")

        if not connected:
            snapshot = self.supervisor.snapshot()
            if snapshot["state"] == "stopped":
                logger.info("🛑 Bot reported disconnected via ping, but it was logged out and stays stopped")
            elif not snapshot["is_connecting"]:
                logger.info("🔄 Bot reported disconnected via ping, reconnecting...")
                self.supervisor.start()
        return True

    def cleanup_messages(self):
        removed = self.history.trim()
        if removed:
            logger.info(f"🧹 Cleanup done: removed {removed} old messages, {len(self.history)} left")
            self.history.save()
        return removed

    def report(self):
        snapshot = self.supervisor.snapshot()
        logger.info("📊 === STATS REPORT ===")
        logger.info(f"⏱️  Uptime: {format_uptime(self.uptime())}")
        logger.info(f"📱 WhatsApp: {'connected' if snapshot['connected'] else 'disconnected'}")
        logger.info(f"💬 Messages in memory: {len(self.history)}")
        logger.info(f"🔄 Reconnect attempts: {snapshot['retry_attempts']}")
        logger.info(f"🏓 Keep-alive - Total: {self.stats['totalPings']}, "
                    f"OK: {self.stats['successfulPings']}, Failed: {self.stats['failedPings']}")

    def heartbeat(self):
        snapshot = self.supervisor.snapshot()
        logger.info(f"💓 Heartbeat: connected={snapshot['connected']} uptime={int(self.uptime())}s "
                    f"messages={len(self.history)} reconnectAttempts={snapshot['retry_attempts']} "
                    f"isConnecting={snapshot['is_connecting']}")

    def schedule_jobs(self):
        self.scheduler.every(Config.SELF_PING_MINUTES).minutes.do(self.perform_self_ping)
        self.scheduler.every(Config.CLEANUP_HOURS).hours.do(self.cleanup_messages)
        self.scheduler.every(Config.REPORT_HOURS).hours.do(self.report)
        self.scheduler.every(Config.HEARTBEAT_MINUTES).minutes.do(self.heartbeat)
        logger.info(f"⏰ Jobs scheduled: self-ping every {Config.SELF_PING_MINUTES} min, "
                    f"cleanup every {Config.CLEANUP_HOURS}h, report every {Config.REPORT_HOURS}h")

    def start(self, first_ping_delay=None):
        self.schedule_jobs()

        first_ping_delay = Config.FIRST_PING_DELAY if first_ping_delay is None else first_ping_delay
        if self.public_url:
            timer = threading.Timer(first_ping_delay, self.perform_self_ping)
            timer.daemon = True
            timer.start()

        def run_scheduler():
            while not self._stop.is_set():
                try:
                    self.scheduler.run_pending()
                except Exception as e:
                    logger.error(f"Scheduler error: {e}")
                self._stop.wait(30)

        self._thread = threading.Thread(target=run_scheduler, name="keep-alive", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        self.scheduler.clear()


class ExternalPinger:
    """Pings /health from outside the app so the host never sees it idle."""

    def __init__(self, app_url, interval=PING_INTERVAL, retry_interval=RETRY_INTERVAL):
        self.app_url = app_url.rstrip("/")
        self.interval = interval
        self.retry_interval = retry_interval
        self.ping_count = 0
        self.error_count = 0

    def next_delay_after_error(self):
        self.error_count += 1
        return self.interval if self.error_count > MAX_QUICK_RETRIES else self.retry_interval

    def ping_once(self):
        """Ping the app once; returns seconds to wait before the next ping."""
        self.ping_count += 1
        start_time = time.time()
        logger.info(f"Sending ping #{self.ping_count} to {self.app_url}/health")

        try:
            response = requests.get(f"{self.app_url}/health", timeout=10)
        except requests.RequestException as e:
            logger.warning(f"❌ Error on ping #{self.ping_count}: {e}")
            return self.next_delay_after_error()

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"⚠️  Response is not valid JSON: {response.text[:100]}")
            return self.next_delay_after_error()

        response_time = (time.time() - start_time) * 1000
        logger.info(f"✅ Ping OK ({response_time:.0f}ms) - Status: {data.get('status')}, "
                    f"WhatsApp: {'connected' if data.get('connected') else 'disconnected'}, "
                    f"Uptime: {int(data.get('uptime', 0))}s")
        self.error_count = 0
        return self.interval

    def run_forever(self):
        logger.info(f"🚀 Keep-alive pinging {self.app_url} every {self.interval // 60} minutes")
        while True:
            delay = self.ping_once()
            if delay != self.interval:
                logger.info(f"🔄 Retrying in {delay / 60:.0f} minutes (consecutive errors: {self.error_count})")
            time.sleep(delay)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    url = sys.argv[1] if len(sys.argv) > 1 else Config.PUBLIC_URL
    if not url:
        print("Usage: python keep_alive.py https://your-app.onrender.com")
        sys.exit(1)

    pinger = ExternalPinger(url)
    try:
        pinger.run_forever()
    except KeyboardInterrupt:
        logger.info(f"🛑 Stopping keep-alive: {pinger.ping_count} pings sent, {pinger.error_count} errors")
