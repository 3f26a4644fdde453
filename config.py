import json
import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# base delay (s), delay cap (s), max attempts before the session is wiped
RECONNECT_PROFILES = {
    "fast": (5, 30, 5),
    "standard": (10, 60, 5),
    "patient": (15, 60, 10),
}


def _env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name, default):
    value = os.getenv(name)
    if not value:
        return default
    try:
        return type(default)(value)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {value!r}, using {default}")
        return default


def _env_json(name, default):
    value = os.getenv(name)
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        logger.warning(f"{name} is not valid JSON, ignoring")
        return default


def reconnect_profile(name):
    """(base delay, delay cap, max attempts) for a named profile; unknown names get "standard"."""
    return RECONNECT_PROFILES.get(name, RECONNECT_PROFILES["standard"])


def _public_url():
    url = os.getenv("PUBLIC_URL") or os.getenv("RENDER_URL")
    if url:
        return url.rstrip("/")
    hostname = os.getenv("RENDER_EXTERNAL_HOSTNAME")
    if hostname:
        return f"https://{hostname}"
    return None


class Config:
    # Server
    PORT = _env_number("PORT", 3000)
    HOST = os.getenv("HOST", "0.0.0.0")
    PUBLIC_URL = _public_url()
    BOT_API_KEY = os.getenv("BOT_API_KEY")
    SECRET_KEY = os.getenv("SECRET_KEY", "whatsapp-bot-secret")
    STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "public")

    # Rate limit for /send-message
    RATE_LIMIT_REQUESTS = _env_number("RATE_LIMIT_REQUESTS", 30)
    RATE_LIMIT_WINDOW = _env_number("RATE_LIMIT_WINDOW", 60)

    # WhatsApp session
    PROFILE_PATH = os.getenv("PROFILE_PATH", os.path.join(os.getcwd(), "whatsapp_bot_profile"))
    HEADLESS = _env_bool("HEADLESS", True)
    WHATSAPP_URL = "https://web.whatsapp.com"
    LOAD_TIMEOUT = _env_number("LOAD_TIMEOUT", 90)
    QR_TIMEOUT = _env_number("QR_TIMEOUT", 120)
    POLL_INTERVAL = _env_number("POLL_INTERVAL", 3.0)
    SEND_TIMEOUT = _env_number("SEND_TIMEOUT", 30)
    DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "")

    # Reconnection policy
    RECONNECT_PROFILE = os.getenv("RECONNECT_PROFILE", "standard")
    RECONNECT_BASE_DELAY = _env_number("RECONNECT_BASE_DELAY", float(reconnect_profile(RECONNECT_PROFILE)[0]))
    RECONNECT_DELAY_CAP = _env_number("RECONNECT_DELAY_CAP", float(reconnect_profile(RECONNECT_PROFILE)[1]))
    MAX_RECONNECT_ATTEMPTS = _env_number("MAX_RECONNECT_ATTEMPTS", reconnect_profile(RECONNECT_PROFILE)[2])
    PURGE_RESTART_DELAY = _env_number("PURGE_RESTART_DELAY", 30.0)
    STARTUP_DELAY = _env_number("STARTUP_DELAY", 2.0)
    LOGOUT_POLICY = os.getenv("LOGOUT_POLICY", "re-pair")
    LOGOUT_ON_SHUTDOWN = _env_bool("LOGOUT_ON_SHUTDOWN", False)

    # Message history
    MESSAGES_FILE = os.getenv("MESSAGES_FILE", os.path.join(os.getcwd(), "messages.json"))
    MAX_MESSAGES_IN_MEMORY = 100
    MAX_MESSAGES_PERSISTED = 50
    SAVE_EVERY = 5

    # Keep-alive and maintenance
    SELF_PING_MINUTES = _env_number("SELF_PING_MINUTES", 13)
    FIRST_PING_DELAY = _env_number("FIRST_PING_DELAY", 180)
    PING_TIMEOUT = 15
    CLEANUP_HOURS = 2
    REPORT_HOURS = 12
    HEARTBEAT_MINUTES = 5

    # Bot behaviour: {"keyword": "reply"}
    AUTO_REPLIES = _env_json("AUTO_REPLIES", {})
