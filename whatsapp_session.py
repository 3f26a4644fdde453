"""
Selenium-driven WhatsApp Web session.

One `WhatsAppWebSession` is one browser running against the persistent Chrome
profile in the credential store. A watcher thread polls the page and turns what
it sees into lifecycle events:

    connecting            browser is starting / WhatsApp Web is loading
    qr(payload)           a pairing QR code is on screen (PNG data URL)
    open                  the chat list is visible, the session is usable
    close(reason)         the session ended; `reason` is a DisconnectReason
    creds-update          pairing finished and the profile holds new keys
    message(record)       an unread chat showed a new message preview

A session never restarts itself. Once it emits `close` it is finished and the
owner builds a new one.
"""
import hashlib
import logging
import re
import threading
import time
import urllib.parse

from selenium import webdriver
from selenium.common.exceptions import NoSuchElementException, TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.common.by import By
from selenium.webdriver.common.keys import Keys
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from config import Config
from disconnect_policy import DisconnectReason

logger = logging.getLogger(__name__)

CONNECTING = "connecting"
QR = "qr"
OPEN = "open"
CLOSE = "close"
CREDS_UPDATE = "creds-update"
MESSAGE = "message"
EVENTS = (CONNECTING, QR, OPEN, CLOSE, CREDS_UPDATE, MESSAGE)

PAGE_CHATS = "chats"
PAGE_QR = "qr"
PAGE_REPLACED = "replaced"
PAGE_LOADING = "loading"

MESSAGE_INPUT_XPATH = '//footer//div[@contenteditable="true"]'
SENT_ICON_XPATH = '//span[@data-icon="msg-dblcheck"] | //span[@data-icon="msg-check"] | //span[@data-icon="msg-time"]'
INVALID_NUMBER_XPATH = '//div[contains(text(), "Phone number shared via url is invalid")]'

PAGE_STATE_SCRIPT = """
var body = document.body ? document.body.innerText : '';
if (/open in another window|Use Here/i.test(body)) { return 'replaced'; }
if (document.querySelector('#pane-side, [data-testid="chat-list"], div[aria-label="Chat list"]')) { return 'chats'; }
if (document.querySelector('canvas[aria-label="Scan me!"], canvas[aria-label*="QR"], div[data-ref] canvas')) { return 'qr'; }
return 'loading';
"""

QR_REF_SCRIPT = """
var el = document.querySelector('div[data-ref]');
return el ? el.getAttribute('data-ref') : null;
"""

UNREAD_CHATS_SCRIPT = """
var pane = document.querySelector('#pane-side') || document.querySelector('[data-testid="chat-list"]');
if (!pane) { return []; }
var rows = pane.querySelectorAll('div[role="listitem"], div[role="row"]');
var out = [];
rows.forEach(function (row) {
    var badge = row.querySelector('span[aria-label*="unread" i], [data-testid="unread-count"]');
    if (!badge) { return; }
    var title = row.querySelector('span[dir="auto"][title]');
    var spans = row.querySelectorAll('span[dir="ltr"], span[dir="auto"]');
    var preview = spans.length ? spans[spans.length - 1] : null;
    out.push({
        title: title ? title.getAttribute('title') : '',
        preview: preview ? (preview.getAttribute('title') || preview.innerText) : '',
        unread: badge.innerText || '1'
    });
});
return out;
"""

LOGOUT_SCRIPT = """
var menu = document.querySelector('[data-icon="menu"], [data-icon="more-refreshed"]');
if (menu) { menu.click(); }
"""

# Selenium errors that mean the browser itself is gone, not just a slow page
CONNECTION_ERROR_PATTERNS = [
    "invalid session id",
    "chrome not reachable",
    "disconnected",
    "connection refused",
    "connection reset",
    "max retries exceeded",
    "no such window",
    "session deleted",
    "target window already closed",
]

MAX_SEEN_MESSAGES = 500


class SessionError(Exception):
    pass


class NotConnectedError(SessionError):
    pass


class SendError(SessionError):
    pass


def is_connection_error(error):
    """True when a send failed because the browser session is gone."""
    if isinstance(error, NotConnectedError):
        return True
    if isinstance(error, (TimeoutException, NoSuchElementException, SendError)):
        return False
    message = str(error).lower()
    return any(pattern in message for pattern in CONNECTION_ERROR_PATTERNS)


def normalize_phone(phone):
    """Strip spaces, dashes, parentheses and the leading +."""
    return re.sub(r"[\s\-\(\)\+]", "", phone)


def to_jid(phone):
    normalized = normalize_phone(phone)
    if "@" not in normalized:
        normalized = normalized + "@s.whatsapp.net"
    return normalized


def phone_from_target(target):
    phone = normalize_phone(target.split("@")[0])
    if Config.DEFAULT_COUNTRY_CODE and len(phone) <= 10:
        phone = Config.DEFAULT_COUNTRY_CODE + phone
    return phone


def build_chrome_options(profile_path, headless=True):
    options = Options()

    # Persistent profile keeps the paired session between runs
    options.add_argument(f"--user-data-dir={profile_path}")
    options.add_argument("--profile-directory=Default")

    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument("--disable-extensions")
    options.add_argument("--disable-notifications")
    options.add_argument("--window-size=1280,800")

    if headless:
        options.add_argument("--headless=new")

    options.add_argument("--user-agent=Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36")

    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_experimental_option("excludeSwitches", ["enable-automation", "enable-logging"])
    options.add_experimental_option("useAutomationExtension", False)

    prefs = {
        "profile.default_content_setting_values.notifications": 2,
        "profile.default_content_settings.popups": 0,
        "credentials_enable_service": False,
        "profile.password_manager_enabled": False,
        "profile.default_content_setting_values.cookies": 1,
        "profile.exit_type": "Normal",
        "profile.exited_cleanly": True,
    }
    options.add_experimental_option("prefs", prefs)
    return options


def create_chrome_driver(profile_path, headless=True):
    driver = webdriver.Chrome(options=build_chrome_options(profile_path, headless))

    stealth_scripts = [
        'Object.defineProperty(navigator, "webdriver", {get: () => undefined});',
        'Object.defineProperty(navigator, "languages", {get: () => ["en-US", "en"]});',
        'window.chrome = {runtime: {}};',
    ]
    for script in stealth_scripts:
        driver.execute_cdp_cmd("Page.addScriptToEvaluateOnNewDocument", {"source": script})

    logger.info("✅ WebDriver initialized with persistent profile")
    return driver


class WhatsAppWebSession:
    """A single WhatsApp Web browser session. Not restartable."""

    def __init__(self, store, headless=None, driver_factory=None,
                 load_timeout=None, qr_timeout=None, poll_interval=None, send_timeout=None):
        self.store = store
        self.headless = Config.HEADLESS if headless is None else headless
        self.driver_factory = driver_factory or create_chrome_driver
        self.load_timeout = load_timeout or Config.LOAD_TIMEOUT
        self.qr_timeout = qr_timeout or Config.QR_TIMEOUT
        self.poll_interval = poll_interval or Config.POLL_INTERVAL
        self.send_timeout = send_timeout or Config.SEND_TIMEOUT

        self.driver = None
        self.is_open = False
        self._listeners = {event: [] for event in EVENTS}
        self._driver_lock = threading.RLock()
        self._stopped = threading.Event()
        self._closed = False
        self._close_lock = threading.Lock()
        self._thread = None
        self._seen_messages = []

    def on(self, event, callback):
        if event not in self._listeners:
            raise ValueError(f"Unknown session event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event, *args):
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"❌ Error in {event} handler: {e}")

    def start(self):
        self._thread = threading.Thread(target=self._run, name="whatsapp-session", daemon=True)
        self._thread.start()

    def _run(self):
        self._emit(CONNECTING)

        try:
            self.store.ensure()
            with self._driver_lock:
                self.driver = self.driver_factory(self.store.path, self.headless)
                self.driver.get(Config.WHATSAPP_URL)
        except Exception as e:
            logger.error(f"❌ Failed to start WhatsApp Web: {e}")
            self._finish(DisconnectReason.BAD_SESSION)
            return

        started_at = time.time()
        qr_since = None
        last_qr = None
        paired_here = False

        while not self._stopped.is_set():
            try:
                with self._driver_lock:
                    page = self.driver.execute_script(PAGE_STATE_SCRIPT)
                    qr_payload = None
                    unread = []
                    if page == PAGE_QR and not self.is_open:
                        qr_ref = self.driver.execute_script(QR_REF_SCRIPT)
                        if qr_ref and qr_ref != last_qr:
                            last_qr = qr_ref
                            qr_payload = self._capture_qr()
                    elif page == PAGE_CHATS:
                        unread = self.driver.execute_script(UNREAD_CHATS_SCRIPT) or []
            except WebDriverException as e:
                if self._stopped.is_set():
                    break
                logger.warning(f"⚠️  Browser connection lost: {e}")
                self._finish(DisconnectReason.CONNECTION_CLOSED)
                return

            now = time.time()

            if page == PAGE_REPLACED:
                logger.warning("⚠️  WhatsApp Web was opened in another window")
                self._finish(DisconnectReason.CONNECTION_REPLACED)
                return

            if page == PAGE_CHATS:
                if not self.is_open:
                    self.is_open = True
                    if paired_here:
                        self._emit(CREDS_UPDATE)
                    self._emit(OPEN)
                self._handle_unread(unread)

            elif page == PAGE_QR:
                if self.is_open:
                    # the phone unlinked this device
                    self._finish(DisconnectReason.LOGGED_OUT)
                    return
                paired_here = True
                if qr_since is None:
                    qr_since = now
                if qr_payload:
                    self._emit(QR, qr_payload)
                if now - qr_since > self.qr_timeout:
                    logger.warning("⚠️  QR code not scanned within timeout")
                    self._finish(DisconnectReason.CONNECTION_LOST)
                    return

            elif not self.is_open and now - started_at > self.load_timeout:
                logger.error("❌ WhatsApp Web loading timeout")
                self._finish(DisconnectReason.CONNECTION_LOST)
                return

            self._stopped.wait(self.poll_interval)

    def _capture_qr(self):
        try:
            canvas = self.driver.find_element(By.CSS_SELECTOR, "div[data-ref] canvas, canvas[aria-label]")
            return "data:image/png;base64," + canvas.screenshot_as_base64
        except NoSuchElementException:
            return None

    def _handle_unread(self, chats):
        for chat in chats:
            title = (chat.get("title") or "").strip()
            text = (chat.get("preview") or "").strip()
            if not title or not text:
                continue

            key = hashlib.sha1(f"{title}|{text}|{chat.get('unread')}".encode("utf-8")).hexdigest()
            if key in self._seen_messages:
                continue
            self._seen_messages.append(key)
            del self._seen_messages[:-MAX_SEEN_MESSAGES]

            self._emit(MESSAGE, {
                "id": key[:20],
                "from": title,
                "contact": title,
                "text": text,
            })

    def _finish(self, reason):
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._stopped.set()
        self.is_open = False
        self._quit_driver()
        self._emit(CLOSE, reason)

    def _quit_driver(self):
        with self._driver_lock:
            if self.driver is not None:
                try:
                    self.driver.quit()
                except Exception as e:
                    logger.warning(f"Error closing driver: {e}")
                finally:
                    self.driver = None

    def send_message(self, target, text):
        """Send `text` to a phone number or JID. Raises SessionError subclasses on failure."""
        if not self.is_open or self.driver is None:
            raise NotConnectedError("WhatsApp not connected")

        phone = phone_from_target(target)
        url = f"{Config.WHATSAPP_URL}/send?phone={phone}&text={urllib.parse.quote(text)}"
        start_time = time.time()

        with self._driver_lock:
            logger.info(f"🔹 Opening chat URL for: {phone}")
            self.driver.get(url)

            try:
                text_box = WebDriverWait(self.driver, self.send_timeout).until(
                    lambda d: d.find_elements(By.XPATH, INVALID_NUMBER_XPATH)
                    or EC.element_to_be_clickable((By.XPATH, MESSAGE_INPUT_XPATH))(d)
                )
            except TimeoutException:
                raise SendError(f"Message input not found for {phone}")

            if isinstance(text_box, list):
                raise SendError(f"Invalid phone number: {phone}")

            text_box.send_keys(Keys.ENTER)

            try:
                WebDriverWait(self.driver, self.send_timeout).until(
                    EC.presence_of_element_located((By.XPATH, SENT_ICON_XPATH))
                )
            except TimeoutException:
                raise SendError(f"No delivery confirmation for {phone}")

        logger.info(f"✅ Message sent to {phone} in {time.time() - start_time:.2f}s")

    def logout(self):
        """Unlink this device from the phone. Best effort."""
        if self.driver is None:
            return
        with self._driver_lock:
            try:
                self.driver.execute_script(LOGOUT_SCRIPT)
                WebDriverWait(self.driver, 10).until(
                    EC.element_to_be_clickable((By.XPATH, '//div[@role="button"][.//*[text()="Log out"]] | //div[text()="Log out"]'))
                ).click()
                WebDriverWait(self.driver, 10).until(
                    EC.element_to_be_clickable((By.XPATH, '//button[.//*[text()="Log out"]] | //div[@role="button"][text()="Log out"]'))
                ).click()
                logger.info("👋 Logged out of WhatsApp Web")
            except WebDriverException as e:
                logger.warning(f"Could not log out cleanly: {e}")

    def close(self):
        """Stop the watcher and quit the browser without emitting close."""
        with self._close_lock:
            self._closed = True
        self._stopped.set()
        self.is_open = False
        self._quit_driver()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
