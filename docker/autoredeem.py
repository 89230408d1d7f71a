#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
autoredeem.py — TrueMoney gift voucher watcher and redeemer for Discord

Listens to a Discord gateway session, picks voucher links out of message text
and QR code images, redeems each new voucher once and reports the outcome.
"""

import asyncio
import logging
import os
import re
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

import cv2
import numpy as np
import requests
from aiohttp import web
from bs4 import BeautifulSoup
from dotenv import dotenv_values

from discord_gateway import (
    DEFAULT_GATEWAY_URL,
    DEFAULT_INTENTS,
    GatewayClient,
    ReconnectPolicy,
)

# -------------------------------
# Version and Constants
# -------------------------------

__version__ = "1.0"

NOTIFY_MODES = ("webhook", "dm", "reply", "none")

# -------------------------------
# Configuration
# -------------------------------

class ConfigError(ValueError):
    """Missing or invalid startup configuration"""


class Config:
    """Centralized configuration management"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None, env_file: Optional[str] = ".env"):
        # .env values win over the process environment
        self.env_config = dotenv_values(env_file) if env_file and Path(env_file).exists() else {}
        self.environ = os.environ if environ is None else environ

        # Required
        self.phone = re.sub(r"[\s-]", "", self._get_str("PHONE"))
        if not self.phone:
            raise ConfigError("PHONE environment variable is required")
        if not self.phone.isdigit():
            raise ConfigError(f"PHONE must contain digits only, got {self.masked_phone!r}")

        token = self._get_str("DISCORD_TOKEN").strip()
        if token.lower().startswith("bot "):
            token = token[4:].strip()
        if not token:
            raise ConfigError("DISCORD_TOKEN environment variable is required")
        self.discord_token = token

        # Notifications
        self.discord_webhook_url = self._get_str("DISCORD_WEBHOOK_URL")
        self.notify_user_id = self._get_str("NOTIFY_USER_ID")
        self.notify_mode = (self._get_str("NOTIFY_MODE") or ("webhook" if self.discord_webhook_url else "none")).lower()
        if self.notify_mode not in NOTIFY_MODES:
            raise ConfigError(f"Invalid NOTIFY_MODE '{self.notify_mode}'. Supported modes: {', '.join(NOTIFY_MODES)}")
        if self.notify_mode == "webhook" and not self.discord_webhook_url:
            raise ConfigError("NOTIFY_MODE=webhook requires DISCORD_WEBHOOK_URL")
        if self.notify_mode == "dm" and not self.notify_user_id:
            raise ConfigError("NOTIFY_MODE=dm requires NOTIFY_USER_ID")
        self.send_fail_message = self._get_bool("SEND_FAIL_MESSAGE", False)

        # Redemption
        self.voucher_base_url = self._get_str("VOUCHER_BASE_URL", "https://gift.truemoney.com/campaign/vouchers").rstrip("/")
        self.verify_before_redeem = self._get_bool("VERIFY_BEFORE_REDEEM", False)
        self.redeem_timeout = self._get_float("REDEEM_TIMEOUT", 10.0)
        self.image_timeout = self._get_float("IMAGE_TIMEOUT", 8.0)
        self.user_agent = f"tw-autoredeem/{__version__}"

        # Gateway
        self.api_base = "https://discord.com/api/v10"
        self.gateway_url = self._get_str("GATEWAY_URL", DEFAULT_GATEWAY_URL)
        self.gateway_intents = self._get_int("GATEWAY_INTENTS", DEFAULT_INTENTS)
        self.reconnect_base_delay = self._get_float("RECONNECT_BASE_DELAY", 5.0)
        self.reconnect_max_delay = self._get_float("RECONNECT_MAX_DELAY", 30.0)
        self.max_reconnect_attempts = self._get_int("MAX_RECONNECT_ATTEMPTS", 10)
        self.reconnect_cooldown = self._get_float("RECONNECT_COOLDOWN", 300.0)

        # Runtime
        self.port = self._get_int("PORT", 3000)
        self.status_interval = self._get_float("STATUS_INTERVAL", 300.0)
        self.verbose = self._get_bool("VERBOSE", False)
        self.debug = self._get_bool("DEBUG", False)

    @property
    def masked_phone(self) -> str:
        return re.sub(r"(\d{3})\d{4}(\d{3})", r"\1****\2", self.phone)

    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            base_delay=self.reconnect_base_delay,
            max_delay=self.reconnect_max_delay,
            max_attempts=self.max_reconnect_attempts,
            cooldown=self.reconnect_cooldown,
        )

    def _get_str(self, key: str, default: str = "") -> str:
        value = self.env_config.get(key)
        if value is None:
            value = self.environ.get(key, default)
        return value if value is not None else default

    def _get_bool(self, key: str, default: bool = False) -> bool:
        value = self._get_str(key)
        if not value:
            return default
        return value.strip().lower() in ("1", "true", "yes", "on")

    def _get_int(self, key: str, default: int) -> int:
        try:
            return int(self._get_str(key, str(default)))
        except ValueError:
            return default

    def _get_float(self, key: str, default: float) -> float:
        try:
            return float(self._get_str(key, str(default)))
        except ValueError:
            return default

# -------------------------------
# Logging Setup
# -------------------------------

class CustomFormatter(logging.Formatter):
    """Custom formatter for console output"""

    def format(self, record):
        timestamp = datetime.now().strftime("%H:%M:%S")
        return f"[{timestamp}] {record.getMessage()}"


def setup_logging(debug: bool = False):
    """Configure logging system"""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    # Remove existing handlers
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(CustomFormatter())
    root.addHandler(console_handler)

    # websockets is chatty at DEBUG
    logging.getLogger("websockets").setLevel(logging.INFO)
    return root


logger = logging.getLogger("autoredeem")


class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    MAGENTA = '\033[35m'
    BOLD = '\033[1m'
    END = '\033[0m'
    GRAY = '\033[90m'


def log(message: str, color: str = "", level: int = logging.INFO):
    """Colourised log line through the module logger"""
    if color:
        logger.log(level, f"{color}{message}{Colors.END}")
    else:
        logger.log(level, message)


def log_section(message: str, show_time: bool = False):
    width = 50
    if show_time:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        title = f"{message} - {timestamp}"
    else:
        title = message

    log('─' * width, Colors.CYAN)
    log(f"{Colors.BOLD}{title}", Colors.CYAN)
    log('─' * width, Colors.CYAN)


def log_success(message: str):
    """Log a success message"""
    log(f"SUCCESS: {message}", Colors.GREEN)


def log_error(message: str):
    """Log an error message"""
    log(f"ERROR: {message}", Colors.RED, logging.ERROR)


def log_warning(message: str):
    """Log a warning message"""
    log(f"WARNING: {message}", Colors.YELLOW, logging.WARNING)


def log_info(message: str):
    """Log an info message"""
    log(f"INFO: {message}", Colors.CYAN)


def log_code(code: str, status: str, details: str = "", color: str = Colors.CYAN):
    """Log voucher-related information with consistent formatting"""
    log(f"{status}: {Colors.BOLD}{code}{Colors.END}{color} {details}".rstrip(), color)


def log_config(config: Config):
    log(f"{Colors.CYAN}Configuration:{Colors.END}")
    log(f"  {Colors.CYAN}Phone:{Colors.END} {Colors.BOLD}{config.masked_phone}{Colors.END}")
    log(f"  {Colors.CYAN}Notify Mode:{Colors.END} {Colors.BOLD}{config.notify_mode}{Colors.END}")
    log(f"  {Colors.CYAN}Send Fail Messages:{Colors.END} {Colors.BOLD}{'Yes' if config.send_fail_message else 'No (logs only)'}{Colors.END}")
    log(f"  {Colors.CYAN}Verify Before Redeem:{Colors.END} {Colors.BOLD}{config.verify_before_redeem}{Colors.END}")
    log(f"  {Colors.CYAN}Redeem Timeout:{Colors.END} {Colors.BOLD}{config.redeem_timeout}s{Colors.END}")
    attempts = config.max_reconnect_attempts or "unlimited"
    log(f"  {Colors.CYAN}Reconnect Attempts:{Colors.END} {Colors.BOLD}{attempts}{Colors.END}")
    log(f"  {Colors.CYAN}Liveness Port:{Colors.END} {Colors.BOLD}{config.port}{Colors.END}")

# -------------------------------
# Enums and Data Classes
# -------------------------------

class RedemptionStatus(Enum):
    """Status codes returned by the voucher API, plus local failure kinds"""
    SUCCESS = "SUCCESS"
    VOUCHER_OUT_OF_STOCK = "VOUCHER_OUT_OF_STOCK"
    VOUCHER_NOT_FOUND = "VOUCHER_NOT_FOUND"
    VOUCHER_EXPIRED = "VOUCHER_EXPIRED"
    CANNOT_GET_OWN_VOUCHER = "CANNOT_GET_OWN_VOUCHER"
    TARGET_USER_NOT_FOUND = "TARGET_USER_NOT_FOUND"
    BOT_CHALLENGE = "BOT_CHALLENGE"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "RedemptionStatus":
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class RedeemResult:
    """Result of a voucher redemption attempt"""
    voucher: str
    success: bool
    status: str
    message: str
    amount: float = 0.0
    owner_name: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def ok(cls, voucher: str, amount: float, owner_name: str, message: str = "Success") -> "RedeemResult":
        return cls(voucher=voucher, success=True, status=RedemptionStatus.SUCCESS.value,
                   message=message, amount=amount, owner_name=owner_name)

    @classmethod
    def fail(cls, voucher: str, status: str, message: str) -> "RedeemResult":
        return cls(voucher=voucher, success=False, status=status, message=message)

    @property
    def kind(self) -> RedemptionStatus:
        return RedemptionStatus.from_code(self.status)


@dataclass
class RunningStats:
    """Process-lifetime counters"""
    success_count: int = 0
    fail_count: int = 0
    total_amount: float = 0.0
    started_at: float = field(default_factory=time.time)

    def record(self, result: RedeemResult):
        if result.success:
            self.success_count += 1
            self.total_amount += result.amount
        else:
            self.fail_count += 1

    @property
    def attempts(self) -> int:
        return self.success_count + self.fail_count

    @property
    def success_rate(self) -> float:
        if not self.attempts:
            return 0.0
        return self.success_count / self.attempts * 100

    @property
    def uptime_seconds(self) -> int:
        return int(time.time() - self.started_at)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success_count,
            "failed": self.fail_count,
            "total": self.attempts,
            "total_amount": round(self.total_amount, 2),
            "success_rate": round(self.success_rate, 1),
            "uptime": self.uptime_seconds,
        }

    def summary(self) -> str:
        return f"Success: {self.success_count} | Fail: {self.fail_count} | Total: {self.total_amount:.2f}฿"


class RedeemedSet:
    """Voucher codes already submitted during this process lifetime"""

    def __init__(self):
        self._codes: Set[str] = set()

    def claim(self, code: str) -> bool:
        """Mark a code as submitted; False when it was already claimed"""
        # No await between the check and the insert, so this is atomic on the event loop
        if code in self._codes:
            return False
        self._codes.add(code)
        return True

    def release(self, code: str):
        self._codes.discard(code)

    def __contains__(self, code: str) -> bool:
        return code in self._codes

    def __len__(self) -> int:
        return len(self._codes)

# -------------------------------
# Voucher Extraction
# -------------------------------

# Checked in order; the first pattern that matches wins
VOUCHER_PATTERNS = (
    re.compile(r"v=([a-zA-Z0-9]+)"),
    re.compile(r"vouchers/([a-zA-Z0-9]+)"),
    re.compile(r"campaign/\?v=([a-zA-Z0-9]+)"),
)


def get_voucher_code(text: Optional[str]) -> Optional[str]:
    """Return the voucher code from the first matching pattern, or None"""
    if not text:
        return None
    for pattern in VOUCHER_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def find_voucher_codes(text: Optional[str]) -> List[str]:
    """All distinct voucher codes in the text, in order of appearance"""
    if not text:
        return []

    found = []
    for pattern in VOUCHER_PATTERNS:
        for match in pattern.finditer(text):
            found.append((match.start(1), match.group(1)))

    codes = []
    for _, code in sorted(found):
        if code not in codes:
            codes.append(code)
    return codes

# -------------------------------
# QR Code Scanning
# -------------------------------

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp")


def is_image_attachment(attachment: Dict[str, Any]) -> bool:
    content_type = attachment.get("content_type") or ""
    if content_type.startswith("image/"):
        return True
    filename = (attachment.get("filename") or "").lower()
    return filename.endswith(IMAGE_EXTENSIONS)


def decode_qr(image_bytes: bytes) -> Optional[str]:
    """
    Decode the first QR code in an image.

    Tries the original, a grayscale copy and a contrast-boosted copy before
    giving up. Raises ValueError when the bytes are not a readable image.
    """
    buffer = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("Unreadable image data")

    detector = cv2.QRCodeDetector()
    candidates = (
        lambda: img,
        lambda: cv2.cvtColor(img, cv2.COLOR_BGR2GRAY),
        lambda: cv2.convertScaleAbs(img, alpha=1.5, beta=30),
    )
    for make in candidates:
        data, _, _ = detector.detectAndDecode(make())
        if data:
            return data
    return None


class QRScanner:
    """Downloads image attachments and decodes QR payloads off the event loop"""

    def __init__(self, timeout: float = 8.0, session: requests.Session = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_image(self, url: str) -> bytes:
        resp = self.session.get(url, timeout=self.timeout)
        resp.raise_for_status()
        return resp.content

    def scan_sync(self, url: str) -> Optional[str]:
        return decode_qr(self.fetch_image(url))

    async def scan(self, attachment: Dict[str, Any]) -> Optional[str]:
        url = attachment.get("url") or attachment.get("proxy_url")
        if not url:
            return None
        return await asyncio.to_thread(self.scan_sync, url)

# -------------------------------
# Voucher Redemption
# -------------------------------

CHALLENGE_MARKERS = (
    "just a moment",
    "attention required",
    "cf-chl",
    "cf-browser-verification",
    "challenge-platform",
)


def _parse_amount(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value).replace(",", ""))


def parse_envelope(voucher: str, data: Any) -> RedeemResult:
    """Map a decoded voucher API response to a RedeemResult"""
    if not isinstance(data, dict) or not isinstance(data.get("status"), dict):
        return RedeemResult.fail(voucher, RedemptionStatus.ERROR.value, "Unexpected response shape")

    status = data["status"]
    code = status.get("code")
    if code != RedemptionStatus.SUCCESS.value:
        return RedeemResult.fail(voucher, code or RedemptionStatus.UNKNOWN.value,
                                 status.get("message") or code or "Failed")

    # The voucher is credited at this point; odd fields fall back to defaults
    payload = data.get("data")
    if not isinstance(payload, dict):
        payload = {}
    amount = None
    for holder in (payload.get("my_ticket"), payload.get("voucher"), payload):
        if isinstance(holder, dict) and holder.get("amount_baht") is not None:
            amount = holder["amount_baht"]
            break
    try:
        amount = _parse_amount(amount)
    except (ValueError, TypeError):
        log_warning(f"Unparseable amount {amount!r} for {voucher}")
        amount = 0.0

    profile = payload.get("owner_profile")
    owner = profile.get("full_name") if isinstance(profile, dict) else None
    owner = str(owner) if owner else "Unknown"
    return RedeemResult.ok(voucher, amount, owner, str(status.get("message") or "Success"))


class VoucherRedeemer:
    """Redeems vouchers against the gift API with a pooled HTTP session"""

    def __init__(self, config: Config, session: requests.Session = None):
        self.config = config
        self.session = session or self._build_session()

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({
            'User-Agent': self.config.user_agent,
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        })
        # A redeem POST must not be replayed by the transport
        adapter = requests.adapters.HTTPAdapter(pool_connections=10, pool_maxsize=20, max_retries=0)
        session.mount('http://', adapter)
        session.mount('https://', adapter)
        return session

    def redeem_url(self, voucher: str) -> str:
        return f"{self.config.voucher_base_url}/{voucher}/redeem"

    def verify_url(self, voucher: str) -> str:
        return f"{self.config.voucher_base_url}/{voucher}/verify"

    def redeem_sync(self, voucher: str) -> RedeemResult:
        """Blocking redeem; every failure comes back as a failed RedeemResult"""
        try:
            if self.config.verify_before_redeem:
                verdict = self._verify(voucher)
                if not verdict.success:
                    return verdict

            resp = self.session.post(
                self.redeem_url(voucher),
                json={"mobile": self.config.phone, "voucher_hash": voucher},
                timeout=self.config.redeem_timeout,
            )
            return self.parse_response(voucher, resp)
        except requests.Timeout:
            return RedeemResult.fail(voucher, RedemptionStatus.ERROR.value,
                                     f"Timed out after {self.config.redeem_timeout}s")
        except requests.RequestException as e:
            return RedeemResult.fail(voucher, RedemptionStatus.ERROR.value, str(e))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            return RedeemResult.fail(voucher, RedemptionStatus.ERROR.value, f"Unexpected response: {e}")

    async def redeem(self, voucher: str) -> RedeemResult:
        try:
            return await asyncio.to_thread(self.redeem_sync, voucher)
        except Exception as e:
            return RedeemResult.fail(voucher, RedemptionStatus.ERROR.value, str(e))

    def _verify(self, voucher: str) -> RedeemResult:
        resp = self.session.get(
            self.verify_url(voucher),
            params={"mobile": self.config.phone},
            timeout=self.config.redeem_timeout,
        )
        result = self.parse_response(voucher, resp)
        if result.success:
            log_info(f"Verified {voucher} ({result.amount:.2f}฿ from {result.owner_name})")
        return result

    def parse_response(self, voucher: str, resp: requests.Response) -> RedeemResult:
        try:
            data = resp.json()
        except ValueError:
            return self._classify_page(voucher, resp)
        return parse_envelope(voucher, data)

    def _classify_page(self, voucher: str, resp: requests.Response) -> RedeemResult:
        """Explain a non-JSON response, telling bot challenges apart from other errors"""
        html = resp.text or ""
        soup = BeautifulSoup(html, 'html.parser')
        title = soup.title.get_text(strip=True) if soup.title else ""

        lowered = html.lower()
        if any(marker in lowered for marker in CHALLENGE_MARKERS):
            return RedeemResult.fail(voucher, RedemptionStatus.BOT_CHALLENGE.value,
                                     f"Blocked by bot challenge (HTTP {resp.status_code})")

        detail = title or "non-JSON response"
        return RedeemResult.fail(voucher, RedemptionStatus.ERROR.value, f"HTTP {resp.status_code}: {detail}")

# -------------------------------
# Notifications
# -------------------------------

@dataclass
class Notification:
    """One outbound report; kind is success, failure, info or command"""
    kind: str
    title: str
    text: str
    channel_id: Optional[str] = None
    message_id: Optional[str] = None
    fields: List[Dict[str, Any]] = field(default_factory=list)


class DiscordRest:
    """Minimal Discord REST client for direct messages and replies"""

    def __init__(self, token: str, api_base: str = "https://discord.com/api/v10",
                 session: requests.Session = None, timeout: float = 5.0):
        self.api_base = api_base
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f"Bot {token}",
            'Content-Type': 'application/json',
            'User-Agent': f"DiscordBot (tw-autoredeem, {__version__})",
        })
        self._dm_channels: Dict[str, str] = {}

    def create_dm(self, user_id: str) -> str:
        if user_id not in self._dm_channels:
            resp = self.session.post(f"{self.api_base}/users/@me/channels",
                                     json={"recipient_id": user_id}, timeout=self.timeout)
            resp.raise_for_status()
            self._dm_channels[user_id] = resp.json()["id"]
        return self._dm_channels[user_id]

    def send_message(self, channel_id: str, content: str, reply_to: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"content": content[:2000]}
        if reply_to:
            payload["message_reference"] = {"message_id": reply_to, "fail_if_not_exists": False}
        resp = self.session.post(f"{self.api_base}/channels/{channel_id}/messages",
                                 json=payload, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def send_dm(self, user_id: str, content: str) -> Dict[str, Any]:
        return self.send_message(self.create_dm(user_id), content)


class DiscordWebhook:
    """
    Discord webhook sender with embeds

    Provides notifications for:
    - Voucher redemptions
    - Failed redemption attempts (when enabled)
    """

    def __init__(self, webhook_url: str, session: requests.Session = None):
        """
        Initialize webhook sender

        Args:
            webhook_url: Discord webhook URL for sending notifications
            session: Optional requests session to reuse
        """
        self.webhook_url = webhook_url
        self.session = session or requests.Session()
        self.username = "TW-AutoRedeem"

        # Color scheme
        self.colors = {
            'success': 0x23eb5b,  # Bright green for successful redemptions
            'failure': 0xe74c3c,  # Red for failed redemptions
            'info': 0x3498db,     # Blue for informational
            'command': 0x95a5a6,  # Gray for command replies
        }

    def send_embed(self, title: str, description: str = None, color: str = 'info',
                   fields: list = None, footer: str = None, timestamp: bool = True) -> bool:
        """
        Send a Discord embed message

        Args:
            title: Main title of the embed
            description: Optional description text
            color: Color key ('success', 'failure', 'info', 'command')
            fields: List of dicts with 'name', 'value' and optional 'inline' keys
            footer: Optional footer text
            timestamp: Whether to include timestamp
        """
        embed = {
            'title': title,
            'color': self.colors.get(color, self.colors['info'])
        }

        if description:
            embed['description'] = description

        if fields:
            embed['fields'] = fields

        if footer:
            embed['footer'] = {'text': footer}

        if timestamp:
            embed['timestamp'] = datetime.now(timezone.utc).isoformat()

        payload = {
            'username': self.username,
            'embeds': [embed]
        }

        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=10)
            if response.status_code in (200, 204):
                return True
            log_warning(f"Discord notification failed: {response.status_code}")
            return False
        except requests.RequestException as e:
            log_warning(f"Discord notification error: {e}")
            return False


class Notifier:
    """Queue-backed notification channel drained by its own task"""

    def __init__(self, mode: str = "none", rest: DiscordRest = None,
                 webhook: DiscordWebhook = None, user_id: Optional[str] = None):
        self.mode = mode
        self.rest = rest
        self.webhook = webhook
        self.user_id = user_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.delivered = 0
        self.failed = 0

    @classmethod
    def from_config(cls, config: Config) -> "Notifier":
        rest = DiscordRest(config.discord_token, config.api_base)
        webhook = DiscordWebhook(config.discord_webhook_url) if config.discord_webhook_url else None
        return cls(config.notify_mode, rest=rest, webhook=webhook, user_id=config.notify_user_id or None)

    def notify(self, notification: Notification):
        """Enqueue without waiting; delivery happens in run()"""
        self.queue.put_nowait(notification)

    async def run(self):
        while True:
            notification = await self.queue.get()
            try:
                if await self.deliver(notification):
                    self.delivered += 1
            except Exception as e:
                self.failed += 1
                log_warning(f"Notification error ({notification.kind}): {e}")
            finally:
                self.queue.task_done()

    async def drain(self, timeout: float = 5.0):
        """Wait for queued notifications, bounded by timeout"""
        try:
            await asyncio.wait_for(self.queue.join(), timeout)
        except asyncio.TimeoutError:
            log_warning(f"Dropped {self.queue.qsize()} pending notifications on shutdown")

    async def deliver(self, n: Notification) -> bool:
        # Command replies always go back to where the command was issued
        if n.kind == "command":
            if not (self.rest and n.channel_id):
                return False
            await asyncio.to_thread(self.rest.send_message, n.channel_id, n.text, n.message_id)
            return True

        if self.mode == "webhook" and self.webhook:
            return await asyncio.to_thread(self.webhook.send_embed, n.title, n.text, n.kind, n.fields or None)

        content = f"**{n.title}**\n{n.text}"
        if self.mode == "dm" and self.rest and self.user_id:
            await asyncio.to_thread(self.rest.send_dm, self.user_id, content)
            return True
        if self.mode == "reply" and self.rest and n.channel_id:
            await asyncio.to_thread(self.rest.send_message, n.channel_id, content, n.message_id)
            return True

        log(f"[notify] {n.title}: {n.text}", Colors.GRAY, logging.DEBUG)
        return False

# -------------------------------
# Message Handling
# -------------------------------

HELP_TEXT = (
    "**Available Commands**\n"
    "`!ping` - Check bot status\n"
    "`!stats` - View statistics\n"
    "`!help` - Show this help\n\n"
    "Post a voucher link or a QR code image and it is redeemed automatically."
)


@dataclass
class AppContext:
    """Everything the handlers share, owned by run_bot()"""
    config: Config
    redeemer: VoucherRedeemer
    notifier: Notifier
    scanner: QRScanner
    redeemed: RedeemedSet = field(default_factory=RedeemedSet)
    stats: RunningStats = field(default_factory=RunningStats)
    self_user_id: Optional[str] = None


class VoucherBot:
    """Turns MESSAGE_CREATE events into voucher redemptions"""

    def __init__(self, ctx: AppContext):
        self.ctx = ctx
        self.commands = {
            "!ping": self._cmd_ping,
            "!stats": self._cmd_stats,
            "!help": self._cmd_help,
        }

    async def handle_message(self, message: Dict[str, Any]) -> List[RedeemResult]:
        """Gateway handler; errors are logged and never propagate"""
        try:
            return await self.process_message(message)
        except Exception as e:
            log_error(f"Handler error: {e}")
            return []

    async def process_message(self, message: Dict[str, Any]) -> List[RedeemResult]:
        author = message.get("author") or {}
        if author.get("bot"):
            return []
        if self.ctx.self_user_id and author.get("id") == self.ctx.self_user_id:
            return []

        content = (message.get("content") or "").strip()
        command = self.commands.get(content)
        if command:
            if self.ctx.config.notify_user_id and author.get("id") == self.ctx.config.notify_user_id:
                command(message)
            return []

        jobs = [self._redeem(code, "text", message) for code in find_voucher_codes(content)]
        jobs += [
            self._process_attachment(attachment, message)
            for attachment in message.get("attachments") or []
            if is_image_attachment(attachment)
        ]
        if not jobs:
            return []

        results = await asyncio.gather(*jobs, return_exceptions=True)
        for error in (r for r in results if isinstance(r, Exception)):
            log_error(f"Voucher job error: {error!r}")
        return [r for r in results if isinstance(r, RedeemResult)]

    async def _process_attachment(self, attachment: Dict[str, Any], message: Dict[str, Any]) -> Optional[RedeemResult]:
        try:
            payload = await self.ctx.scanner.scan(attachment)
        except Exception as e:
            log_warning(f"QR decode error ({attachment.get('filename', 'attachment')}): {e}")
            return None

        code = get_voucher_code(payload)
        if not code:
            return None
        return await self._redeem(code, "qr", message)

    async def _redeem(self, code: str, source: str, message: Dict[str, Any]) -> Optional[RedeemResult]:
        if not self.ctx.redeemed.claim(code):
            log(f"Skipping {code}: already submitted", Colors.GRAY, logging.DEBUG)
            return None

        log_code(code, "VOUCHER", f"({source})", Colors.YELLOW)
        started = time.monotonic()
        try:
            result = await self.ctx.redeemer.redeem(code)
        except Exception:
            self.ctx.redeemed.release(code)
            raise
        elapsed_ms = int((time.monotonic() - started) * 1000)

        self.ctx.stats.record(result)
        channel_id = message.get("channel_id")

        if result.success:
            log_success(f"+{result.amount:.2f}฿ from {result.owner_name} [{elapsed_ms}ms]")
            self.ctx.notifier.notify(Notification(
                kind="success",
                title="Voucher Redeemed",
                text=f"Received {result.amount:.2f}฿ from {result.owner_name}",
                channel_id=channel_id,
                message_id=message.get("id"),
                fields=self._fields(code, source, channel_id, elapsed_ms),
            ))
        else:
            # Failed codes may be retried by a later message, successful ones never
            self.ctx.redeemed.release(code)
            log_error(f"{code}: {result.message} [{result.status}]")
            if self.ctx.config.send_fail_message:
                self.ctx.notifier.notify(Notification(
                    kind="failure",
                    title="Redeem Failed",
                    text=f"{result.message} ({result.status})",
                    channel_id=channel_id,
                    message_id=message.get("id"),
                    fields=self._fields(code, source, channel_id, elapsed_ms),
                ))

        log(self.ctx.stats.summary(), Colors.GRAY)
        return result

    @staticmethod
    def _fields(code: str, source: str, channel_id: Optional[str], elapsed_ms: int) -> List[Dict[str, Any]]:
        fields = [
            {'name': 'Voucher', 'value': f"`{code}`", 'inline': False},
            {'name': 'Source', 'value': "QR code" if source == "qr" else "Link", 'inline': True},
            {'name': 'Time', 'value': f"{elapsed_ms} ms", 'inline': True},
        ]
        if channel_id:
            fields.append({'name': 'Channel', 'value': f"<#{channel_id}>", 'inline': True})
        return fields

    def _reply(self, message: Dict[str, Any], text: str):
        self.ctx.notifier.notify(Notification(
            kind="command",
            title="Command",
            text=text,
            channel_id=message.get("channel_id"),
            message_id=message.get("id"),
        ))

    def _cmd_ping(self, message):
        self._reply(message, "Pong! Bot is online")

    def _cmd_stats(self, message):
        self._reply(message, format_stats(self.ctx))

    def _cmd_help(self, message):
        self._reply(message, HELP_TEXT)


def format_stats(ctx: AppContext) -> str:
    stats = ctx.stats
    hours, rest = divmod(stats.uptime_seconds, 3600)
    minutes = rest // 60
    return "\n".join([
        "**Bot Statistics**",
        f"Success: {stats.success_count}",
        f"Failed: {stats.fail_count}",
        f"Success Rate: {stats.success_rate:.1f}%",
        f"Total Earned: {stats.total_amount:.2f}฿",
        f"Uptime: {hours}h {minutes}m",
        f"Redeemed: {len(ctx.redeemed)} unique vouchers",
    ])

# -------------------------------
# Liveness Server
# -------------------------------

def create_liveness_app(ctx: AppContext) -> web.Application:
    """Tiny HTTP app so a hosting platform sees the process as healthy"""

    async def index(request):
        return web.json_response({
            "status": "online",
            "message": "TW AutoRedeem running",
            "uptime": ctx.stats.uptime_seconds,
            "stats": ctx.stats.as_dict(),
        })

    async def health(request):
        return web.json_response({"status": "ok", "uptime": ctx.stats.uptime_seconds})

    async def stats(request):
        return web.json_response(dict(ctx.stats.as_dict(), unique_vouchers=len(ctx.redeemed)))

    app = web.Application()
    app.router.add_get("/", index)
    app.router.add_get("/health", health)
    app.router.add_get("/stats", stats)
    return app


async def start_liveness_server(ctx: AppContext, port: int) -> web.AppRunner:
    runner = web.AppRunner(create_liveness_app(ctx), access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log_info(f"Liveness server listening on port {port}")
    return runner

# -------------------------------
# Application
# -------------------------------

def build_context(config: Config) -> AppContext:
    return AppContext(
        config=config,
        redeemer=VoucherRedeemer(config),
        notifier=Notifier.from_config(config),
        scanner=QRScanner(timeout=config.image_timeout),
    )


def _log_loop_exception(loop, context):
    """Keep the process alive on stray task errors"""
    error = context.get("exception") or context.get("message")
    log_error(f"Unhandled error: {error!r}")


async def status_ticker(ctx: AppContext, interval: float):
    while True:
        await asyncio.sleep(interval)
        minutes = ctx.stats.uptime_seconds // 60
        log(f"Alive | Uptime: {minutes}m | {ctx.stats.summary()}", Colors.GRAY)


async def run_bot(config: Config, gateway: GatewayClient = None, stop: asyncio.Event = None):
    """Composition root: wires gateway, handlers, notifier and liveness server"""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_log_loop_exception)

    ctx = build_context(config)
    bot = VoucherBot(ctx)
    gateway = gateway or GatewayClient(
        config.discord_token,
        intents=config.gateway_intents,
        url=config.gateway_url,
        policy=config.reconnect_policy(),
    )

    @gateway.on("READY")
    async def on_ready(data):
        user = data.get("user") or {}
        ctx.self_user_id = user.get("id")
        log_section("LOGIN SUCCESS")
        log(f"  {Colors.CYAN}User:{Colors.END} {Colors.BOLD}{user.get('username', '?')}{Colors.END}")
        log(f"  {Colors.CYAN}ID:{Colors.END} {Colors.BOLD}{ctx.self_user_id}{Colors.END}")
        log(f"  {Colors.CYAN}Phone:{Colors.END} {Colors.BOLD}{config.masked_phone}{Colors.END}")

    @gateway.on("RESUMED")
    async def on_resumed(data):
        log_success("Session resumed")

    gateway.on("MESSAGE_CREATE")(bot.handle_message)

    stop = stop or asyncio.Event()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass  # signal handlers are unavailable on this platform

    runner = await start_liveness_server(ctx, config.port)
    helpers = [
        asyncio.create_task(ctx.notifier.run()),
        asyncio.create_task(status_ticker(ctx, config.status_interval)),
    ]
    gateway_task = asyncio.create_task(gateway.run())
    stop_task = asyncio.create_task(stop.wait())

    try:
        await asyncio.wait({gateway_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if not stop.is_set():
            if gateway_task.exception() is not None:
                log_error(f"Gateway crashed: {gateway_task.exception()!r}")
            elif gateway.session.stop_reason:
                log_error(f"Gateway stopped: {gateway.session.stop_reason}")
            # Keep serving the liveness probe until a signal arrives
            log_warning("Gateway offline, liveness server keeps running until shutdown")
            await stop.wait()
        log_warning("Shutting down gracefully...")
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await gateway.close()
        for task in (gateway_task, stop_task):
            task.cancel()
        await asyncio.gather(gateway_task, stop_task, return_exceptions=True)
        await gateway.wait_handlers()
        await ctx.notifier.drain()
        for task in helpers:
            task.cancel()
        await asyncio.gather(*helpers, return_exceptions=True)
        await runner.cleanup()
        log_info(f"Final stats: {ctx.stats.summary()}")

    return ctx

# -------------------------------
# Entry Point
# -------------------------------

USAGE = """TW AutoRedeem - Usage:
  tw-autoredeem            # Normal operation
  tw-autoredeem --check    # Validate configuration and exit
  tw-autoredeem --debug    # Enable debug logging
  tw-autoredeem --help     # Show this help"""


def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point"""
    argv = sys.argv[1:] if argv is None else argv

    if "--help" in argv or "-h" in argv:
        print(USAGE)
        return 0

    try:
        config = Config()
    except ConfigError as e:
        setup_logging()
        log_error(str(e))
        return 1

    if "--debug" in argv:
        config.debug = True
    setup_logging(config.debug)

    log_section(f"TW AutoRedeem v{__version__}", show_time=True)
    if config.verbose or "--check" in argv:
        log_config(config)
    if "--check" in argv:
        log_success("Configuration OK")
        return 0

    try:
        asyncio.run(run_bot(config))
    except KeyboardInterrupt:
        log("Interrupted by user")
    return 0


if __name__ == "__main__":
    sys.exit(main())
