"""
SMTP delivery for OTP emails.

The transport validates its four required settings (host, port, user,
password) on every call, builds an ``SMTPClient`` for them and memoizes it in
a ``ClientCache`` keyed by a fingerprint of those settings, so rotated
credentials are picked up without a restart. Each send is a single attempt;
failures come back as a classified ``DeliveryResult`` instead of an exception.
"""
import hashlib
import html
import ipaddress
import logging
import re
import smtplib
import socket
import ssl
import threading
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Callable, Dict, Optional

import certifi

from core.config import get_settings

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_TAG_PATTERN = re.compile(r"<[^>]*>")

REQUIRED_SETTINGS = ("SMTP_HOST", "SMTP_PORT", "SMTP_USERNAME", "SMTP_PASSWORD")
IMPLICIT_TLS_PORT = 465
MAX_PORT = 65535
SUBMISSION_PORT = 587

# Providers that reject account passwords over SMTP and want an app password
APP_PASSWORD_PROVIDERS = {
    "gmail.com": "Gmail",
    "googlemail.com": "Gmail",
    "outlook.com": "Outlook",
    "office365.com": "Office 365",
    "yahoo.com": "Yahoo Mail",
}


class DeliveryKind:
    AUTH = "AUTH"
    CONNECTION = "CONNECTION"
    ENVELOPE = "ENVELOPE"
    TIMEOUT = "TIMEOUT"
    NO_CONFIG = "NO_CONFIG"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    MISSING_FIELDS = "MISSING_FIELDS"
    UNKNOWN = "UNKNOWN"


class SMTPConfigError(Exception):
    """The SMTP settings are unusable. A configuration defect, never retried."""


@dataclass(frozen=True)
class SMTPConfig:
    host: str
    port: int
    username: str
    password: str = field(repr=False)
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    timeout: int = 20
    debug: bool = False

    @property
    def fingerprint(self) -> str:
        raw = "\x00".join([self.host, str(self.port), self.username, self.password])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @property
    def sender(self) -> str:
        return self.from_email or self.username

    def masked(self) -> Dict[str, Any]:
        return {"host": self.host, "port": self.port, "user": mask_user(self.username)}


@dataclass
class DeliveryResult:
    success: bool
    message_id: Optional[str] = None
    kind: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None
    detail: Optional[str] = None
    config: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, message_id: Optional[str] = None) -> "DeliveryResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def fail(cls, kind: str, error: str, **kwargs: Any) -> "DeliveryResult":
        return cls(success=False, kind=kind, error=error, **kwargs)


def mask_user(username: Optional[str]) -> str:
    if not username:
        return "NOT SET"
    return f"{username[:3]}***"


def is_loopback_host(host: str) -> bool:
    name = host.strip().lower().strip("[]")
    if name in ("localhost", "localhost.localdomain") or name.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(name).is_loopback
    except ValueError:
        return False


def load_smtp_config(source: Any) -> SMTPConfig:
    """Build an ``SMTPConfig`` from a settings-like object or raise ``SMTPConfigError``."""
    missing = [name for name in REQUIRED_SETTINGS if getattr(source, name, None) is None]
    if missing:
        raise SMTPConfigError(f"Missing SMTP settings: {', '.join(missing)}")
    empty = [name for name in REQUIRED_SETTINGS if not str(getattr(source, name)).strip()]
    if empty:
        raise SMTPConfigError(f"Empty SMTP settings: {', '.join(empty)}")

    raw_port = str(source.SMTP_PORT).strip()
    try:
        number = float(raw_port)
    except ValueError:
        number = 0.0
    if not number.is_integer() or not 0 < number <= MAX_PORT:
        raise SMTPConfigError(f'SMTP_PORT must be a whole number between 1 and {MAX_PORT} (got "{raw_port}")')
    port = int(number)

    host = str(source.SMTP_HOST).strip()
    if is_loopback_host(host):
        raise SMTPConfigError(f'SMTP_HOST cannot be a loopback address (got "{host}")')

    return SMTPConfig(
        host=host,
        port=port,
        username=str(source.SMTP_USERNAME).strip(),
        password=str(source.SMTP_PASSWORD).strip(),
        from_email=(getattr(source, "SMTP_FROM_EMAIL", None) or "").strip() or None,
        from_name=(getattr(source, "SMTP_FROM_NAME", None) or "").strip() or None,
        timeout=int(getattr(source, "SMTP_TIMEOUT", 20) or 20),
        debug=bool(getattr(source, "SMTP_DEBUG", False)),
    )


def strip_html(markup: Optional[str]) -> str:
    return html.unescape(_TAG_PATTERN.sub("", markup or "")).strip()


def build_message(config: SMTPConfig, to_email: str, subject: str, html_body: Optional[str], text_body: Optional[str] = None) -> EmailMessage:
    sender = config.sender
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = formataddr((config.from_name, sender)) if config.from_name else sender
    msg["To"] = to_email
    msg["Message-ID"] = make_msgid(domain=sender.rpartition("@")[2] or "localhost")
    msg.set_content(text_body or strip_html(html_body))
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


def _close_quietly(server) -> None:
    try:
        server.quit()
    except (smtplib.SMTPException, OSError):
        server.close()


class SMTPClient:
    """Opens an authenticated SMTP session for one configuration.

    A new session is opened per send; what is memoized is the validated
    configuration and TLS context, not a live socket.
    """

    def __init__(self, config: SMTPConfig, *, smtp_class=smtplib.SMTP, smtp_ssl_class=smtplib.SMTP_SSL):
        self.config = config
        self._smtp_class = smtp_class
        self._smtp_ssl_class = smtp_ssl_class
        self._tls_context = ssl.create_default_context(cafile=certifi.where())

    def _open(self):
        cfg = self.config
        if cfg.port == IMPLICIT_TLS_PORT:
            server = self._smtp_ssl_class(cfg.host, cfg.port, timeout=cfg.timeout, context=self._tls_context)
        else:
            server = self._smtp_class(cfg.host, cfg.port, timeout=cfg.timeout)
        try:
            server.set_debuglevel(1 if cfg.debug else 0)
            if cfg.port != IMPLICIT_TLS_PORT:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls(context=self._tls_context)
                    server.ehlo()
                elif cfg.port == SUBMISSION_PORT:
                    raise smtplib.SMTPNotSupportedError("STARTTLS is required on port 587 but the server does not offer it")
            server.login(cfg.username, cfg.password)
        except Exception:
            _close_quietly(server)
            raise
        return server

    def send(self, message: EmailMessage) -> None:
        server = self._open()
        try:
            server.send_message(message)
        finally:
            _close_quietly(server)

    def verify(self) -> None:
        server = self._open()
        try:
            server.noop()
        finally:
            _close_quietly(server)


class ClientCache:
    """Memoized ``SMTPClient`` rebuilt whenever the settings fingerprint changes."""

    def __init__(self, client_factory: Callable[[SMTPConfig], SMTPClient] = SMTPClient):
        self._client_factory = client_factory
        self._client: Optional[SMTPClient] = None
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    def refresh_if_changed(self, config: SMTPConfig) -> SMTPClient:
        with self._lock:
            if self._client is None or self._fingerprint != config.fingerprint:
                logger.info(f"Creating SMTP client for {config.host}:{config.port} (user {mask_user(config.username)})")
                self._client = self._client_factory(config)
                self._fingerprint = config.fingerprint
            return self._client

    def invalidate(self) -> None:
        with self._lock:
            self._client = None
            self._fingerprint = None


def _auth_hint(config: SMTPConfig) -> str:
    haystack = f"{config.host} {config.username}".lower()
    for domain, provider in APP_PASSWORD_PROVIDERS.items():
        if domain in haystack:
            return f"For {provider}, you must use an App Password, not your regular account password."
    return "Check that SMTP_USERNAME and SMTP_PASSWORD are current."


def classify_failure(exc: BaseException, config: SMTPConfig) -> DeliveryResult:
    where = f"{config.host}:{config.port}"
    common = {"detail": str(exc) or type(exc).__name__, "config": config.masked()}
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return DeliveryResult.fail(
            DeliveryKind.AUTH,
            "SMTP authentication failed. Please verify SMTP_USERNAME and SMTP_PASSWORD.",
            hint=_auth_hint(config),
            **common,
        )
    if isinstance(exc, (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused)):
        return DeliveryResult.fail(
            DeliveryKind.ENVELOPE,
            "Invalid email address. Please check the recipient email.",
            **common,
        )
    if isinstance(exc, TimeoutError):
        return DeliveryResult.fail(
            DeliveryKind.TIMEOUT,
            "SMTP connection timed out.",
            hint=f"The SMTP server did not respond within {config.timeout} seconds. Check your network connection and SMTP_HOST.",
            **common,
        )
    if isinstance(exc, (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected, smtplib.SMTPNotSupportedError, ssl.SSLError, socket.gaierror, ConnectionError)):
        return DeliveryResult.fail(
            DeliveryKind.CONNECTION,
            f"Cannot connect to SMTP server at {where}.",
            hint="Please verify SMTP_HOST and SMTP_PORT are correct. Check your firewall and network connection.",
            **common,
        )
    if isinstance(exc, smtplib.SMTPException):
        return DeliveryResult.fail(DeliveryKind.UNKNOWN, f"SMTP server at {where} rejected the message.", **common)
    if isinstance(exc, OSError):
        return DeliveryResult.fail(
            DeliveryKind.CONNECTION,
            f"Cannot connect to SMTP server at {where}.",
            hint="Please verify SMTP_HOST and SMTP_PORT are correct. Check your firewall and network connection.",
            **common,
        )
    return DeliveryResult.fail(DeliveryKind.UNKNOWN, "Email sending failed.", **common)


def render_otp_email(code: str, purpose: str, ttl_minutes: int):
    label = purpose.replace("_", " ")
    safe_label = html.escape(label)
    subject = f"Your OTP for {label}"
    html_body = f"""
    <div style="font-family:Arial, sans-serif; line-height:1.6; max-width:600px; margin:0 auto; padding:20px; background-color:#f9f9f9;">
      <div style="background-color:white; padding:30px; border-radius:10px;">
        <h2 style="color:#333; margin-top:0;">Your OTP Code</h2>
        <p style="color:#666; font-size:16px;">Your OTP for <strong>{safe_label}</strong> is:</p>
        <div style="background-color:#fff3cd; border:2px solid #ffc107; border-radius:8px; padding:20px; text-align:center; margin:20px 0;">
          <h1 style="font-size:36px; letter-spacing:8px; color:#856404; margin:0;">{code}</h1>
        </div>
        <p style="color:#666; font-size:14px;">This OTP will expire in {ttl_minutes} minutes.</p>
        <p style="color:#999; font-size:12px;">If you didn't request this OTP, please ignore this email.</p>
      </div>
    </div>
    """
    text_body = (
        f"Your OTP for {label} is: {code}\n\n"
        f"This OTP will expire in {ttl_minutes} minutes.\n\n"
        "If you didn't request this OTP, please ignore this email."
    )
    return subject, html_body, text_body


class MailTransport:
    """Sends through the cached ``SMTPClient`` for the current settings.

    With a ``reloader`` (``core.config.reload_settings`` in the app) the
    environment is re-read when the settings are unusable, and after an
    authentication failure, so rotated credentials apply from the next send.
    """

    def __init__(
        self,
        cache: Optional[ClientCache] = None,
        config_provider: Callable[[], Any] = get_settings,
        reloader: Optional[Callable[[], Any]] = None,
    ):
        self._cache = cache or ClientCache()
        self._config_provider = config_provider
        self._reloader = reloader

    def configure(self) -> SMTPConfig:
        return load_smtp_config(self._config_provider())

    def _configured_client(self):
        try:
            config = self.configure()
        except SMTPConfigError as exc:
            if self._reloader is None:
                return self._not_configured(exc)
            logger.info(f"SMTP settings unusable ({exc}); re-reading environment")
            self._reloader()
            try:
                config = self.configure()
            except SMTPConfigError as retry_exc:
                return self._not_configured(retry_exc)
        return self._cache.refresh_if_changed(config), config, None

    @staticmethod
    def _not_configured(exc: SMTPConfigError):
        logger.error(f"SMTP configuration error: {exc}")
        return None, None, DeliveryResult.fail(
            DeliveryKind.NO_CONFIG,
            "SMTP is not configured. Please set SMTP_HOST, SMTP_PORT, SMTP_USERNAME and SMTP_PASSWORD.",
            hint=str(exc),
        )

    def _after_failure(self, result: DeliveryResult) -> None:
        # Rejected credentials may have been rotated; drop the client and re-read them
        if result.kind != DeliveryKind.AUTH or self._reloader is None:
            return
        self._cache.invalidate()
        self._reloader()
        logger.info("SMTP credentials rejected; settings re-read for the next send")

    def send(self, to_email: Optional[str], subject: Optional[str], html_body: Optional[str], text_body: Optional[str] = None) -> DeliveryResult:
        client, config, failure = self._configured_client()
        if failure is not None:
            return failure
        if not to_email or not subject:
            return DeliveryResult.fail(DeliveryKind.MISSING_FIELDS, "Missing required fields: to and subject are required")

        message = build_message(config, to_email, subject, html_body, text_body)
        try:
            client.send(message)
        except Exception as exc:
            result = classify_failure(exc, config)
            logger.error(f"Failed to send email to {to_email}: {result.kind} {result.detail}")
            self._after_failure(result)
            return result
        logger.info(f"Sent email to {to_email} with subject '{subject}' ({message['Message-ID']})")
        return DeliveryResult.ok(message["Message-ID"])

    def send_otp(self, to_email: Optional[str], code: str, purpose: str = "verification") -> DeliveryResult:
        if not to_email or not EMAIL_PATTERN.match(to_email):
            logger.warning(f"Refusing to send OTP to invalid address {to_email!r}")
            return DeliveryResult.fail(DeliveryKind.INVALID_ADDRESS, "Invalid email address format")
        ttl_seconds = int(getattr(self._config_provider(), "OTP_TTL_SECONDS", 600) or 600)
        subject, html_body, text_body = render_otp_email(code, purpose, max(1, ttl_seconds // 60))
        return self.send(to_email, subject, html_body, text_body)

    def verify_connection(self) -> DeliveryResult:
        """Connect and authenticate without sending anything."""
        client, config, failure = self._configured_client()
        if failure is not None:
            return failure
        try:
            client.verify()
        except Exception as exc:
            result = classify_failure(exc, config)
            logger.warning(f"SMTP verification failed: {result.kind} {result.detail}")
            self._after_failure(result)
            return result
        logger.info(f"SMTP connection to {config.host}:{config.port} verified")
        return DeliveryResult.ok()

    def diagnose(self) -> Dict[str, Any]:
        source = self._config_provider()
        host = getattr(source, "SMTP_HOST", None)
        port = getattr(source, "SMTP_PORT", None)
        try:
            self.configure()
            error = None
        except SMTPConfigError as exc:
            error = str(exc)
        return {
            "configValid": error is None,
            "error": error,
            "emailHost": host or "NOT SET",
            "emailPort": port or "NOT SET",
            "emailUser": mask_user(getattr(source, "SMTP_USERNAME", None)),
            "emailPass": "SET" if getattr(source, "SMTP_PASSWORD", None) else "NOT SET",
        }
