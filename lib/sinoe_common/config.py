"""Configuration for the SINOE notification pipeline

This module builds a typed, validated configuration from the Lambda
environment. Every recognized option is enumerated here; unknown variables
are ignored and malformed values fail fast at startup.

Structure:
- ChannelConfig: primary messaging channel (session, recipients, flags)
- SessionStorageConfig: S3 archive of channel session material
- EmailConfig: SES fallback channel
- DeliveryConfig: retry/timeout bounds and message policy
- NotifierConfig: top-level container
"""

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sinoe_common import constants
from sinoe_common.models import Recipient, StatusFilter

logger = logging.getLogger(__name__)

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _get_number(env: Mapping[str, str], name: str, default: float, *, minimum: float = 0) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_json(env: Mapping[str, str], name: str) -> Any:
    raw = env.get(name)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} is not valid JSON: {e}") from None


@dataclass(frozen=True)
class ChannelConfig:
    """
    Primary messaging channel settings.

    Attributes:
        enabled: Whether the primary channel is used at all
        session_prefix: Prefix of the stable session name
        gateway_url: Base URL of the HTTP channel gateway
        gateway_api_key: Optional API key for the gateway
        session_dir: Local directory holding session material
        recipients: Notification recipients
        client_user: Owner of the paired account (receives pairing artifacts)
        test_phone: Phone used by the test message
        send_on_success: Deliver notifications after a run
        send_on_error: Deliver error notifications on fatal failures
        send_when_empty: Send a courtesy message when nothing is pending
        log_incoming_messages: Log inbound traffic
        log_message_status: Log delivery acknowledgments
    """

    enabled: bool = False
    session_prefix: str = "sinoe"
    gateway_url: str = ""
    gateway_api_key: str = ""
    session_dir: str = constants.DEFAULT_SESSION_DIR
    recipients: tuple[Recipient, ...] = ()
    client_user: Recipient = field(default_factory=lambda: Recipient(name="main"))
    test_phone: str = ""
    send_on_success: bool = True
    send_on_error: bool = False
    send_when_empty: bool = False
    log_incoming_messages: bool = False
    log_message_status: bool = False

    @property
    def session_name(self) -> str:
        return f"{self.session_prefix}-main"

    @property
    def active_recipients(self) -> list[Recipient]:
        """Recipients accepting notifications, deduplicated by phone."""
        seen = set()
        result = []
        for recipient in self.recipients:
            if not recipient.receive_notifications or not recipient.recipient_id:
                continue
            if recipient.recipient_id in seen:
                continue
            seen.add(recipient.recipient_id)
            result.append(recipient)
        return result


@dataclass(frozen=True)
class SessionStorageConfig:
    """S3 storage for channel session archives."""

    enabled: bool = False
    bucket: str = ""
    max_age_days: int = constants.SESSION_MAX_AGE_DAYS


@dataclass(frozen=True)
class EmailConfig:
    """SES fallback channel settings."""

    enabled: bool = False
    sender: str = ""
    default_recipient: str = ""


@dataclass(frozen=True)
class DeliveryConfig:
    """Delivery policy and bounded waits (seconds)."""

    status_filter: StatusFilter = StatusFilter.ALL
    max_items_per_message: int = constants.MAX_ITEMS_PER_MESSAGE
    channel_ready_timeout: float = constants.CHANNEL_READY_TIMEOUT
    ack_timeout: float = constants.ACK_TIMEOUT
    init_timeout: float = constants.INIT_TIMEOUT
    verify_interval: float = constants.VERIFY_INTERVAL
    recovery_delay: float = constants.RECOVERY_DELAY
    ledger_max_attempts: int = constants.LEDGER_MAX_ATTEMPTS
    timezone: str = constants.DEFAULT_TIMEZONE


@dataclass(frozen=True)
class NotifierConfig:
    """Top-level configuration container."""

    table_name: str
    region: str = "us-east-1"
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    session_storage: SessionStorageConfig = field(default_factory=SessionStorageConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "NotifierConfig":
        """
        Build configuration from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Validated NotifierConfig

        Raises:
            ValueError: If a required variable is missing or a value is malformed
        """
        env = os.environ if environ is None else environ

        table_name = env.get("NOTIFICATIONS_TABLE", "").strip()
        if not table_name:
            raise ValueError("NOTIFICATIONS_TABLE environment variable required")

        channel = _channel_from_env(env)
        storage = SessionStorageConfig(
            enabled=_get_bool(env, "SESSION_STORAGE_ENABLED", False),
            bucket=env.get("SESSION_BUCKET", "").strip(),
            max_age_days=int(_get_number(env, "SESSION_MAX_AGE_DAYS", constants.SESSION_MAX_AGE_DAYS)),
        )
        if storage.enabled and not storage.bucket:
            raise ValueError("SESSION_BUCKET is required when SESSION_STORAGE_ENABLED=true")

        email = EmailConfig(
            enabled=_get_bool(env, "EMAIL_ENABLED", False),
            sender=env.get("EMAIL_SENDER", "").strip(),
            default_recipient=env.get("EMAIL_DEFAULT_RECIPIENT", "").strip(),
        )
        if email.enabled and not email.sender:
            raise ValueError("EMAIL_SENDER is required when EMAIL_ENABLED=true")

        try:
            status_filter = StatusFilter(env.get("STATUS_FILTER", "all").strip().lower())
        except ValueError:
            raise ValueError(
                f"STATUS_FILTER must be one of all|open|closed, got {env.get('STATUS_FILTER')!r}"
            ) from None

        timezone = env.get("TIMEZONE", constants.DEFAULT_TIMEZONE).strip()
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"TIMEZONE must be an IANA time zone name, got {timezone!r}") from None

        delivery = DeliveryConfig(
            status_filter=status_filter,
            max_items_per_message=int(
                _get_number(env, "MAX_ITEMS_PER_MESSAGE", constants.MAX_ITEMS_PER_MESSAGE, minimum=1)
            ),
            channel_ready_timeout=_get_number(env, "CHANNEL_READY_TIMEOUT", constants.CHANNEL_READY_TIMEOUT),
            ack_timeout=_get_number(env, "ACK_TIMEOUT", constants.ACK_TIMEOUT),
            init_timeout=_get_number(env, "INIT_TIMEOUT", constants.INIT_TIMEOUT),
            verify_interval=_get_number(env, "VERIFY_INTERVAL", constants.VERIFY_INTERVAL, minimum=1),
            recovery_delay=_get_number(env, "RECOVERY_DELAY", constants.RECOVERY_DELAY),
            ledger_max_attempts=int(
                _get_number(env, "LEDGER_MAX_ATTEMPTS", constants.LEDGER_MAX_ATTEMPTS, minimum=1)
            ),
            timezone=timezone,
        )

        config = cls(
            table_name=table_name,
            region=env.get("AWS_REGION", "us-east-1"),
            channel=channel,
            session_storage=storage,
            email=email,
            delivery=delivery,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

        logger.info(
            f"Loaded configuration: table={table_name}, channel_enabled={channel.enabled}, "
            f"recipients={len(channel.active_recipients)}, email_enabled={email.enabled}, "
            f"session_storage={storage.enabled}"
        )
        return config


def _channel_from_env(env: Mapping[str, str]) -> ChannelConfig:
    notification_phone = env.get("WHATSAPP_NOTIFICATION_PHONE", "").strip()

    recipients: list[Recipient] = []
    if notification_phone:
        recipients.append(Recipient(name="notification", phone=notification_phone))

    raw_recipients = _get_json(env, "WHATSAPP_RECIPIENTS")
    if raw_recipients is not None:
        if not isinstance(raw_recipients, list):
            raise ValueError("WHATSAPP_RECIPIENTS must be a JSON list")
        recipients.extend(Recipient.from_dict(r) for r in raw_recipients)

    raw_client = _get_json(env, "WHATSAPP_CLIENT_USER")
    if raw_client is not None:
        if not isinstance(raw_client, dict):
            raise ValueError("WHATSAPP_CLIENT_USER must be a JSON object")
        client_user = Recipient.from_dict(raw_client)
    else:
        client_user = Recipient(
            name="main",
            phone=notification_phone,
            email=env.get("EMAIL_DEFAULT_RECIPIENT", "").strip(),
        )

    enabled = _get_bool(env, "WHATSAPP_ENABLED", False)
    gateway_url = env.get("WHATSAPP_GATEWAY_URL", "").strip()
    if enabled and not gateway_url:
        raise ValueError("WHATSAPP_GATEWAY_URL is required when WHATSAPP_ENABLED=true")

    return ChannelConfig(
        enabled=enabled,
        session_prefix=env.get("WHATSAPP_SESSION_PREFIX", "sinoe").strip() or "sinoe",
        gateway_url=gateway_url,
        gateway_api_key=env.get("WHATSAPP_GATEWAY_API_KEY", ""),
        session_dir=env.get("SESSION_DIR", constants.DEFAULT_SESSION_DIR),
        recipients=tuple(recipients),
        client_user=client_user,
        test_phone=env.get("WHATSAPP_TEST_PHONE", "").strip(),
        send_on_success=_get_bool(env, "WHATSAPP_SEND_ON_SUCCESS", True),
        send_on_error=_get_bool(env, "WHATSAPP_SEND_ON_ERROR", False),
        send_when_empty=_get_bool(env, "WHATSAPP_SEND_WHEN_EMPTY", False),
        log_incoming_messages=_get_bool(env, "WHATSAPP_LOG_INCOMING", False),
        log_message_status=_get_bool(env, "WHATSAPP_LOG_MESSAGE_STATUS", False),
    )
