"""
Core data models for the SINOE notification pipeline.

These models represent notifications as they flow through the pipeline:
scrape -> change detection -> record store -> delivery -> ledger
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sinoe_common.constants import DEFAULT_COUNTRY_CODE, DEFAULT_SOURCE

logger = logging.getLogger(__name__)


class NotificationStatus(str, Enum):
    """Portal status of a notification."""

    OPEN = "open"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: str | None) -> "NotificationStatus":
        """
        Parse a portal status label ("ABIERTA", "CERRADA", "open", ...).

        Unrecognized labels (the scraper emits "UNKNOWN" when the cell is
        unreadable) map to OPEN so the notification is still delivered.
        """
        label = (value or "").strip().lower()
        if label in ("closed", "cerrada", "cerrado"):
            return cls.CLOSED
        if label not in ("open", "abierta", "abierto", ""):
            logger.warning(f"Unknown notification status {value!r}, treating as open")
        return cls.OPEN


class ChangeResult(str, Enum):
    """Outcome of change detection for a single scraped notification."""

    NEW = "new"
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    FAILED = "failed"


class StatusFilter(str, Enum):
    """Which notifications are delivery candidates."""

    ALL = "all"
    OPEN = "open"
    CLOSED = "closed"

    def accepts(self, status: NotificationStatus) -> bool:
        if self is StatusFilter.ALL:
            return True
        return status.value == self.value


# Scraper payload keys, English first then the portal's own labels
_SCRAPED_KEYS = {
    "case_id": ("case_id", "caseId", "numeroExpediente"),
    "notification_id": ("notification_id", "notificationId", "numeroNotificacion"),
    "status": ("status", "estado"),
    "summary": ("summary", "sumilla"),
    "office": ("office", "oficinaJudicial"),
    "date": ("date", "fecha"),
    "number": ("number", "numero"),
}


def _pick(data: dict[str, Any], field_name: str) -> Any:
    for key in _SCRAPED_KEYS[field_name]:
        if key in data and data[key] is not None:
            return data[key]
    return None


@dataclass
class ScrapedNotification:
    """
    A notification row as produced by the scraper.

    Attributes:
        case_id: Case file number (partition key)
        notification_id: Notification number (sort key)
        status: Portal status
        summary: Short description of the notification
        office: Issuing judicial office
        date: Notification date as shown by the portal
        number: Row number on the portal listing, if any
    """

    case_id: str
    notification_id: str
    status: NotificationStatus = NotificationStatus.OPEN
    summary: str = ""
    office: str = ""
    date: str = ""
    number: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScrapedNotification":
        """Create from a scraper payload; raises ValueError without a natural key."""
        case_id = _pick(data, "case_id")
        notification_id = _pick(data, "notification_id")
        if not case_id or not notification_id:
            raise ValueError("Scraped notification is missing case_id or notification_id")

        number = _pick(data, "number")
        return cls(
            case_id=str(case_id).strip(),
            notification_id=str(notification_id).strip(),
            status=NotificationStatus.parse(_pick(data, "status")),
            summary=str(_pick(data, "summary") or "").strip(),
            office=str(_pick(data, "office") or "").strip(),
            date=str(_pick(data, "date") or "").strip(),
            number=str(number) if number is not None else None,
        )


@dataclass
class DeliveryAttempt:
    """Delivery state of one notification for one recipient."""

    recipient_id: str
    delivered: bool = False
    delivered_at: str | None = None
    processed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "delivered": self.delivered,
            "delivered_at": self.delivered_at,
            "processed": self.processed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeliveryAttempt":
        return cls(
            recipient_id=str(data["recipient_id"]),
            delivered=bool(data.get("delivered", False)),
            delivered_at=data.get("delivered_at"),
            processed=bool(data.get("processed", False)),
        )


@dataclass
class NotificationRecord:
    """
    Stored notification with its delivery ledger.

    Attributes:
        case_id: Case file number (partition key)
        notification_id: Notification number (sort key)
        status: Portal status
        summary: Short description
        office: Issuing judicial office
        date: Notification date as shown by the portal
        content_hash: Fingerprint over status, summary, office and date
        version: Optimistic-locking counter, starts at 0
        deliveries: Per-recipient delivery attempts, insertion ordered
        created_at: First sighting timestamp (ISO 8601)
        created_date: First sighting day (YYYY-MM-DD), used by the unsent query
        changed_date: Day of the last content change (YYYY-MM-DD); an updated
            notification is pending again on that day
        extracted_at: Timestamp of the scrape that produced this content
        last_updated_at: Timestamp of the last mutating write
        source: Portal label
        number: Row number on the portal listing, if any
    """

    case_id: str
    notification_id: str
    status: NotificationStatus = NotificationStatus.OPEN
    summary: str = ""
    office: str = ""
    date: str = ""
    content_hash: str = ""
    version: int = 0
    deliveries: list[DeliveryAttempt] = field(default_factory=list)
    created_at: str | None = None
    created_date: str | None = None
    changed_date: str | None = None
    extracted_at: str | None = None
    last_updated_at: str | None = None
    source: str = DEFAULT_SOURCE
    number: str | None = None

    @property
    def key(self) -> dict[str, str]:
        """DynamoDB primary key."""
        return {"case_id": self.case_id, "notification_id": self.notification_id}

    def is_delivered_to(self, recipient_id: str) -> bool:
        """True if the ledger holds a delivered attempt for the recipient."""
        return any(a.recipient_id == recipient_id and a.delivered for a in self.deliveries)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for DynamoDB storage."""
        data = {
            "case_id": self.case_id,
            "notification_id": self.notification_id,
            "status": self.status.value,
            "summary": self.summary,
            "office": self.office,
            "date": self.date,
            "content_hash": self.content_hash,
            "version": self.version,
            "deliveries": [a.to_dict() for a in self.deliveries],
            "source": self.source,
        }

        # Add optional fields only if they have values
        if self.created_at:
            data["created_at"] = self.created_at
        if self.created_date:
            data["created_date"] = self.created_date
        if self.changed_date:
            data["changed_date"] = self.changed_date
        if self.extracted_at:
            data["extracted_at"] = self.extracted_at
        if self.last_updated_at:
            data["last_updated_at"] = self.last_updated_at
        if self.number:
            data["number"] = self.number

        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationRecord":
        """Create NotificationRecord from DynamoDB item."""
        version = data.get("version", 0)
        if isinstance(version, Decimal):
            version = int(version)

        return cls(
            case_id=data["case_id"],
            notification_id=data["notification_id"],
            status=NotificationStatus.parse(data.get("status")),
            summary=data.get("summary", ""),
            office=data.get("office", ""),
            date=data.get("date", ""),
            content_hash=data.get("content_hash", ""),
            version=version,
            deliveries=[DeliveryAttempt.from_dict(d) for d in data.get("deliveries") or []],
            created_at=data.get("created_at"),
            created_date=data.get("created_date"),
            changed_date=data.get("changed_date"),
            extracted_at=data.get("extracted_at"),
            last_updated_at=data.get("last_updated_at"),
            source=data.get("source", DEFAULT_SOURCE),
            number=data.get("number"),
        )


_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str) -> str:
    """Digits only, with the Peruvian country code prefixed to 9-digit local numbers."""
    digits = _NON_DIGITS.sub("", phone)
    if len(digits) == 9 and not digits.startswith(DEFAULT_COUNTRY_CODE):
        digits = DEFAULT_COUNTRY_CODE + digits
    return digits


@dataclass
class Recipient:
    """
    A subscriber of notification messages.

    Attributes:
        name: Display name
        phone: Phone number (primary channel address)
        email: Email address (fallback channel address)
        receive_notifications: False to keep the entry without delivering
    """

    name: str
    phone: str = ""
    email: str = ""
    receive_notifications: bool = True

    @property
    def recipient_id(self) -> str:
        """Stable ledger identifier: the normalized phone number."""
        return normalize_phone(self.phone)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipient":
        receive = data.get("receive_notifications", data.get("receiveNotifications", True))
        return cls(
            name=str(data.get("name", "")),
            phone=str(data.get("phone", "")),
            email=str(data.get("email", "")),
            receive_notifications=receive is not False,
        )


@dataclass
class DetectionSummary:
    """Counters produced by a change detection pass."""

    new: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def saved(self) -> int:
        return self.new + self.updated

    @property
    def total(self) -> int:
        return self.new + self.updated + self.unchanged + self.failed

    def record(self, result: ChangeResult, error: str | None = None) -> None:
        if result is ChangeResult.NEW:
            self.new += 1
        elif result is ChangeResult.UPDATED:
            self.updated += 1
        elif result is ChangeResult.UNCHANGED:
            self.unchanged += 1
        else:
            self.failed += 1
            if error:
                self.errors.append(error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "new": self.new,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "errors": self.errors[:10],
        }


class DeliveryChannel(str, Enum):
    """Channel that carried a recipient's message."""

    PRIMARY = "primary"
    FALLBACK = "fallback"
    NONE = "none"


@dataclass
class RecipientOutcome:
    """Result of one recipient's delivery within a cycle."""

    recipient_id: str
    pending: int = 0
    included: int = 0
    marked: int = 0
    channel: DeliveryChannel = DeliveryChannel.NONE
    courtesy_sent: bool = False
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.channel is not DeliveryChannel.NONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "pending": self.pending,
            "included": self.included,
            "marked": self.marked,
            "channel": self.channel.value,
            "courtesy_sent": self.courtesy_sent,
            "error": self.error,
        }


@dataclass
class CycleReport:
    """Aggregate result of one delivery cycle."""

    as_of_date: str
    outcomes: list[RecipientOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def primary_sends(self) -> int:
        return sum(1 for o in self.outcomes if o.channel is DeliveryChannel.PRIMARY)

    @property
    def fallback_sends(self) -> int:
        return sum(1 for o in self.outcomes if o.channel is DeliveryChannel.FALLBACK)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.included and not o.delivered)

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_of_date": self.as_of_date,
            "recipients": len(self.outcomes),
            "primary_sends": self.primary_sends,
            "fallback_sends": self.fallback_sends,
            "failed": self.failed,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
