"""
Change detection for scraped notifications.

Uses a content fingerprint over the mutable fields to decide whether a
scraped notification is new, unchanged or updated. Updated notifications
get an empty delivery ledger so every recipient receives them again.
"""

import hashlib
import logging
import re
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from sinoe_common.constants import STORE_BATCH_SIZE, TRACKED_FIELDS
from sinoe_common.exceptions import StoreUnavailableError
from sinoe_common.models import (
    ChangeResult,
    DetectionSummary,
    NotificationRecord,
    ScrapedNotification,
)
from sinoe_common.store import NotificationStore

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def _normalize(value: Any) -> str:
    text = value.value if hasattr(value, "value") else str(value or "")
    return _WHITESPACE.sub(" ", text).strip()


def compute_content_hash(status: Any, summary: str, office: str, date: str) -> str:
    """
    Compute SHA-256 fingerprint of a notification's mutable fields.

    Args:
        status: Portal status (enum or label)
        summary: Notification summary
        office: Judicial office
        date: Notification date

    Returns:
        Hex-encoded SHA-256 hash
    """
    content = "|".join(_normalize(v) for v in (status, summary, office, date))
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def fingerprint(notification: ScrapedNotification | NotificationRecord) -> str:
    """Content hash of a scraped notification or stored record."""
    return compute_content_hash(
        notification.status, notification.summary, notification.office, notification.date
    )


def has_changed(incoming: ScrapedNotification, existing: NotificationRecord) -> bool:
    """
    Decide whether stored content differs from a fresh scrape.

    Any tracked field difference counts as a change even when the stored
    hash matches, so an ambiguous comparison results in redelivery.
    """
    for name in TRACKED_FIELDS:
        if _normalize(getattr(incoming, name)) != _normalize(getattr(existing, name)):
            return True

    if existing.content_hash and existing.content_hash != fingerprint(incoming):
        return True

    return False


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ChangeDetector:
    """Upserts scraped notifications into the record store."""

    def __init__(
        self,
        store: NotificationStore,
        clock: Callable[[], datetime] = _utc_now,
        batch_size: int = STORE_BATCH_SIZE,
    ):
        self.store = store
        self.clock = clock
        self.batch_size = batch_size

    def detect(self, notification: ScrapedNotification) -> ChangeResult:
        """
        Classify and persist one notification.

        A conditional write that loses a race is re-evaluated once against
        the freshly stored record.

        Args:
            notification: Scraped notification

        Returns:
            ChangeResult.NEW, UNCHANGED or UPDATED

        Raises:
            StoreUnavailableError: If the store rejects the read or write
        """
        for _attempt in range(2):
            existing = self.store.get_record(notification.case_id, notification.notification_id)
            now = self.clock()

            if existing is None:
                if self.store.put_conditional(self._new_record(notification, now), None):
                    logger.debug(f"New notification {notification.case_id}/{notification.notification_id}")
                    return ChangeResult.NEW
                continue

            if not has_changed(notification, existing):
                return ChangeResult.UNCHANGED

            updated = self._updated_record(notification, existing, now)
            if self.store.put_conditional(updated, existing.version):
                logger.info(
                    f"Content changed for {notification.case_id}/{notification.notification_id}, "
                    f"ledger reset (version {existing.version} -> {updated.version})"
                )
                return ChangeResult.UPDATED

        raise StoreUnavailableError(
            f"Concurrent writes kept rejecting {notification.case_id}/{notification.notification_id}"
        )

    def process(self, payloads: Iterable[dict[str, Any] | ScrapedNotification]) -> DetectionSummary:
        """
        Run change detection over a scraper batch.

        Per-record failures are counted and the batch continues.

        Args:
            payloads: Scraped notifications or raw scraper dicts

        Returns:
            DetectionSummary with new/updated/unchanged/failed counts
        """
        items = list(payloads)
        summary = DetectionSummary()
        logger.info(f"Processing {len(items)} scraped notifications in batches of {self.batch_size}")

        for start in range(0, len(items), self.batch_size):
            batch = items[start : start + self.batch_size]
            for payload in batch:
                try:
                    notification = (
                        payload
                        if isinstance(payload, ScrapedNotification)
                        else ScrapedNotification.from_dict(payload)
                    )
                except (ValueError, TypeError) as e:
                    logger.warning(f"Skipping malformed notification: {e}")
                    summary.record(ChangeResult.FAILED, str(e))
                    continue

                try:
                    summary.record(self.detect(notification))
                except StoreUnavailableError as e:
                    logger.error(
                        f"Failed to save {notification.case_id}/{notification.notification_id}: {e}"
                    )
                    summary.record(
                        ChangeResult.FAILED,
                        f"{notification.case_id}/{notification.notification_id}: {e}",
                    )

            logger.debug(f"Batch {start // self.batch_size + 1}: {len(batch)} notifications processed")

        logger.info(
            f"Change detection complete: {summary.new} new, {summary.updated} updated, "
            f"{summary.unchanged} unchanged, {summary.failed} failed"
        )
        return summary

    def _new_record(self, notification: ScrapedNotification, now: datetime) -> NotificationRecord:
        timestamp = now.isoformat()
        return NotificationRecord(
            case_id=notification.case_id,
            notification_id=notification.notification_id,
            status=notification.status,
            summary=notification.summary,
            office=notification.office,
            date=notification.date,
            content_hash=fingerprint(notification),
            version=0,
            deliveries=[],
            created_at=timestamp,
            created_date=now.date().isoformat(),
            changed_date=now.date().isoformat(),
            extracted_at=timestamp,
            last_updated_at=timestamp,
            number=notification.number,
        )

    def _updated_record(
        self, notification: ScrapedNotification, existing: NotificationRecord, now: datetime
    ) -> NotificationRecord:
        timestamp = now.isoformat()
        return NotificationRecord(
            case_id=existing.case_id,
            notification_id=existing.notification_id,
            status=notification.status,
            summary=notification.summary,
            office=notification.office,
            date=notification.date,
            content_hash=fingerprint(notification),
            version=existing.version + 1,
            deliveries=[],
            created_at=existing.created_at or timestamp,
            created_date=existing.created_date or now.date().isoformat(),
            changed_date=now.date().isoformat(),
            extracted_at=timestamp,
            last_updated_at=timestamp,
            source=existing.source,
            number=notification.number or existing.number,
        )
