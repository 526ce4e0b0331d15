"""
Per-recipient delivery ledger.

Each notification record carries a list of delivery attempts, one per
recipient. Marking a delivery reads the current ledger and version,
upserts the recipient's attempt in memory and writes it back with a
conditional update on the version read. Losing the race raises
DeliveryConflictError; the caller re-reads or leaves it for the next cycle.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sinoe_common.constants import LEDGER_MAX_ATTEMPTS
from sinoe_common.exceptions import DeliveryConflictError
from sinoe_common.models import DeliveryAttempt, NotificationRecord, StatusFilter
from sinoe_common.store import NotificationStore

logger = logging.getLogger(__name__)

_LEDGER_ATTRIBUTES = ["deliveries", "version"]


def upsert_attempt(
    deliveries: list[DeliveryAttempt], recipient_id: str, delivered_at: str
) -> list[DeliveryAttempt]:
    """
    Return a new ledger with the recipient's attempt marked delivered.

    An existing attempt for the recipient is replaced in place; otherwise
    the attempt is appended, preserving insertion order.
    """
    attempt = DeliveryAttempt(
        recipient_id=recipient_id,
        delivered=True,
        delivered_at=delivered_at,
        processed=True,
    )
    result = []
    replaced = False
    for existing in deliveries:
        if existing.recipient_id == recipient_id:
            if not replaced:
                result.append(attempt)
                replaced = True
            continue
        result.append(existing)
    if not replaced:
        result.append(attempt)
    return result


class DeliveryLedger:
    """Optimistic-concurrency ledger over the notification store."""

    def __init__(
        self,
        store: NotificationStore,
        max_attempts: int = LEDGER_MAX_ATTEMPTS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.clock = clock or (lambda: datetime.now(UTC))

    def read_ledger(self, case_id: str, notification_id: str) -> tuple[list[DeliveryAttempt], int] | None:
        """
        Projection read of a record's deliveries and version.

        Returns:
            (deliveries, version), or None if the record does not exist
        """
        item = self.store.get(case_id, notification_id, attributes=_LEDGER_ATTRIBUTES)
        if item is None:
            return None
        deliveries = [DeliveryAttempt.from_dict(d) for d in item.get("deliveries") or []]
        return deliveries, int(item.get("version", 0))

    def write_ledger(
        self,
        case_id: str,
        notification_id: str,
        deliveries: list[DeliveryAttempt],
        expected_version: int,
    ) -> int:
        """
        Conditionally replace the ledger.

        Returns:
            New version

        Raises:
            DeliveryConflictError: If the stored version moved on
        """
        return self.store.update_deliveries(
            case_id,
            notification_id,
            [d.to_dict() for d in deliveries],
            expected_version,
            self.clock().isoformat(),
        )

    def mark_delivered(self, case_id: str, notification_id: str, recipient_id: str) -> bool:
        """
        Record a successful delivery to one recipient.

        Args:
            case_id: Case file number
            notification_id: Notification number
            recipient_id: Recipient identifier

        Returns:
            True if the ledger was written, False if the record does not exist

        Raises:
            DeliveryConflictError: If a concurrent writer won the race
        """
        current = self.read_ledger(case_id, notification_id)
        if current is None:
            logger.warning(f"Cannot mark {case_id}/{notification_id}: record not found")
            return False

        deliveries, version = current
        updated = upsert_attempt(deliveries, recipient_id, self.clock().isoformat())
        new_version = self.write_ledger(case_id, notification_id, updated, version)
        logger.debug(f"Marked {case_id}/{notification_id} delivered (version {version} -> {new_version})")
        return True

    def mark_delivered_with_retry(self, case_id: str, notification_id: str, recipient_id: str) -> bool:
        """
        mark_delivered with a bounded number of re-read and retry rounds.

        Returns:
            True if marked; False if the record is missing or every attempt
            conflicted (the recipient stays pending for the next cycle)
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.mark_delivered(case_id, notification_id, recipient_id)
            except DeliveryConflictError as e:
                logger.info(f"Ledger conflict (attempt {attempt}/{self.max_attempts}): {e}")

        logger.warning(
            f"Giving up marking {case_id}/{notification_id} after {self.max_attempts} conflicts; "
            f"deferred to next cycle"
        )
        return False

    def unsent_for(
        self,
        recipient_id: str,
        as_of_date: str,
        status_filter: StatusFilter = StatusFilter.ALL,
    ) -> list[NotificationRecord]:
        """
        Notifications pending for a recipient on a given day.

        Always recomputed from the store so a crash mid-send leaves the
        unmarked notifications pending.

        Args:
            recipient_id: Recipient identifier
            as_of_date: Day bucket (YYYY-MM-DD)
            status_filter: Optional status policy

        Returns:
            Records with no delivered attempt for the recipient, ordered by
            case and notification number
        """
        records = self.store.scan_pending_on(as_of_date)
        pending = [
            r
            for r in records
            if not r.is_delivered_to(recipient_id) and status_filter.accepts(r.status)
        ]
        pending.sort(key=lambda r: (r.case_id, r.notification_id))
        return pending
