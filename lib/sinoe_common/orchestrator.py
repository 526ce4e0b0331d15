"""
Delivery orchestrator.

One cycle walks the recipients sequentially: query what is still unsent
for the recipient, send one batched message over the primary channel
(one recovery and retry on failure, then the email fallback) and mark
the itemized notifications delivered only after a channel accepted the
message. Anything not marked stays pending for the next cycle.
"""

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from sinoe_common.channels.email import EmailChannel
from sinoe_common.channels.session import ChannelSessionManager
from sinoe_common.config import DeliveryConfig
from sinoe_common.exceptions import ChannelUnavailableError, StoreUnavailableError
from sinoe_common.ledger import DeliveryLedger
from sinoe_common.logging_utils import log_summary, mask_phone
from sinoe_common.messages import (
    BatchMessage,
    build_batch_message,
    build_courtesy_message,
    build_error_html,
    build_error_message,
    build_test_message,
    format_chat_id,
)
from sinoe_common.models import (
    CycleReport,
    DeliveryChannel,
    Recipient,
    RecipientOutcome,
)

logger = logging.getLogger(__name__)

ERROR_SUBJECT = "🚨 SINOE - Error de Sistema"


class DeliveryOrchestrator:
    """Delivers pending notifications to every recipient, exactly once per recipient."""

    def __init__(
        self,
        ledger: DeliveryLedger,
        recipients: list[Recipient],
        session: ChannelSessionManager | None = None,
        fallback: EmailChannel | None = None,
        delivery: DeliveryConfig | None = None,
        fallback_address: str = "",
        send_when_empty: bool = False,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            ledger: Delivery ledger over the record store
            recipients: Active recipients, processed in order
            session: Primary channel session (None when the channel is disabled)
            fallback: Email fallback channel (None when disabled)
            delivery: Delivery policy and timeouts
            fallback_address: Email used for recipients without their own address
            send_when_empty: Send a courtesy message when nothing is pending
            clock: Time source (UTC)
        """
        self.ledger = ledger
        self.recipients = recipients
        self.session = session
        self.fallback = fallback
        self.delivery = delivery or DeliveryConfig()
        self.fallback_address = fallback_address
        self.send_when_empty = send_when_empty
        self.clock = clock or (lambda: datetime.now(UTC))

    def run_cycle(self, as_of_date: str | None = None) -> CycleReport:
        """
        Run one delivery cycle.

        Args:
            as_of_date: Day bucket to deliver (YYYY-MM-DD); defaults to today (UTC)

        Returns:
            CycleReport with one outcome per recipient
        """
        start = time.time()
        day = as_of_date or self.clock().date().isoformat()
        report = CycleReport(as_of_date=day)
        logger.info(f"Starting delivery cycle for {day}: {len(self.recipients)} recipients")

        for recipient in self.recipients:
            if self.session is not None and self.session.shutdown_requested:
                logger.warning("Shutdown requested, stopping delivery cycle")
                break
            report.outcomes.append(self.deliver_to(recipient, day))

        report.completed_at = datetime.now(UTC)
        logger.info(
            log_summary(
                "delivery_cycle",
                success=report.failed == 0,
                duration_ms=(time.time() - start) * 1000,
                item_count=sum(o.marked for o in report.outcomes),
                recipients=len(report.outcomes),
                primary_sends=report.primary_sends,
                fallback_sends=report.fallback_sends,
                failed=report.failed,
            )
        )
        return report

    def deliver_to(self, recipient: Recipient, as_of_date: str) -> RecipientOutcome:
        """
        Deliver one recipient's pending notifications.

        Returns:
            RecipientOutcome (channel NONE and no marks when every channel failed)
        """
        outcome = RecipientOutcome(recipient_id=recipient.recipient_id)

        try:
            pending = self.ledger.unsent_for(
                recipient.recipient_id, as_of_date, self.delivery.status_filter
            )
        except StoreUnavailableError as e:
            logger.error(f"Cannot query pending notifications for {mask_phone(recipient.phone)}: {e}")
            outcome.error = str(e)
            return outcome

        outcome.pending = len(pending)
        if not pending:
            logger.info(f"Nothing pending for {mask_phone(recipient.phone)}")
            if self.send_when_empty:
                outcome.courtesy_sent = self._send_courtesy(recipient)
            return outcome

        message = build_batch_message(
            pending,
            max_items=self.delivery.max_items_per_message,
            now=self.clock(),
            timezone=self.delivery.timezone,
        )
        outcome.included = len(message.included)
        if message.overflow:
            logger.info(f"{message.overflow} notifications exceed the message cap; left for the next cycle")

        outcome.channel = self._deliver(recipient, message)
        if outcome.channel is DeliveryChannel.NONE:
            outcome.error = "All channels failed"
            logger.error(
                f"Delivery to {mask_phone(recipient.phone)} failed on every channel; "
                f"{outcome.included} notifications stay pending"
            )
            return outcome

        for record in message.included:
            try:
                marked = self.ledger.mark_delivered_with_retry(
                    record.case_id, record.notification_id, recipient.recipient_id
                )
            except StoreUnavailableError as e:
                logger.error(
                    f"Cannot mark {record.case_id}/{record.notification_id} delivered to "
                    f"{mask_phone(recipient.phone)}; left pending: {e}"
                )
                outcome.error = f"Ledger update failed: {e}"
                continue
            if marked:
                outcome.marked += 1

        logger.info(
            f"Delivered {outcome.included} notifications to {mask_phone(recipient.phone)} "
            f"via {outcome.channel.value} ({outcome.marked} marked)"
        )
        return outcome

    def _deliver(self, recipient: Recipient, message: BatchMessage) -> DeliveryChannel:
        if self.session is not None:
            address = format_chat_id(recipient.phone)
            if self._send_primary(address, message.text):
                return DeliveryChannel.PRIMARY

            if not self.session.shutdown_requested:
                logger.warning(f"Primary send to {mask_phone(address)} failed, recovering channel and retrying")
                if self.session.recover() and self._send_primary(address, message.text):
                    return DeliveryChannel.PRIMARY

        if self._send_fallback(recipient, message.subject, message.text, message.html):
            return DeliveryChannel.FALLBACK
        return DeliveryChannel.NONE

    def _send_primary(self, address: str, text: str) -> bool:
        """Send over the session, waiting (bounded) for readiness and for the ack."""
        if not self.session.wait_until_ready(self.delivery.channel_ready_timeout):
            logger.warning(
                f"Channel not ready after {self.delivery.channel_ready_timeout}s ({self.session.state.value})"
            )
            return False

        try:
            message_id = self.session.send(address, text)
        except ChannelUnavailableError as e:
            logger.warning(f"Primary channel send failed: {e}")
            return False

        if not self.session.wait_for_ack(message_id, self.delivery.ack_timeout):
            logger.info(f"No delivery ack for {message_id} within {self.delivery.ack_timeout}s")
        return True

    def _send_fallback(self, recipient: Recipient, subject: str, body: str, html: str | None = None) -> bool:
        if self.fallback is None or not self.fallback.enabled:
            logger.warning("Fallback channel not available")
            return False

        address = recipient.email or self.fallback_address
        if not address:
            logger.error(f"No fallback address for recipient {recipient.name}")
            return False
        return self.fallback.send(address, subject, body, html)

    def _send_courtesy(self, recipient: Recipient) -> bool:
        if self.session is None or not self.session.wait_until_ready(self.delivery.channel_ready_timeout):
            return False
        try:
            self.session.send(
                format_chat_id(recipient.phone),
                build_courtesy_message(self.clock(), self.delivery.timezone),
            )
        except ChannelUnavailableError as e:
            logger.warning(f"Courtesy message failed: {e}")
            return False
        return True

    def send_error_notification(self, error: str, use_primary: bool = False) -> bool:
        """
        Report a fatal run error, fallback channel first.

        Args:
            error: Error description
            use_primary: Also try the primary channel when email fails

        Returns:
            True if any channel accepted the notification
        """
        now = self.clock()
        text = build_error_message(error, now, self.delivery.timezone)

        if self.fallback is not None and self.fallback.enabled and self.fallback_address:
            html = build_error_html(error, now, self.delivery.timezone)
            if self.fallback.send(self.fallback_address, ERROR_SUBJECT, text, html):
                logger.info("Error notification sent via email")
                return True
            logger.warning("Email error notification failed")

        if use_primary and self.session is not None and self.session.is_ready:
            sent = 0
            for recipient in self.recipients:
                try:
                    self.session.send(format_chat_id(recipient.phone), text)
                    sent += 1
                except ChannelUnavailableError as e:
                    logger.warning(f"Error notification to {mask_phone(recipient.phone)} failed: {e}")
            if sent:
                logger.info(f"Error notification sent via primary channel to {sent} recipients")
                return True

        logger.error("Failed to send error notification via any channel")
        return False

    def send_test_message(self, phone: str) -> bool:
        """Send a test message over the primary channel."""
        if not phone:
            logger.error("No test phone configured")
            return False
        if self.session is None or not self.session.wait_until_ready(self.delivery.channel_ready_timeout):
            logger.error("Primary channel not ready for the test message")
            return False
        try:
            self.session.send(format_chat_id(phone), build_test_message(True, self.clock(), self.delivery.timezone))
        except ChannelUnavailableError as e:
            logger.error(f"Test message failed: {e}")
            return False
        return True
