"""
Run composition.

Builds every component of a notification run from configuration, owns the
channel session for the lifetime of the run and guarantees cleanup
(session persisted, connections closed) on every exit path.
"""

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from sinoe_common.change_detector import ChangeDetector
from sinoe_common.channels.base import ChannelClient, PairingArtifact
from sinoe_common.channels.email import EmailChannel
from sinoe_common.channels.gateway import GatewayClient
from sinoe_common.channels.session import ChannelSessionManager
from sinoe_common.config import NotifierConfig
from sinoe_common.exceptions import ChannelUnavailableError, StartupError, StoreUnavailableError
from sinoe_common.ledger import DeliveryLedger
from sinoe_common.logging_utils import log_summary
from sinoe_common.models import CycleReport, DetectionSummary
from sinoe_common.orchestrator import DeliveryOrchestrator
from sinoe_common.session_storage import SessionStorage
from sinoe_common.status import build_status
from sinoe_common.store import NotificationStore

logger = logging.getLogger(__name__)


class NotificationRun:
    """One scrape-to-delivery run."""

    def __init__(
        self,
        config: NotifierConfig,
        store: NotificationStore | None = None,
        client_factory: Callable[[], ChannelClient] | None = None,
        s3_client=None,
        ses_client=None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Wire the run's components.

        Args:
            config: Validated configuration
            store: Optional record store (defaults to the configured table)
            client_factory: Optional primary channel client factory
                (defaults to the HTTP gateway client)
            s3_client: Optional boto3 S3 client for session archives
            ses_client: Optional boto3 SES client for the fallback channel
            clock: Optional UTC time source
        """
        self.config = config
        self.clock = clock or (lambda: datetime.now(UTC))
        self.store = store or NotificationStore(config.table_name, region_name=config.region)
        self.detector = ChangeDetector(self.store, clock=self.clock)
        self.ledger = DeliveryLedger(self.store, config.delivery.ledger_max_attempts, clock=self.clock)

        self.storage = None
        if config.session_storage.enabled:
            self.storage = SessionStorage(
                config.session_storage.bucket, region_name=config.region, s3_client=s3_client
            )

        self.email = None
        if config.email.enabled:
            self.email = EmailChannel(
                config.email.sender,
                region_name=config.region,
                ses_client=ses_client,
                timezone=config.delivery.timezone,
            )

        self.session = None
        if config.channel.enabled:
            self.session = ChannelSessionManager(
                client_factory or self._gateway_client,
                session_name=config.channel.session_name,
                session_dir=config.channel.session_dir,
                storage=self.storage,
                pairing_handler=self._send_pairing_artifact,
                verify_interval=config.delivery.verify_interval,
                recovery_delay=config.delivery.recovery_delay,
                log_incoming_messages=config.channel.log_incoming_messages,
                log_message_status=config.channel.log_message_status,
            )

        self.orchestrator = DeliveryOrchestrator(
            self.ledger,
            config.channel.active_recipients,
            session=self.session,
            fallback=self.email,
            delivery=config.delivery,
            fallback_address=config.email.default_recipient,
            send_when_empty=config.channel.send_when_empty,
            clock=self.clock,
        )
        self._closed = False

    def _gateway_client(self) -> ChannelClient:
        return GatewayClient(self.config.channel.gateway_url, api_key=self.config.channel.gateway_api_key)

    def _send_pairing_artifact(self, artifact: PairingArtifact) -> bool:
        if self.email is None:
            logger.warning("Pairing artifact produced but the email channel is disabled")
            return False
        return self.email.send_pairing_artifact(artifact, self.config.channel.client_user)

    def initialize(self) -> None:
        """
        Check required subsystems.

        Raises:
            StartupError: If the record store cannot be reached
        """
        try:
            self.store.check_connection()
        except StoreUnavailableError as e:
            raise StartupError(f"Record store unavailable: {e}") from e

        if self.email is not None:
            self.email.initialize()
        if self.storage is not None and self.storage.initialize():
            self.storage.cleanup_old_sessions(self.config.session_storage.max_age_days)

    def start_channel(self) -> bool:
        """
        Start the primary channel and wait (bounded) for it to become ready.

        A channel that does not come up is not fatal; deliveries fall back
        to email.
        """
        if self.session is None:
            logger.info("Primary channel disabled")
            return False
        try:
            self.session.start()
        except ChannelUnavailableError as e:
            logger.error(f"Primary channel failed to start: {e}")
            return False

        ready = self.session.wait_until_ready(self.config.delivery.init_timeout)
        if not ready:
            logger.warning(
                f"Primary channel not ready after {self.config.delivery.init_timeout}s "
                f"({self.session.state.value})"
            )
        return ready

    def detect(self, payloads: Iterable[dict[str, Any]]) -> DetectionSummary:
        return self.detector.process(payloads)

    def deliver(self, as_of_date: str | None = None) -> CycleReport | None:
        if not self.config.channel.send_on_success:
            logger.info("Notification delivery disabled (WHATSAPP_SEND_ON_SUCCESS=false)")
            return None
        return self.orchestrator.run_cycle(as_of_date)

    def execute(
        self,
        payloads: Iterable[dict[str, Any]],
        as_of_date: str | None = None,
        send_test_message: bool = False,
    ) -> dict[str, Any]:
        """
        Run detection and delivery end to end.

        Unexpected errors trigger an error notification and are re-raised;
        cleanup always runs.

        Returns:
            Run result with detection counters and the delivery report
        """
        start = time.time()
        try:
            self.initialize()
            detection = self.detect(payloads)
            channel_ready = self.start_channel()

            test_sent = None
            if send_test_message:
                test_sent = self.orchestrator.send_test_message(self.config.channel.test_phone)

            report = self.deliver(as_of_date)
            logger.info(
                log_summary(
                    "notification_run",
                    success=True,
                    duration_ms=(time.time() - start) * 1000,
                    item_count=detection.total,
                    saved=detection.saved,
                    channel_ready=channel_ready,
                )
            )
            return {
                "detection": detection.to_dict(),
                "channel_ready": channel_ready,
                "delivery": report.to_dict() if report else None,
                "test_message_sent": test_sent,
            }
        except Exception as e:
            logger.error(f"Notification run failed: {e}", exc_info=True)
            self.notify_error(str(e))
            raise
        finally:
            self.shutdown()

    def notify_error(self, error: str) -> bool:
        return self.orchestrator.send_error_notification(
            error, use_primary=self.config.channel.send_on_error
        )

    def status(self) -> dict[str, Any]:
        return build_status(
            self.config,
            self.store,
            session=self.session,
            email=self.email,
            storage=self.storage,
            now=self.clock(),
        )

    def request_shutdown(self) -> None:
        """Cancel in-flight waits; cleanup follows on the main path."""
        if self.session is not None:
            self.session.request_shutdown()

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.session is not None:
            self.session.shutdown()
        logger.info("Notification run cleanup completed")


def install_signal_handlers(run: NotificationRun) -> bool:
    """
    Route SIGTERM and SIGINT to run.request_shutdown().

    Returns:
        False when not called from the main thread (handlers not installed)
    """
    if threading.current_thread() is not threading.main_thread():
        return False

    def _handle(signum, _frame):
        logger.warning(f"Received signal {signal.Signals(signum).name}, shutting down")
        run.request_shutdown()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)
    return True
