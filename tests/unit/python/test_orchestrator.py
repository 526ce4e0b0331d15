"""Unit tests for the delivery orchestrator."""

from unittest.mock import MagicMock, patch

import pytest

from sinoe_common.change_detector import ChangeDetector
from sinoe_common.channels.session import ChannelSessionManager
from sinoe_common.config import DeliveryConfig
from sinoe_common.exceptions import StoreUnavailableError
from sinoe_common.ledger import DeliveryLedger
from sinoe_common.messages import EMPTY_LINE
from sinoe_common.models import DeliveryChannel, Recipient, StatusFilter
from sinoe_common.orchestrator import ERROR_SUBJECT, DeliveryOrchestrator
from tests.fixtures.notification_samples import (
    RECIPIENT_PHONES,
    SAMPLE_BATCH,
    SAMPLE_NOTIFICATION,
    TODAY,
    FakeClientFactory,
    fixed_clock,
)

FAST = DeliveryConfig(channel_ready_timeout=0.05, ack_timeout=0)

RECIPIENTS = [
    Recipient(name="Titular", phone=RECIPIENT_PHONES[0], email="titular@example.com"),
    Recipient(name="Socio", phone=RECIPIENT_PHONES[1]),
]


@pytest.fixture
def ledger(store):
    return DeliveryLedger(store, clock=fixed_clock)


@pytest.fixture
def fallback():
    channel = MagicMock()
    channel.enabled = True
    channel.send.return_value = True
    return channel


@pytest.fixture
def make_session(tmp_path):
    sessions = []

    def _make(**client_kwargs):
        factory = FakeClientFactory(**client_kwargs)
        session = ChannelSessionManager(
            factory, session_name="sinoe-main", session_dir=str(tmp_path), recovery_delay=0
        )
        session.factory = factory
        session.start()
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        session.shutdown()


def _detect(store, payloads):
    return ChangeDetector(store, clock=fixed_clock).process(payloads)


def _orchestrator(ledger, session=None, fallback=None, delivery=FAST, **kwargs):
    return DeliveryOrchestrator(
        ledger,
        RECIPIENTS,
        session=session,
        fallback=fallback,
        delivery=delivery,
        fallback_address="ops@example.com",
        clock=fixed_clock,
        **kwargs,
    )


class TestPrimaryDelivery:
    def test_one_message_per_recipient_then_nothing(self, store, ledger, make_session, fallback):
        """First cycle delivers to both recipients; the second sends nothing and leaves the record alone."""
        _detect(store, [SAMPLE_NOTIFICATION])
        session = make_session()
        orchestrator = _orchestrator(ledger, session, fallback)

        report = orchestrator.run_cycle(TODAY)

        assert report.primary_sends == 2
        assert [address for address, _ in session.factory.sent] == [
            "51900000001@c.us",
            "51900000002@c.us",
        ]
        assert "43443-2025" in session.factory.sent[0][1]
        record = store.get_record("00187-2025", "43443-2025")
        assert record.version == 2
        assert {a.recipient_id for a in record.deliveries} == set(RECIPIENT_PHONES)

        second = orchestrator.run_cycle(TODAY)

        assert len(session.factory.sent) == 2
        assert [o.pending for o in second.outcomes] == [0, 0]
        assert store.get_record("00187-2025", "43443-2025").version == 2
        fallback.send.assert_not_called()

    def test_defaults_to_today(self, store, ledger, make_session):
        _detect(store, [SAMPLE_NOTIFICATION])

        report = _orchestrator(ledger, make_session()).run_cycle()

        assert report.as_of_date == TODAY
        assert report.primary_sends == 2

    def test_overflow_stays_pending(self, store, ledger, make_session):
        _detect(store, SAMPLE_BATCH)
        delivery = DeliveryConfig(channel_ready_timeout=0.05, ack_timeout=0, max_items_per_message=2)

        report = _orchestrator(ledger, make_session(), delivery=delivery).run_cycle(TODAY)

        assert [o.marked for o in report.outcomes] == [2, 2]
        remaining = ledger.unsent_for(RECIPIENT_PHONES[0], TODAY)
        assert [r.notification_id for r in remaining] == ["39876-2025"]

    def test_status_filter(self, store, ledger, make_session):
        _detect(store, SAMPLE_BATCH)
        delivery = DeliveryConfig(channel_ready_timeout=0.05, ack_timeout=0, status_filter=StatusFilter.OPEN)

        report = _orchestrator(ledger, make_session(), delivery=delivery).run_cycle(TODAY)

        assert [o.included for o in report.outcomes] == [2, 2]

    def test_courtesy_message_when_empty(self, store, ledger, make_session):
        session = make_session()

        report = _orchestrator(ledger, session, send_when_empty=True).run_cycle(TODAY)

        assert all(o.courtesy_sent for o in report.outcomes)
        assert EMPTY_LINE in session.factory.sent[0][1]

    def test_nothing_sent_when_empty_by_default(self, store, ledger, make_session):
        session = make_session()

        report = _orchestrator(ledger, session).run_cycle(TODAY)

        assert session.factory.sent == []
        assert report.failed == 0


class TestFallback:
    def test_failed_primary_recovers_then_falls_back_once(self, store, ledger, make_session, fallback):
        _detect(store, [SAMPLE_NOTIFICATION])
        session = make_session(fail_send=True)

        report = _orchestrator(ledger, session, fallback).run_cycle(TODAY)

        assert report.fallback_sends == 2
        assert fallback.send.call_count == 2
        addresses = [c.args[0] for c in fallback.send.call_args_list]
        assert addresses == ["titular@example.com", "ops@example.com"]
        # one recovery per recipient
        assert len(session.factory.clients) == 3
        assert store.get_record("00187-2025", "43443-2025").version == 2

    def test_channel_disabled_goes_straight_to_fallback(self, store, ledger, fallback):
        _detect(store, [SAMPLE_NOTIFICATION])

        report = _orchestrator(ledger, None, fallback).run_cycle(TODAY)

        assert [o.channel for o in report.outcomes] == [DeliveryChannel.FALLBACK] * 2
        subject = fallback.send.call_args.args[1]
        assert subject.startswith("🏛️ SINOE - 1 Notificaciones")

    def test_every_channel_failing_leaves_notification_pending(self, store, ledger, make_session, fallback):
        _detect(store, [SAMPLE_NOTIFICATION])
        fallback.send.return_value = False

        report = _orchestrator(ledger, make_session(fail_send=True), fallback).run_cycle(TODAY)

        assert report.failed == 2
        assert all(o.error == "All channels failed" for o in report.outcomes)
        record = store.get_record("00187-2025", "43443-2025")
        assert record.version == 0
        assert record.deliveries == []

    def test_no_fallback_configured(self, store, ledger):
        _detect(store, [SAMPLE_NOTIFICATION])

        report = _orchestrator(ledger).run_cycle(TODAY)

        assert report.failed == 2


class TestCycleControl:
    def test_shutdown_stops_cycle(self, store, ledger, make_session):
        _detect(store, [SAMPLE_NOTIFICATION])
        session = make_session()
        session.request_shutdown()

        report = _orchestrator(ledger, session).run_cycle(TODAY)

        assert report.outcomes == []
        assert session.factory.sent == []

    def test_store_failure_is_per_recipient(self, make_session):
        ledger = MagicMock()
        ledger.unsent_for.side_effect = StoreUnavailableError("throttled")

        report = _orchestrator(ledger, make_session()).run_cycle(TODAY)

        assert [o.error for o in report.outcomes] == ["throttled", "throttled"]
        ledger.mark_delivered_with_retry.assert_not_called()

    def test_store_failure_while_marking_continues_with_next_recipient(self, store, ledger, fallback):
        _detect(store, [SAMPLE_NOTIFICATION])

        with patch.object(store, "get", side_effect=StoreUnavailableError("throttled")):
            report = _orchestrator(ledger, None, fallback).run_cycle(TODAY)

        assert len(report.outcomes) == 2
        assert fallback.send.call_count == 2
        assert [o.marked for o in report.outcomes] == [0, 0]
        assert all(o.error == "Ledger update failed: throttled" for o in report.outcomes)
        assert store.get_record("00187-2025", "43443-2025").deliveries == []


class TestErrorAndTestMessages:
    def test_error_notification_uses_email_first(self, ledger, make_session, fallback):
        session = make_session()

        assert _orchestrator(ledger, session, fallback).send_error_notification("boom", use_primary=True) is True

        assert fallback.send.call_args.args[:2] == ("ops@example.com", ERROR_SUBJECT)
        assert session.factory.sent == []

    def test_error_notification_primary_when_email_fails(self, ledger, make_session, fallback):
        fallback.send.return_value = False
        session = make_session()

        assert _orchestrator(ledger, session, fallback).send_error_notification("boom", use_primary=True) is True

        assert len(session.factory.sent) == 2
        assert "❌ Error: boom" in session.factory.sent[0][1]

    def test_error_notification_primary_disabled(self, ledger, make_session, fallback):
        fallback.send.return_value = False
        session = make_session()

        assert _orchestrator(ledger, session, fallback).send_error_notification("boom") is False
        assert session.factory.sent == []

    def test_test_message(self, ledger, make_session):
        session = make_session()
        orchestrator = _orchestrator(ledger, session)

        assert orchestrator.send_test_message("900000001") is True
        assert session.factory.sent[0][0] == "51900000001@c.us"
        assert "🧪 *Test Message*" in session.factory.sent[0][1]
        assert orchestrator.send_test_message("") is False
