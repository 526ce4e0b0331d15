"""Unit tests for notification data models."""

from decimal import Decimal

import pytest

from sinoe_common.messages import format_chat_id
from sinoe_common.models import (
    ChangeResult,
    CycleReport,
    DeliveryAttempt,
    DeliveryChannel,
    DetectionSummary,
    NotificationRecord,
    NotificationStatus,
    Recipient,
    RecipientOutcome,
    ScrapedNotification,
    StatusFilter,
)
from tests.fixtures.notification_samples import SAMPLE_NOTIFICATION, SAMPLE_PORTAL_ROW


class TestNotificationStatus:
    @pytest.mark.parametrize("label", ["ABIERTA", "open", " abierto ", None])
    def test_open_labels(self, label):
        assert NotificationStatus.parse(label) is NotificationStatus.OPEN

    @pytest.mark.parametrize("label", ["CERRADA", "closed", "Cerrado"])
    def test_closed_labels(self, label):
        assert NotificationStatus.parse(label) is NotificationStatus.CLOSED

    @pytest.mark.parametrize("label", ["UNKNOWN", "ARCHIVADA"])
    def test_unknown_label_treated_as_open(self, label, caplog):
        assert NotificationStatus.parse(label) is NotificationStatus.OPEN
        assert "Unknown notification status" in caplog.text


class TestStatusFilter:
    def test_all_accepts_everything(self):
        assert StatusFilter.ALL.accepts(NotificationStatus.OPEN)
        assert StatusFilter.ALL.accepts(NotificationStatus.CLOSED)

    def test_open_only(self):
        assert StatusFilter.OPEN.accepts(NotificationStatus.OPEN)
        assert not StatusFilter.OPEN.accepts(NotificationStatus.CLOSED)


class TestScrapedNotification:
    def test_from_english_keys(self):
        notification = ScrapedNotification.from_dict(SAMPLE_NOTIFICATION)

        assert notification.case_id == "00187-2025"
        assert notification.notification_id == "43443-2025"
        assert notification.status is NotificationStatus.OPEN
        assert notification.number is None

    def test_from_portal_labels(self):
        notification = ScrapedNotification.from_dict(SAMPLE_PORTAL_ROW)

        assert notification == ScrapedNotification.from_dict(SAMPLE_NOTIFICATION)

    def test_missing_natural_key(self):
        with pytest.raises(ValueError, match="missing case_id or notification_id"):
            ScrapedNotification.from_dict({"case_id": "00187-2025"})

    def test_number_is_stringified(self):
        notification = ScrapedNotification.from_dict({**SAMPLE_NOTIFICATION, "number": 7})
        assert notification.number == "7"


class TestNotificationRecord:
    def test_round_trip_from_dynamodb_item(self):
        item = {
            "case_id": "00187-2025",
            "notification_id": "43443-2025",
            "status": "closed",
            "summary": "RESOLUCION",
            "office": "JUZGADO",
            "date": "15/01/2025",
            "content_hash": "abc",
            "version": Decimal("3"),
            "deliveries": [
                {
                    "recipient_id": "51900000001",
                    "delivered": True,
                    "delivered_at": "2025-01-15T10:00:00+00:00",
                    "processed": True,
                }
            ],
            "created_date": "2025-01-15",
        }

        record = NotificationRecord.from_dict(item)

        assert record.version == 3
        assert isinstance(record.version, int)
        assert record.status is NotificationStatus.CLOSED
        assert record.is_delivered_to("51900000001")
        assert not record.is_delivered_to("51900000002")
        assert record.to_dict()["deliveries"] == item["deliveries"]

    def test_optional_fields_omitted(self):
        data = NotificationRecord(case_id="c", notification_id="n").to_dict()

        assert "created_at" not in data
        assert "changed_date" not in data
        assert "number" not in data
        assert data["version"] == 0
        assert data["deliveries"] == []
        assert data["source"] == "SINOE"

    def test_key(self):
        record = NotificationRecord(case_id="00187-2025", notification_id="43443-2025")
        assert record.key == {"case_id": "00187-2025", "notification_id": "43443-2025"}

    def test_undelivered_attempt_does_not_count(self):
        record = NotificationRecord(
            case_id="c", notification_id="n", deliveries=[DeliveryAttempt(recipient_id="51900000001")]
        )
        assert not record.is_delivered_to("51900000001")


class TestRecipient:
    def test_recipient_id_is_digits(self):
        assert Recipient(name="x", phone="+51 900-000-001").recipient_id == "51900000001"

    def test_recipient_id_matches_chat_address(self):
        local = Recipient(name="x", phone="900 000 001")
        assert local.recipient_id == Recipient(name="y", phone="51900000001").recipient_id
        assert format_chat_id(local.phone) == local.recipient_id + "@c.us"

    def test_from_dict_receive_flag(self):
        inactive = Recipient.from_dict({"name": "a", "phone": "1", "receiveNotifications": False})
        assert inactive.receive_notifications is False
        assert Recipient.from_dict({"name": "a", "phone": "1"}).receive_notifications is True


class TestSummaries:
    def test_detection_summary_counts(self):
        summary = DetectionSummary()
        summary.record(ChangeResult.NEW)
        summary.record(ChangeResult.UPDATED)
        summary.record(ChangeResult.UNCHANGED)
        summary.record(ChangeResult.FAILED, "boom")

        assert summary.saved == 2
        assert summary.total == 4
        assert summary.to_dict()["errors"] == ["boom"]

    def test_cycle_report_counters(self):
        report = CycleReport(as_of_date="2025-01-15")
        report.outcomes = [
            RecipientOutcome("1", pending=2, included=2, marked=2, channel=DeliveryChannel.PRIMARY),
            RecipientOutcome("2", pending=1, included=1, marked=1, channel=DeliveryChannel.FALLBACK),
            RecipientOutcome("3", pending=1, included=1, error="All channels failed"),
            RecipientOutcome("4"),
        ]

        assert report.primary_sends == 1
        assert report.fallback_sends == 1
        assert report.failed == 1
        data = report.to_dict()
        assert data["recipients"] == 4
        assert data["outcomes"][2]["channel"] == "none"
        assert data["completed_at"] is None
