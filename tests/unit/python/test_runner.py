"""Unit tests for run composition and cleanup."""

import signal
import threading
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from sinoe_common.config import ChannelConfig, DeliveryConfig, EmailConfig, NotifierConfig, SessionStorageConfig
from sinoe_common.exceptions import ChannelUnavailableError, StartupError
from sinoe_common.models import Recipient
from sinoe_common.orchestrator import ERROR_SUBJECT
from sinoe_common.runner import NotificationRun, install_signal_handlers
from sinoe_common.store import NotificationStore
from tests.fixtures.notification_samples import SAMPLE_BATCH, TODAY, FakeClientFactory, fixed_clock


@pytest.fixture
def ses():
    client = MagicMock()
    client.get_send_quota.return_value = {"Max24HourSend": 200.0, "SentLast24Hours": 0.0}
    client.send_email.return_value = {"MessageId": "ses-1"}
    return client


def _config(tmp_path, channel_enabled=True, **channel_kwargs):
    channel_kwargs.setdefault("recipients", (Recipient(name="Titular", phone="51900000001"),))
    return NotifierConfig(
        table_name="test-notifications",
        channel=ChannelConfig(
            enabled=channel_enabled,
            gateway_url="http://localhost:3000",
            session_dir=str(tmp_path),
            client_user=Recipient(name="Estudio", email="owner@example.com"),
            **channel_kwargs,
        ),
        email=EmailConfig(enabled=True, sender="sinoe@example.com", default_recipient="ops@example.com"),
        delivery=DeliveryConfig(init_timeout=1, channel_ready_timeout=0.1, ack_timeout=0, recovery_delay=0),
    )


def _run(config, store, factory=None, ses=None):
    return NotificationRun(
        config,
        store=store,
        client_factory=factory or FakeClientFactory(),
        ses_client=ses or MagicMock(),
        clock=fixed_clock,
    )


class TestExecute:
    def test_end_to_end(self, tmp_path, store, ses):
        factory = FakeClientFactory()
        run = _run(_config(tmp_path), store, factory, ses)

        result = run.execute(SAMPLE_BATCH)

        assert result["detection"]["new"] == 3
        assert result["channel_ready"] is True
        assert result["delivery"]["as_of_date"] == TODAY
        assert result["delivery"]["primary_sends"] == 1
        assert result["test_message_sent"] is None
        assert factory.clients[0].closed is True
        assert run.session.shutdown_requested is True
        ses.send_email.assert_not_called()

    def test_second_run_sends_nothing(self, tmp_path, store, ses):
        _run(_config(tmp_path), store, ses=ses).execute(SAMPLE_BATCH)
        factory = FakeClientFactory()

        result = _run(_config(tmp_path), store, factory, ses).execute(SAMPLE_BATCH)

        assert result["detection"]["unchanged"] == 3
        assert result["delivery"]["primary_sends"] == 0
        assert factory.sent == []

    def test_delivery_disabled(self, tmp_path, store, ses):
        factory = FakeClientFactory()

        result = _run(_config(tmp_path, send_on_success=False), store, factory, ses).execute(SAMPLE_BATCH)

        assert result["delivery"] is None
        assert factory.sent == []

    def test_test_message(self, tmp_path, store, ses):
        factory = FakeClientFactory()

        result = _run(_config(tmp_path, test_phone="51900000009"), store, factory, ses).execute(
            [], send_test_message=True
        )

        assert result["test_message_sent"] is True
        assert factory.sent[0][0] == "51900000009@c.us"

    def test_channel_down_uses_email(self, tmp_path, store, ses):
        factory = FakeClientFactory(start_error=ChannelUnavailableError("gateway down"))

        result = _run(_config(tmp_path), store, factory, ses).execute(SAMPLE_BATCH)

        assert result["channel_ready"] is False
        assert result["delivery"]["fallback_sends"] == 1
        assert ses.send_email.call_args.kwargs["Destination"] == {"ToAddresses": ["ops@example.com"]}

    def test_channel_disabled(self, tmp_path, store, ses):
        run = _run(_config(tmp_path, channel_enabled=False), store, ses=ses)

        result = run.execute(SAMPLE_BATCH)

        assert run.session is None
        assert result["channel_ready"] is False
        assert result["delivery"]["fallback_sends"] == 1

    def test_startup_failure_notifies_and_raises(self, tmp_path, dynamodb, ses):
        store = NotificationStore("missing-table", dynamodb=dynamodb)
        factory = FakeClientFactory()

        with pytest.raises(StartupError, match="Record store unavailable"):
            _run(_config(tmp_path), store, factory, ses).execute(SAMPLE_BATCH)

        message = ses.send_email.call_args.kwargs["Message"]
        assert message["Subject"]["Data"] == ERROR_SUBJECT
        assert factory.clients == []


class TestLifecycle:
    def test_shutdown_is_idempotent(self, tmp_path, store):
        factory = FakeClientFactory()
        run = _run(_config(tmp_path), store, factory)
        run.start_channel()

        run.shutdown()
        run.shutdown()

        assert factory.clients[0].closed is True

    def test_pairing_artifact_emailed_to_owner(self, tmp_path, store):
        run = _run(_config(tmp_path), store)
        with patch.object(run.email, "send_pairing_artifact", return_value=True) as send:
            run.session.pairing_handler("artifact")

        assert send.call_args.args == ("artifact", run.config.channel.client_user)

    def test_initialize_cleans_old_session_archives(self, tmp_path, store):
        config = replace(
            _config(tmp_path),
            session_storage=SessionStorageConfig(enabled=True, bucket="sinoe-sessions", max_age_days=7),
        )
        s3 = MagicMock()
        run = NotificationRun(
            config, store=store, client_factory=FakeClientFactory(), s3_client=s3, ses_client=MagicMock()
        )

        with patch.object(run.storage, "cleanup_old_sessions", return_value=0) as cleanup:
            run.initialize()

        s3.head_bucket.assert_called_once_with(Bucket="sinoe-sessions")
        cleanup.assert_called_once_with(7)
        assert run.session.storage is run.storage

    def test_status(self, tmp_path, store):
        status = _run(_config(tmp_path), store).status()

        assert status["whatsapp"]["state"] == "uninitialized"
        assert status["email"]["enabled"] is True
        assert status["session_storage"]["enabled"] is False


class TestSignalHandlers:
    def test_signal_requests_shutdown(self):
        run = MagicMock()
        with patch("sinoe_common.runner.signal.signal") as register:
            assert install_signal_handlers(run) is True

        registered = {c.args[0]: c.args[1] for c in register.call_args_list}
        assert set(registered) == {signal.SIGTERM, signal.SIGINT}
        registered[signal.SIGTERM](signal.SIGTERM, None)
        run.request_shutdown.assert_called_once()

    def test_not_installed_off_main_thread(self):
        results = []
        worker = threading.Thread(target=lambda: results.append(install_signal_handlers(MagicMock())))
        worker.start()
        worker.join()

        assert results == [False]
