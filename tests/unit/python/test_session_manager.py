"""Unit tests for the channel session state machine."""

import os
import threading
import time
from unittest.mock import MagicMock

import pytest

from sinoe_common.channels.base import DeliveryAck, InboundMessage, PairingArtifact, SessionState
from sinoe_common.channels.session import ChannelSessionManager
from sinoe_common.exceptions import ChannelUnavailableError
from tests.fixtures.notification_samples import FakeClientFactory


@pytest.fixture
def make_manager(tmp_path):
    """Build session managers and shut every one of them down after the test."""
    managers = []

    def _make(factory=None, **kwargs):
        kwargs.setdefault("recovery_delay", 0)
        manager = ChannelSessionManager(
            factory or FakeClientFactory(),
            session_name="sinoe-main",
            session_dir=str(tmp_path / "tokens"),
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.shutdown()


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestStartup:
    def test_start_reaches_ready(self, make_manager, tmp_path):
        factory = FakeClientFactory()
        manager = make_manager(factory)

        manager.start()

        assert manager.state is SessionState.READY
        assert manager.wait_until_ready(0.1) is True
        assert factory.clients[0].started_with == ("sinoe-main", str(tmp_path / "tokens" / "sinoe-main"))
        assert os.path.isdir(manager.session_path)

    def test_pairing_until_scanned(self, make_manager):
        factory = FakeClientFactory(auto_ready=False)
        manager = make_manager(factory)
        manager.start()

        assert manager.state is SessionState.PAIRING
        assert manager.wait_until_ready(0.05) is False

        factory.clients[0].events.on_authenticated()
        assert manager.state is SessionState.AUTHENTICATED
        factory.clients[0].events.on_ready()
        assert manager.is_ready

    def test_start_failure_disconnects(self, make_manager):
        manager = make_manager(FakeClientFactory(start_error=ChannelUnavailableError("gateway down")))

        with pytest.raises(ChannelUnavailableError, match="gateway down"):
            manager.start()

        assert manager.state is SessionState.DISCONNECTED
        assert manager.last_error == "gateway down"
        assert manager.wait_until_ready(5) is False

    def test_start_after_shutdown_request(self, make_manager):
        manager = make_manager()
        manager.request_shutdown()

        with pytest.raises(ChannelUnavailableError, match="Shutdown requested"):
            manager.start()
        assert manager.state is SessionState.UNINITIALIZED

    def test_pairing_artifact_forwarded(self, make_manager):
        handler = MagicMock(side_effect=[RuntimeError("ses down"), None])
        factory = FakeClientFactory(auto_ready=False)
        manager = make_manager(factory, pairing_handler=handler)
        manager.start()

        artifact = PairingArtifact(session_name="sinoe-main", qr_png=b"png")
        factory.clients[0].events.on_pairing(artifact)
        factory.clients[0].events.on_pairing(artifact)

        assert handler.call_count == 2
        assert manager.state is SessionState.PAIRING


class TestTrafficInference:
    def test_inbound_message_proves_ready(self, make_manager):
        factory = FakeClientFactory(auto_ready=False)
        manager = make_manager(factory, log_incoming_messages=True)
        manager.start()

        factory.clients[0].events.on_message(InboundMessage(sender="51900000002@c.us", body="hola"))

        assert manager.state is SessionState.READY

    def test_ack_does_not_restore_degraded(self, make_manager):
        factory = FakeClientFactory(ack=True)
        manager = make_manager(factory)
        manager.start()
        factory.clients[0].connected = False
        manager.verify_once()
        assert manager.state is SessionState.DEGRADED

        factory.clients[0].events.on_ack(DeliveryAck(message_id="late-ack"))

        assert manager.state is SessionState.DEGRADED
        assert manager.wait_for_ack("late-ack", 0) is True

        factory.clients[0].connected = True
        assert manager.verify_once() is SessionState.READY


class TestVerification:
    def test_ready_degrades_when_client_reports_disconnected(self, make_manager):
        factory = FakeClientFactory()
        manager = make_manager(factory)
        manager.start()

        factory.clients[0].connected = False
        assert manager.verify_once() is SessionState.DEGRADED

        factory.clients[0].connected = True
        assert manager.verify_once() is SessionState.READY

    def test_unreachable_client_counts_as_disconnected(self, make_manager):
        factory = FakeClientFactory()
        manager = make_manager(factory)
        manager.start()

        factory.clients[0].connected = ChannelUnavailableError("timeout")

        assert manager.verify_once() is SessionState.DEGRADED

    def test_pairing_is_not_verified(self, make_manager):
        manager = make_manager(FakeClientFactory(auto_ready=False, connected=True))
        manager.start()

        assert manager.verify_once() is SessionState.PAIRING

    def test_verifier_thread_runs_periodically(self, make_manager):
        factory = FakeClientFactory()
        manager = make_manager(factory, verify_interval=0.02)
        manager.start()

        factory.clients[0].connected = False

        assert _wait_for(lambda: manager.state is SessionState.DEGRADED)


class TestSend:
    def test_send_returns_message_id(self, make_manager):
        factory = FakeClientFactory()
        manager = make_manager(factory)
        manager.start()

        assert manager.send("51900000001@c.us", "hola") == "msg-1"
        assert factory.sent == [("51900000001@c.us", "hola")]

    def test_send_requires_ready(self, make_manager):
        manager = make_manager(FakeClientFactory(auto_ready=False))
        manager.start()

        with pytest.raises(ChannelUnavailableError, match="not ready"):
            manager.send("51900000001@c.us", "hola")

    def test_send_failure_degrades(self, make_manager):
        manager = make_manager(FakeClientFactory(fail_send=True))
        manager.start()

        with pytest.raises(ChannelUnavailableError):
            manager.send("51900000001@c.us", "hola")

        assert manager.state is SessionState.DEGRADED
        assert manager.last_error == "send rejected"

    def test_wait_for_ack(self, make_manager):
        manager = make_manager(FakeClientFactory(ack=True))
        manager.start()

        message_id = manager.send("51900000001@c.us", "hola")

        assert manager.wait_for_ack(message_id, 1) is True
        assert manager.wait_for_ack("unknown", 0.05) is False


class TestDisconnectAndRecovery:
    def test_disconnect_event(self, make_manager):
        factory = FakeClientFactory()
        manager = make_manager(factory)
        manager.start()

        factory.clients[0].events.on_disconnect("phone offline")

        assert manager.state is SessionState.DISCONNECTED
        assert manager.wait_until_ready(5) is False

    def test_auth_failure(self, make_manager):
        factory = FakeClientFactory(auto_ready=False)
        manager = make_manager(factory)
        manager.start()

        factory.clients[0].events.on_auth_failure("logged out")

        assert manager.state is SessionState.DISCONNECTED
        assert manager.last_error == "logged out"

    def test_recover_starts_fresh_client(self, make_manager):
        factory = FakeClientFactory()
        manager = make_manager(factory)
        manager.start()
        first = factory.clients[0]

        assert manager.recover() is True

        assert first.closed is True
        assert len(factory.clients) == 2
        assert manager.client is factory.clients[1]
        assert manager.is_ready

    def test_events_from_replaced_client_are_ignored(self, make_manager):
        factory = FakeClientFactory()
        manager = make_manager(factory)
        manager.start()
        stale = factory.clients[0]
        manager.recover()

        stale.events.on_disconnect("late event")

        assert manager.is_ready

    def test_recover_after_shutdown_request(self, make_manager):
        factory = FakeClientFactory()
        manager = make_manager(factory)
        manager.start()
        manager.request_shutdown()

        assert manager.recover() is False
        assert len(factory.clients) == 1


class TestShutdown:
    def test_request_shutdown_cancels_wait(self, make_manager):
        manager = make_manager(FakeClientFactory(auto_ready=False))
        manager.start()
        timer = threading.Timer(0.05, manager.request_shutdown)
        timer.start()

        started = time.monotonic()
        ready = manager.wait_until_ready(10)

        assert ready is False
        assert time.monotonic() - started < 2
        timer.join()

    def test_shutdown_closes_client(self, make_manager):
        factory = FakeClientFactory()
        manager = make_manager(factory)
        manager.start()

        manager.shutdown()

        assert factory.clients[0].closed is True
        assert manager.state is SessionState.DISCONNECTED
        assert manager.shutdown_requested is True


class TestPersistence:
    def test_download_on_start_and_upload_when_ready(self, make_manager):
        storage = MagicMock()
        manager = make_manager(storage=storage)

        manager.start()
        storage.download.assert_called_once_with("sinoe-main", manager.session_path)
        storage.upload.assert_called_once_with("sinoe-main", manager.session_path)

        manager.shutdown()
        assert storage.upload.call_count == 2

    def test_repeated_ready_uploads_once_per_client(self, make_manager):
        storage = MagicMock()
        factory = FakeClientFactory()
        manager = make_manager(factory, storage=storage)
        manager.start()

        factory.clients[0].connected = False
        manager.verify_once()
        factory.clients[0].connected = True
        manager.verify_once()

        assert storage.upload.call_count == 1

    def test_never_ready_is_not_persisted(self, make_manager):
        storage = MagicMock()
        manager = make_manager(FakeClientFactory(auto_ready=False), storage=storage)
        manager.start()

        manager.shutdown()

        storage.upload.assert_not_called()
        assert manager.persist_session(force=True) is False


class TestStatus:
    def test_get_status(self, make_manager):
        manager = make_manager()
        assert manager.get_status()["state"] == "uninitialized"

        manager.start()
        status = manager.get_status()

        assert status["enabled"] is True
        assert status["initialized"] is True
        assert status["connected"] is True
        assert status["session_name"] == "sinoe-main"
        assert status["session_storage"] == {"enabled": False}
