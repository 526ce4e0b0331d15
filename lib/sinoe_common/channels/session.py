"""
Channel session manager.

Owns the single primary channel client of a run and drives its state
machine:

    UNINITIALIZED -> PAIRING -> AUTHENTICATED -> READY <-> DEGRADED
    any state -> DISCONNECTED -> (recover) -> PAIRING

Transitions come only from client events, from traffic (an inbound
message or delivery ack while not yet ready means the session works),
from send failures and from a periodic verification thread that compares
the client's self-reported connectivity with the current state. State is
guarded by one condition variable shared with every blocking wait, so all
waits are bounded and a shutdown request cancels them.
"""

import logging
import os
import threading
import time
from collections.abc import Callable
from typing import Any

from sinoe_common.channels.base import (
    ChannelClient,
    ChannelEvents,
    DeliveryAck,
    InboundMessage,
    PairingArtifact,
    SessionState,
)
from sinoe_common.constants import RECOVERY_DELAY, VERIFY_INTERVAL
from sinoe_common.exceptions import ChannelUnavailableError
from sinoe_common.logging_utils import mask_phone
from sinoe_common.session_storage import SessionStorage

logger = logging.getLogger(__name__)

# Longest single sleep inside a bounded wait, so a shutdown request set from
# a signal handler is noticed promptly
WAIT_SLICE = 0.5

_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.UNINITIALIZED: {SessionState.PAIRING, SessionState.DISCONNECTED},
    SessionState.PAIRING: {SessionState.AUTHENTICATED, SessionState.READY, SessionState.DISCONNECTED},
    SessionState.AUTHENTICATED: {SessionState.READY, SessionState.DISCONNECTED},
    SessionState.READY: {SessionState.DEGRADED, SessionState.DISCONNECTED},
    SessionState.DEGRADED: {SessionState.READY, SessionState.DISCONNECTED},
    SessionState.DISCONNECTED: {SessionState.PAIRING},
}

# Degraded only recovers through a healthy verification poll
_TRAFFIC_PROVES_READY = (SessionState.PAIRING, SessionState.AUTHENTICATED)


class ChannelSessionManager:
    """Lifecycle owner of the primary channel session."""

    def __init__(
        self,
        client_factory: Callable[[], ChannelClient],
        session_name: str,
        session_dir: str,
        storage: SessionStorage | None = None,
        pairing_handler: Callable[[PairingArtifact], Any] | None = None,
        verify_interval: float = VERIFY_INTERVAL,
        recovery_delay: float = RECOVERY_DELAY,
        log_incoming_messages: bool = False,
        log_message_status: bool = False,
    ):
        """
        Initialize the session manager.

        Args:
            client_factory: Builds a fresh, unstarted channel client
            session_name: Stable session name (blob store key)
            session_dir: Root directory for local session material
            storage: Optional session archive storage
            pairing_handler: Receives pairing artifacts (e.g. emails the QR)
            verify_interval: Seconds between connectivity verifications
            recovery_delay: Seconds to wait between teardown and restart
            log_incoming_messages: Log inbound messages
            log_message_status: Log delivery acknowledgments
        """
        self.client_factory = client_factory
        self.session_name = session_name
        self.session_path = os.path.join(session_dir, session_name)
        self.storage = storage
        self.pairing_handler = pairing_handler
        self.verify_interval = verify_interval
        self.recovery_delay = recovery_delay
        self.log_incoming_messages = log_incoming_messages
        self.log_message_status = log_message_status

        self.client: ChannelClient | None = None
        self.last_error: str | None = None
        self._state = SessionState.UNINITIALIZED
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._send_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._generation = 0
        self._verifier: threading.Thread | None = None
        self._verifier_stop = threading.Event()
        self._acks: dict[str, DeliveryAck] = {}
        self._was_ready = False
        self._persisted_generation = -1

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def _set_state(self, new_state: SessionState, reason: str) -> bool:
        """Apply a transition if the state machine allows it. Caller holds the lock."""
        old_state = self._state
        if new_state is old_state:
            return False
        if new_state not in _TRANSITIONS[old_state]:
            logger.debug(f"Ignoring transition {old_state.value} -> {new_state.value} ({reason})")
            return False

        self._state = new_state
        if new_state is SessionState.READY:
            self._was_ready = True
        logger.info(f"Channel session {self.session_name}: {old_state.value} -> {new_state.value} ({reason})")
        self._changed.notify_all()
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Restore stored session material and start a fresh client.

        Raises:
            ChannelUnavailableError: If the client cannot be started or a
                shutdown was requested
        """
        if self._shutdown.is_set():
            raise ChannelUnavailableError("Shutdown requested")

        if self.storage is not None:
            self.storage.download(self.session_name, self.session_path)
        try:
            os.makedirs(self.session_path, exist_ok=True)
        except OSError as e:
            raise ChannelUnavailableError(f"Cannot create session directory {self.session_path}: {e}") from e

        client = self.client_factory()
        with self._lock:
            self._generation += 1
            generation = self._generation
            client.bind(self._events_for(generation))
            self.client = client
            self._acks.clear()
            self._set_state(SessionState.PAIRING, "starting client")

        try:
            client.start(self.session_name, self.session_path)
        except ChannelUnavailableError as e:
            with self._lock:
                self.last_error = str(e)
                if generation == self._generation:
                    self._set_state(SessionState.DISCONNECTED, "client failed to start")
            raise

        self._start_verifier(generation)

    def wait_until_ready(self, timeout: float) -> bool:
        """
        Block until the session is READY.

        Returns False on timeout, on shutdown, or once the session is
        DISCONNECTED (only recover() leaves that state).
        """
        deadline = time.monotonic() + timeout
        with self._changed:
            while self._state is not SessionState.READY:
                if self._shutdown.is_set() or self._state is SessionState.DISCONNECTED:
                    return False
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._changed.wait(min(remaining, WAIT_SLICE))
            return True

    def send(self, address: str, text: str) -> str:
        """
        Send a message over the ready session.

        A failed send moves a READY session to DEGRADED.

        Returns:
            Channel message id

        Raises:
            ChannelUnavailableError: If the session is not ready or the send failed
        """
        with self._send_lock:
            with self._lock:
                client, state = self.client, self._state
            if client is None or state is not SessionState.READY:
                raise ChannelUnavailableError(f"Channel not ready ({state.value})")

            try:
                message_id = client.send(address, text)
            except ChannelUnavailableError as e:
                with self._lock:
                    self.last_error = str(e)
                    if client is self.client:
                        self._set_state(SessionState.DEGRADED, "send failed")
                raise

        logger.info(f"Message {message_id} sent to {mask_phone(address)}")
        return message_id

    def wait_for_ack(self, message_id: str, timeout: float) -> bool:
        """Block until a delivery ack for message_id arrives. Best effort, bounded."""
        deadline = time.monotonic() + timeout
        with self._changed:
            while message_id not in self._acks:
                if self._shutdown.is_set():
                    return False
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._changed.wait(min(remaining, WAIT_SLICE))
            return True

    def recover(self) -> bool:
        """
        Tear down the client, wait briefly and restart pairing.

        Returns:
            True if a new client was started (it may still be pairing)
        """
        logger.warning(f"Recovering channel session {self.session_name}")
        self._teardown("recovery")

        if self._shutdown.wait(self.recovery_delay):
            return False
        try:
            self.start()
        except ChannelUnavailableError as e:
            logger.error(f"Channel recovery failed: {e}")
            return False
        return True

    def request_shutdown(self) -> None:
        """Cancel in-flight waits. Safe to call from a signal handler."""
        self._shutdown.set()

    def shutdown(self) -> None:
        """Cancel waits, close the client and persist session material."""
        self._shutdown.set()
        had_client = self.client is not None
        self._teardown("shutdown")
        if had_client:
            self.persist_session(force=True)

    def persist_session(self, force: bool = False) -> bool:
        """
        Upload the local session directory to the blob store.

        Only sessions that reached READY in this process are uploaded, so a
        failed pairing never replaces a good stored session. Failures are
        logged and reported as False.
        """
        if self.storage is None or not self._was_ready:
            return False
        with self._lock:
            generation = self._generation
            if not force and self._persisted_generation == generation:
                return True
            self._persisted_generation = generation
        return self.storage.upload(self.session_name, self.session_path)

    def _teardown(self, reason: str) -> None:
        with self._lock:
            client = self.client
            self.client = None
            self._generation += 1
            self._verifier_stop.set()
            self._set_state(SessionState.DISCONNECTED, reason)
            self._changed.notify_all()

        if client is not None:
            try:
                client.close()
            except ChannelUnavailableError as e:
                logger.warning(f"Error closing channel client: {e}")

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _start_verifier(self, generation: int) -> None:
        stop = threading.Event()
        with self._lock:
            if generation != self._generation:
                return
            self._verifier_stop = stop
        self._verifier = threading.Thread(
            target=self._verify_loop,
            args=(stop,),
            name=f"channel-verify-{self.session_name}",
            daemon=True,
        )
        self._verifier.start()
        logger.info(f"Started connection verification every {self.verify_interval}s")

    def _verify_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.verify_interval):
            if self._shutdown.is_set():
                return
            self.verify_once()

    def verify_once(self) -> SessionState:
        """
        Compare the client's self-reported connectivity with the state.

        READY -> DEGRADED when the client reports disconnected (or cannot
        tell); DEGRADED or AUTHENTICATED -> READY when it reports connected.
        """
        with self._lock:
            client, state = self.client, self._state
        if client is None or state in (SessionState.UNINITIALIZED, SessionState.PAIRING, SessionState.DISCONNECTED):
            return state

        try:
            connected = client.is_connected()
        except ChannelUnavailableError as e:
            logger.warning(f"Verification could not reach the channel: {e}")
            connected = False

        with self._lock:
            if client is not self.client:
                return self._state
            if connected and self._state in (SessionState.DEGRADED, SessionState.AUTHENTICATED):
                self._set_state(SessionState.READY, "verification reports connected")
            elif not connected and self._state is SessionState.READY:
                self._set_state(SessionState.DEGRADED, "verification reports disconnected")
            new_state = self._state

        if new_state is SessionState.READY:
            self.persist_session()
        return new_state

    # ------------------------------------------------------------------
    # Client events
    # ------------------------------------------------------------------

    def _events_for(self, generation: int) -> ChannelEvents:
        """Callbacks bound to one client; events from replaced clients are ignored."""

        def current() -> bool:
            return generation == self._generation

        def on_pairing(artifact: PairingArtifact) -> None:
            if not current():
                return
            logger.info(f"Pairing required for {artifact.session_name} (attempt {artifact.attempt})")
            if self.pairing_handler is None:
                logger.warning("No pairing handler configured; pairing artifact dropped")
                return
            try:
                self.pairing_handler(artifact)
            except Exception as e:
                logger.error(f"Pairing handler failed: {e}", exc_info=True)

        def on_authenticated() -> None:
            with self._lock:
                if current():
                    self._set_state(SessionState.AUTHENTICATED, "credentials accepted")

        def on_ready() -> None:
            with self._lock:
                if not current():
                    return
                became_ready = self._set_state(SessionState.READY, "ready event")
            if became_ready:
                self.persist_session()

        def on_disconnect(reason: str) -> None:
            with self._lock:
                if current():
                    self.last_error = reason
                    self._set_state(SessionState.DISCONNECTED, f"disconnect event: {reason}")

        def on_auth_failure(reason: str) -> None:
            with self._lock:
                if current():
                    self.last_error = reason
                    self._set_state(SessionState.DISCONNECTED, f"authentication failed: {reason}")

        def on_message(message: InboundMessage) -> None:
            if self.log_incoming_messages:
                logger.info(f"Incoming message from {mask_phone(message.sender)} ({len(message.body)} chars)")
            self._infer_ready(current, "inbound message")

        def on_ack(ack: DeliveryAck) -> None:
            if self.log_message_status:
                logger.info(f"Message status: {ack.message_id} ack={ack.ack}")
            with self._lock:
                if current():
                    self._acks[ack.message_id] = ack
                    self._changed.notify_all()
            self._infer_ready(current, "delivery acknowledgment")

        return ChannelEvents(
            on_pairing=on_pairing,
            on_authenticated=on_authenticated,
            on_ready=on_ready,
            on_disconnect=on_disconnect,
            on_auth_failure=on_auth_failure,
            on_message=on_message,
            on_ack=on_ack,
        )

    def _infer_ready(self, current: Callable[[], bool], reason: str) -> None:
        with self._lock:
            if not current() or self._state not in _TRAFFIC_PROVES_READY:
                return
            became_ready = self._set_state(SessionState.READY, f"inferred from {reason}")
        if became_ready:
            self.persist_session()

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "enabled": True,
                "initialized": self.client is not None,
                "connected": self._state is SessionState.READY,
                "state": self._state.value,
                "session_name": self.session_name,
                "last_error": self.last_error,
                "session_storage": self.storage.get_status() if self.storage else {"enabled": False},
            }
