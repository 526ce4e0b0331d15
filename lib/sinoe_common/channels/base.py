"""
Primary channel client interface.

A channel client wraps one authenticated messaging session. It reports
lifecycle changes through the callbacks in ChannelEvents and exposes a
blocking send. The session manager owns the client and translates these
events into its state machine.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


class SessionState(str, Enum):
    """Lifecycle of the primary channel session."""

    UNINITIALIZED = "uninitialized"
    PAIRING = "pairing"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"


@dataclass
class PairingArtifact:
    """
    Out-of-band pairing material produced while the session is unpaired.

    Attributes:
        session_name: Session being paired
        attempt: Pairing attempt counter reported by the client
        qr_png: QR code image bytes, if the channel pairs by QR
        code: Pairing code, if the channel pairs by code
    """

    session_name: str
    attempt: int = 1
    qr_png: bytes | None = None
    code: str | None = None


@dataclass
class InboundMessage:
    sender: str
    body: str
    message_id: str | None = None


@dataclass
class DeliveryAck:
    """Delivery acknowledgment for a sent message (ack >= 1 means delivered to the server)."""

    message_id: str
    ack: int = 1
    recipient: str | None = None


def _noop(*_args) -> None:
    return None


@dataclass
class ChannelEvents:
    """Callbacks a client invokes; the session manager binds them."""

    on_pairing: Callable[[PairingArtifact], None] = _noop
    on_authenticated: Callable[[], None] = _noop
    on_ready: Callable[[], None] = _noop
    on_disconnect: Callable[[str], None] = _noop
    on_auth_failure: Callable[[str], None] = _noop
    on_message: Callable[[InboundMessage], None] = _noop
    on_ack: Callable[[DeliveryAck], None] = _noop


class ChannelClient(ABC):
    """Abstract primary channel client."""

    def __init__(self):
        self.events = ChannelEvents()

    def bind(self, events: ChannelEvents) -> None:
        self.events = events

    @abstractmethod
    def start(self, session_name: str, session_dir: str) -> None:
        """
        Begin connecting the session.

        Returns immediately; progress is reported through events.

        Raises:
            ChannelUnavailableError: If the client cannot be started
        """

    @abstractmethod
    def send(self, address: str, text: str) -> str:
        """
        Send a text message.

        Returns:
            Channel message id

        Raises:
            ChannelUnavailableError: If the message was not accepted
        """

    @abstractmethod
    def is_connected(self) -> bool:
        """
        Channel's self-reported connectivity.

        Raises:
            ChannelUnavailableError: If connectivity cannot be determined
        """

    @abstractmethod
    def close(self) -> None:
        """Stop the session and release resources."""

