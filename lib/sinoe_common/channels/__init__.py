"""
Delivery channels for SINOE notifications.

Architecture:
- Base: primary channel client interface, events and session states
- Gateway: HTTP WhatsApp gateway client
- Session: state machine owning the single primary channel session
- Email: stateless SES fallback channel
"""

from sinoe_common.channels.base import (
    ChannelClient,
    ChannelEvents,
    DeliveryAck,
    InboundMessage,
    PairingArtifact,
    SessionState,
)

__all__ = [
    "ChannelClient",
    "ChannelEvents",
    "DeliveryAck",
    "InboundMessage",
    "PairingArtifact",
    "SessionState",
]
