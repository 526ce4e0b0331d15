"""
Status surface for operational polling.

Aggregates, per subsystem, the enabled/initialized/connected flags and
the record store counters into one JSON-serializable dictionary.
"""

from datetime import UTC, datetime
from typing import Any

from sinoe_common.channels.email import EmailChannel
from sinoe_common.channels.session import ChannelSessionManager
from sinoe_common.config import NotifierConfig
from sinoe_common.session_storage import SessionStorage
from sinoe_common.store import NotificationStore


def build_status(
    config: NotifierConfig,
    store: NotificationStore,
    session: ChannelSessionManager | None = None,
    email: EmailChannel | None = None,
    storage: SessionStorage | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Build the status object.

    Args:
        config: Run configuration
        store: Record store (queried for counters)
        session: Primary channel session, if enabled
        email: Fallback channel, if enabled
        storage: Session archive storage, if enabled
        now: Reference time for the "today" counter

    Returns:
        Dictionary with database, whatsapp, email and session_storage sections
    """
    moment = now or datetime.now(UTC)

    if session is not None:
        whatsapp = session.get_status()
    else:
        whatsapp = {"enabled": False, "initialized": False, "connected": False}
    whatsapp["recipients"] = len(config.channel.active_recipients)
    whatsapp["send_on_success"] = config.channel.send_on_success
    whatsapp["send_on_error"] = config.channel.send_on_error

    return {
        "timestamp": moment.isoformat(),
        "database": store.get_stats(moment.date().isoformat()),
        "whatsapp": whatsapp,
        "email": email.get_status() if email else {"enabled": False, "initialized": False},
        "session_storage": storage.get_status() if storage else {"enabled": False, "initialized": False},
        "delivery": {
            "status_filter": config.delivery.status_filter.value,
            "max_items_per_message": config.delivery.max_items_per_message,
        },
    }
