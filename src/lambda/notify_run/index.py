"""
Notify Run Lambda

Runs change detection over one scraper batch and delivers pending
notifications to every recipient (WhatsApp first, email fallback).

Input event (inline batch):
{
    "notifications": [
        {"case_id": "00187-2025", "notification_id": "43443-2025",
         "status": "open", "summary": "...", "office": "...", "date": "15/01/2025"}
    ],
    "as_of_date": "2025-01-15",        # optional, defaults to today (UTC)
    "send_test_message": false         # optional
}

Input event (batch stored by the scraper in S3):
{
    "notifications_s3_uri": "s3://bucket/runs/2025-01-15.json"
}

Output:
{
    "detection": {"new": 1, "updated": 0, "unchanged": 4, "failed": 0, "errors": []},
    "channel_ready": true,
    "delivery": {"primary_sends": 2, "fallback_sends": 0, "failed": 0, ...},
    "test_message_sent": null
}
"""

import json
import logging
import os

from sinoe_common.config import NotifierConfig
from sinoe_common.logging_utils import safe_log_event
from sinoe_common.runner import NotificationRun, install_signal_handlers
from sinoe_common.storage import read_s3_json

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))


def _load_notifications(event):
    """Scraped notifications from the event, inline or from S3."""
    if "notifications" in event:
        notifications = event["notifications"]
    elif event.get("notifications_s3_uri"):
        notifications = read_s3_json(event["notifications_s3_uri"])
        if isinstance(notifications, dict):
            notifications = notifications.get("notifications", [])
    else:
        raise ValueError("notifications or notifications_s3_uri is required")

    if not isinstance(notifications, list):
        raise ValueError("notifications must be a list")
    return notifications


def lambda_handler(event, context):
    """
    Main Lambda handler.
    """
    logger.info(f"Received event: {json.dumps(safe_log_event(event), default=str)}")

    config = NotifierConfig.from_env()
    notifications = _load_notifications(event)
    logger.info(f"Loaded {len(notifications)} scraped notifications")

    run = NotificationRun(config)
    install_signal_handlers(run)

    result = run.execute(
        notifications,
        as_of_date=event.get("as_of_date"),
        send_test_message=bool(event.get("send_test_message", False)),
    )

    logger.info(f"Run complete: {json.dumps(result['detection'])}")
    return result
