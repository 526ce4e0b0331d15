"""
Notify Status Lambda

Returns the status surface of the notification pipeline for operational
polling: per-subsystem enabled/initialized/connected flags and record
counters (total records, open notifications, notifications seen today).

Input event: {} (ignored)

Output:
{
    "timestamp": "2025-01-15T15:30:00+00:00",
    "database": {"enabled": true, "total_records": 120, "open_count": 7, "today_count": 3, ...},
    "whatsapp": {"enabled": true, "initialized": false, "connected": false, "recipients": 2, ...},
    "email": {"enabled": true, "initialized": true, ...},
    "session_storage": {"enabled": true, "initialized": true, ...},
    "delivery": {"status_filter": "all", "max_items_per_message": 30}
}
"""

import json
import logging
import os

from sinoe_common.config import NotifierConfig
from sinoe_common.runner import NotificationRun

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))


def lambda_handler(event, context):
    """
    Main Lambda handler.
    """
    config = NotifierConfig.from_env()
    run = NotificationRun(config)

    if run.email is not None:
        run.email.initialize()
    if run.storage is not None:
        run.storage.initialize()

    status = run.status()
    logger.info(f"Status: {json.dumps(status, default=str)}")
    return status
