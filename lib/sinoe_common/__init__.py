"""Common Library

Shared utilities and classes for the SINOE notification delivery pipeline.
"""

from sinoe_common import constants
from sinoe_common.config import NotifierConfig
from sinoe_common.logging_utils import log_summary, safe_log_event

__all__ = [
    "NotifierConfig",
    "constants",
    "log_summary",
    "safe_log_event",
]
