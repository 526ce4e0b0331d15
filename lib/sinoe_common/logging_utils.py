"""
Logging helpers that keep recipient data and case content out of CloudWatch.

Phone numbers keep their last three digits, email addresses their domain,
and scraped batches are logged as a count. Anything that looks like a
credential is replaced entirely.
"""

import re
from typing import Any

# Key substrings whose values are never logged
SECRET_KEYS = ("token", "password", "secret", "api_key", "authorization", "credential", "qr")

# Key substrings holding case content; only the length is logged
CONTENT_KEYS = ("summary", "sumilla", "message", "body", "text")

_DIGITS = re.compile(r"\d")


def mask_phone(phone: str) -> str:
    """
    Mask all but the last three digits of a phone number.

    Example:
        mask_phone("51900000001@c.us")  # "********001"
    """
    digits = _DIGITS.findall(str(phone))
    if len(digits) <= 3:
        return "***"
    return "*" * (len(digits) - 3) + "".join(digits[-3:])


def mask_email(address: str) -> str:
    """Keep the first character of the local part and the domain: "t***@example.com"."""
    local, _, domain = str(address).partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def _mask(key: str, value: Any) -> Any:
    key_lower = key.lower()

    if isinstance(value, dict):
        return {k: _mask(k, v) for k, v in value.items()}
    if any(s in key_lower for s in SECRET_KEYS):
        return "***"
    if isinstance(value, list):
        return [_mask(key, item) for item in value]
    if not isinstance(value, str):
        return value
    if "phone" in key_lower:
        return mask_phone(value)
    if "email" in key_lower:
        return mask_email(value)
    if any(s in key_lower for s in CONTENT_KEYS):
        return f"({len(value)} chars)"
    return value


def safe_log_event(event: Any) -> dict[str, Any]:
    """
    Copy of a Lambda event that is safe to log.

    An inline "notifications" batch is replaced by its size; every other
    field is masked by key.
    """
    if not isinstance(event, dict):
        return {"_raw": str(event)[:100]}

    result = {}
    for key, value in event.items():
        if key == "notifications" and isinstance(value, list):
            result[key] = f"[{len(value)} notifications]"
        else:
            result[key] = _mask(key, value)
    return result


def log_summary(
    operation: str,
    *,
    success: bool = True,
    duration_ms: float | None = None,
    item_count: int | None = None,
    **counters: Any,
) -> dict[str, Any]:
    """
    Structured one-line summary of a run step.

    Args:
        operation: Step name ("notification_run", "delivery_cycle", ...)
        success: Whether the step succeeded
        duration_ms: Optional duration in milliseconds
        item_count: Optional number of notifications handled
        **counters: Scalar counters and flags; other values are dropped

    Returns:
        Dictionary for logger.info()
    """
    summary: dict[str, Any] = {"operation": operation, "success": success}
    if duration_ms is not None:
        summary["duration_ms"] = round(duration_ms, 2)
    if item_count is not None:
        summary["item_count"] = item_count
    summary.update({k: v for k, v in counters.items() if isinstance(v, (str, int, float, bool))})
    return summary
