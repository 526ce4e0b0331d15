"""
Constants used throughout the SINOE notification pipeline.

Centralizes magic numbers and configuration defaults to improve
maintainability and make tuning easier.
"""

# =============================================================================
# Record Store
# =============================================================================

# Records processed per change-detection batch (DynamoDB batch size)
STORE_BATCH_SIZE = 25

# Source label stored on each record
DEFAULT_SOURCE = "SINOE"

# Fields covered by the content fingerprint
TRACKED_FIELDS = ("status", "summary", "office", "date")


# =============================================================================
# Delivery Ledger
# =============================================================================

# Optimistic write attempts before deferring to the next cycle
LEDGER_MAX_ATTEMPTS = 3


# =============================================================================
# Timeouts (in seconds)
# =============================================================================

# Wait for the primary channel to become Ready before a send
CHANNEL_READY_TIMEOUT = 60

# Best-effort wait for a delivery acknowledgment
ACK_TIMEOUT = 15

# Channel initialization (pairing included)
INIT_TIMEOUT = 180

# Periodic connectivity verification interval
VERIFY_INTERVAL = 30

# Pause between tearing down and restarting the channel client
RECOVERY_DELAY = 5


# =============================================================================
# Messages
# =============================================================================

# Maximum itemized notifications per batched message
MAX_ITEMS_PER_MESSAGE = 30

# Summary characters shown per itemized notification
SUMMARY_PREVIEW_LENGTH = 50

# Display timezone for message timestamps
DEFAULT_TIMEZONE = "America/Lima"

# Default country prefix for 9-digit mobile numbers
DEFAULT_COUNTRY_CODE = "51"

# Chat address suffix for individual contacts
CHAT_ADDRESS_SUFFIX = "@c.us"


# =============================================================================
# Session Storage
# =============================================================================

# S3 prefix for session archives
SESSION_PREFIX = "sessions"

# Default local directory for channel session material
DEFAULT_SESSION_DIR = "/tmp/tokens"

# Archives older than this are removed by cleanup (days)
SESSION_MAX_AGE_DAYS = 30
