"""
Storage utilities for S3 operations.

Provides a small, consistent interface for reading scraper output from S3.
"""

import json
import logging

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# Lazy-loaded AWS clients (initialized on first use)
_s3_client = None


def get_s3_client():
    """Get or create S3 client."""
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client("s3")
    return _s3_client


def parse_s3_uri(s3_uri: str) -> tuple[str, str]:
    """
    Parse S3 URI into bucket and key.

    Args:
        s3_uri: S3 URI like "s3://bucket-name/runs/2025-01-15.json"

    Returns:
        Tuple of (bucket, key)

    Raises:
        ValueError: If the URI does not use the s3:// scheme or has no key
    """
    if not s3_uri.startswith("s3://"):
        raise ValueError(f"Invalid S3 URI: {s3_uri}")

    parts = s3_uri[5:].split("/", 1)
    bucket = parts[0]
    key = parts[1] if len(parts) > 1 else ""
    if not bucket or not key:
        raise ValueError(f"Invalid S3 URI: {s3_uri}")
    return bucket, key


def read_s3_json(s3_uri: str, s3_client=None):
    """
    Read a JSON document from S3.

    Args:
        s3_uri: S3 URI of the JSON object
        s3_client: Optional boto3 S3 client (defaults to the shared client)

    Returns:
        Decoded JSON value
    """
    bucket, key = parse_s3_uri(s3_uri)
    client = s3_client or get_s3_client()
    try:
        response = client.get_object(Bucket=bucket, Key=key)
    except ClientError as e:
        logger.error(f"Failed to read S3 JSON from {s3_uri}: {e}")
        raise
    return json.loads(response["Body"].read().decode("utf-8"))
