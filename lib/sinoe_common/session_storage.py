"""
S3 archive storage for channel session material.

A session directory is packed as a tar.gz archive and uploaded under
``sessions/<name>/<name>-<millis>.tar.gz``. Downloads restore the most
recent archive for a session name. Every failure is logged and reported
as a False return; losing the archive only costs a re-pairing.
"""

import io
import logging
import os
import tarfile
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sinoe_common.constants import SESSION_MAX_AGE_DAYS, SESSION_PREFIX

logger = logging.getLogger(__name__)


class SessionStorage:
    """Blob store for session archives, keyed by a stable session name."""

    def __init__(self, bucket: str, enabled: bool = True, region_name: str | None = None, s3_client=None):
        self.bucket = bucket
        self.enabled = enabled and bool(bucket)
        self.region_name = region_name
        self.s3 = s3_client or (boto3.client("s3", region_name=region_name) if self.enabled else None)
        self.initialized = False

    def initialize(self) -> bool:
        """Verify the bucket is reachable. Returns False when disabled or unreachable."""
        if not self.enabled:
            logger.info("S3 session storage is disabled")
            return False

        try:
            self.s3.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("404", "NotFound", "NoSuchBucket"):
                logger.error(f"Session bucket {self.bucket} not found")
            elif code in ("403", "Forbidden", "AccessDenied"):
                logger.error(f"Access denied to session bucket {self.bucket}")
            else:
                logger.error(f"Failed to initialize session storage: {e}")
            return False

        self.initialized = True
        logger.info(f"Session bucket {self.bucket} connection verified")
        return True

    def upload(self, name: str, local_dir: str) -> bool:
        """
        Archive a local session directory and upload it.

        Args:
            name: Stable session name
            local_dir: Session directory to archive

        Returns:
            True if the archive was uploaded
        """
        if not self.enabled:
            logger.debug("Session storage not enabled, skipping upload")
            return False

        if not os.path.isdir(local_dir):
            logger.warning(f"Session directory not found: {local_dir}")
            return False

        archive_name = f"{name}-{int(time.time() * 1000)}.tar.gz"
        key = f"{SESSION_PREFIX}/{name}/{archive_name}"

        try:
            buffer = io.BytesIO()
            with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
                tar.add(local_dir, arcname=os.path.basename(os.path.normpath(local_dir)))

            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=buffer.getvalue(),
                ContentType="application/gzip",
                Metadata={
                    "session-name": name,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
        except (ClientError, BotoCoreError, OSError, tarfile.TarError) as e:
            logger.error(f"Failed to upload session {name}: {e}")
            return False

        logger.info(f"Session uploaded to s3://{self.bucket}/{key}")
        return True

    def download(self, name: str, local_dir: str) -> bool:
        """
        Restore the latest archive of a session into its local directory.

        The archive holds a single top-level directory named after the
        original session directory; it is extracted next to local_dir.

        Args:
            name: Stable session name
            local_dir: Target session directory

        Returns:
            True if an archive was restored, False if absent or on error
        """
        if not self.enabled:
            logger.debug("Session storage not enabled, skipping download")
            return False

        try:
            objects = self._list_objects(f"{SESSION_PREFIX}/{name}/")
            if not objects:
                logger.info(f"No stored session found for {name}")
                return False

            latest = max(objects, key=lambda o: (o["LastModified"], o["Key"]))
            logger.info(f"Downloading session archive {latest['Key']}")

            response = self.s3.get_object(Bucket=self.bucket, Key=latest["Key"])
            data = response["Body"].read()

            extract_dir = os.path.dirname(os.path.normpath(local_dir)) or "."
            os.makedirs(extract_dir, exist_ok=True)
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                tar.extractall(extract_dir, filter="data")
        except (ClientError, BotoCoreError, OSError, tarfile.TarError) as e:
            logger.error(f"Failed to download session {name}: {e}")
            return False

        logger.info(f"Session restored to {local_dir}")
        return True

    def list_sessions(self) -> list[dict[str, Any]]:
        """
        Group stored archives by session name.

        Returns:
            List of {name, files, last_modified, total_size}
        """
        if not self.enabled:
            return []

        try:
            objects = self._list_objects(f"{SESSION_PREFIX}/")
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list sessions: {e}")
            return []

        sessions: dict[str, dict[str, Any]] = {}
        for obj in objects:
            parts = obj["Key"].split("/")
            if len(parts) < 3:
                continue
            session = sessions.setdefault(
                parts[1],
                {"name": parts[1], "files": [], "last_modified": obj["LastModified"], "total_size": 0},
            )
            session["files"].append(
                {"key": obj["Key"], "size": obj["Size"], "last_modified": obj["LastModified"]}
            )
            session["total_size"] += obj["Size"]
            if obj["LastModified"] > session["last_modified"]:
                session["last_modified"] = obj["LastModified"]

        return list(sessions.values())

    def delete_session(self, name: str) -> bool:
        """Delete every archive stored for a session name."""
        if not self.enabled:
            return False

        try:
            objects = self._list_objects(f"{SESSION_PREFIX}/{name}/")
            if not objects:
                logger.info(f"No stored session to delete for {name}")
                return True

            # DeleteObjects accepts at most 1000 keys per call
            for start in range(0, len(objects), 1000):
                chunk = objects[start : start + 1000]
                self.s3.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": o["Key"]} for o in chunk]},
                )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to delete session {name}: {e}")
            return False

        logger.info(f"Deleted {len(objects)} archives for session {name}")
        return True

    def cleanup_old_sessions(
        self, max_age_days: int = SESSION_MAX_AGE_DAYS, now: datetime | None = None
    ) -> int:
        """
        Delete sessions whose newest archive is older than max_age_days.

        Returns:
            Number of sessions deleted
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(days=max_age_days)
        cleaned = 0
        for session in self.list_sessions():
            if session["last_modified"] < cutoff:
                logger.info(f"Cleaning up old session {session['name']} ({session['last_modified']})")
                if self.delete_session(session["name"]):
                    cleaned += 1

        logger.info(f"Cleaned up {cleaned} old sessions")
        return cleaned

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "bucket": self.bucket,
            "region": self.region_name,
            "initialized": self.initialized,
        }

    def _list_objects(self, prefix: str) -> list[dict[str, Any]]:
        paginator = self.s3.get_paginator("list_objects_v2")
        objects: list[dict[str, Any]] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            objects.extend(page.get("Contents", []))
        return objects
