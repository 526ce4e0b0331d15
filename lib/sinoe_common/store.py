"""
DynamoDB record store for notification records.

One item per (case_id, notification_id). Writes that touch the delivery
ledger are conditional on the stored version (optimistic locking); all
reads are plain gets and paginated scans.
"""

import logging
from typing import Any

import boto3
from boto3.dynamodb.conditions import Attr, ConditionBase
from botocore.exceptions import ClientError

from sinoe_common.exceptions import DeliveryConflictError, StoreUnavailableError
from sinoe_common.models import NotificationRecord, NotificationStatus

logger = logging.getLogger(__name__)

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class NotificationStore:
    """Record store backed by a DynamoDB table keyed by case_id + notification_id."""

    def __init__(self, table_name: str, region_name: str | None = None, dynamodb=None):
        """
        Initialize the record store.

        Args:
            table_name: Name of the notifications DynamoDB table
            region_name: Optional AWS region name
            dynamodb: Optional pre-built boto3 DynamoDB resource
        """
        self.dynamodb = dynamodb or boto3.resource("dynamodb", region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        self.table_name = table_name
        self.region_name = region_name
        self.initialized = False

    def check_connection(self) -> dict[str, Any]:
        """
        Describe the table to verify connectivity.

        Returns:
            The DescribeTable "Table" section

        Raises:
            StoreUnavailableError: If the table cannot be described
        """
        try:
            response = self.dynamodb.meta.client.describe_table(TableName=self.table_name)
        except ClientError as e:
            self.initialized = False
            logger.error(f"DynamoDB connection failed for {self.table_name}: {_error_code(e)}")
            raise StoreUnavailableError(f"Cannot reach table {self.table_name}: {e}") from e

        self.initialized = True
        logger.debug(f"DynamoDB connection test successful: {self.table_name}")
        return response["Table"]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(
        self,
        case_id: str,
        notification_id: str,
        attributes: list[str] | None = None,
    ) -> dict[str, Any] | None:
        """
        Get a raw item by natural key.

        Args:
            case_id: Case file number
            notification_id: Notification number
            attributes: Optional projection (attribute names)

        Returns:
            Item dictionary or None if absent
        """
        params: dict[str, Any] = {
            "Key": {"case_id": case_id, "notification_id": notification_id},
            "ConsistentRead": True,
        }
        if attributes:
            names = {f"#a{i}": name for i, name in enumerate(attributes)}
            params["ProjectionExpression"] = ", ".join(names)
            params["ExpressionAttributeNames"] = names

        try:
            response = self.table.get_item(**params)
        except ClientError as e:
            logger.error(f"Failed to get {case_id}/{notification_id}: {_error_code(e)}")
            raise StoreUnavailableError(str(e)) from e
        return response.get("Item")

    def get_record(self, case_id: str, notification_id: str) -> NotificationRecord | None:
        """Get a full NotificationRecord, or None if absent."""
        item = self.get(case_id, notification_id)
        return NotificationRecord.from_dict(item) if item else None

    def scan(
        self,
        filter_expression: ConditionBase | None = None,
        projection: list[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Scan the table following pagination.

        Args:
            filter_expression: Optional boto3 condition (e.g. Attr("status").eq("open"))
            projection: Optional attribute names to return
            limit: Optional maximum number of matching items

        Returns:
            List of items
        """
        params: dict[str, Any] = {}
        if filter_expression is not None:
            params["FilterExpression"] = filter_expression
        if projection:
            names = {f"#p{i}": name for i, name in enumerate(projection)}
            params["ProjectionExpression"] = ", ".join(names)
            params["ExpressionAttributeNames"] = names

        items: list[dict[str, Any]] = []
        try:
            while True:
                response = self.table.scan(**params)
                items.extend(response.get("Items", []))
                if limit is not None and len(items) >= limit:
                    return items[:limit]
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                params["ExclusiveStartKey"] = last_key
        except ClientError as e:
            logger.error(f"Failed to scan {self.table_name}: {_error_code(e)}")
            raise StoreUnavailableError(str(e)) from e

        return items

    def scan_pending_on(self, day: str) -> list[NotificationRecord]:
        """Records first seen, or whose content changed, on the given day (YYYY-MM-DD)."""
        items = self.scan(Attr("created_date").eq(day) | Attr("changed_date").eq(day))
        return [NotificationRecord.from_dict(item) for item in items]

    def scan_open(self, limit: int | None = None) -> list[NotificationRecord]:
        """Records whose portal status is open."""
        items = self.scan(Attr("status").eq(NotificationStatus.OPEN.value), limit=limit)
        return [NotificationRecord.from_dict(item) for item in items]

    def query_by_case(self, case_id: str, limit: int = 50) -> list[NotificationRecord]:
        """
        Notifications of one case, most recent notification number first.

        Args:
            case_id: Case file number
            limit: Maximum number of records

        Returns:
            List of NotificationRecord
        """
        try:
            response = self.table.query(
                KeyConditionExpression="case_id = :cid",
                ExpressionAttributeValues={":cid": case_id},
                Limit=limit,
                ScanIndexForward=False,
            )
        except ClientError as e:
            logger.error(f"Failed to query case {case_id}: {_error_code(e)}")
            raise StoreUnavailableError(str(e)) from e
        return [NotificationRecord.from_dict(item) for item in response.get("Items", [])]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put_conditional(self, record: NotificationRecord, expected_version: int | None) -> bool:
        """
        Write a full record if the stored version still matches.

        Args:
            record: Record to write
            expected_version: Stored version the write is based on; None when
                the record must not exist yet

        Returns:
            True on success, False on a version conflict

        Raises:
            StoreUnavailableError: On any other DynamoDB error
        """
        if expected_version is None:
            condition = "attribute_not_exists(case_id)"
            values = None
        else:
            condition = "attribute_not_exists(#v) OR #v = :expected"
            values = {":expected": expected_version}

        params: dict[str, Any] = {"Item": record.to_dict(), "ConditionExpression": condition}
        if values:
            params["ExpressionAttributeNames"] = {"#v": "version"}
            params["ExpressionAttributeValues"] = values

        try:
            self.table.put_item(**params)
        except ClientError as e:
            if _error_code(e) == CONDITIONAL_CHECK_FAILED:
                logger.debug(
                    f"Conditional put rejected for {record.case_id}/{record.notification_id} "
                    f"(expected version {expected_version})"
                )
                return False
            logger.error(
                f"Failed to put {record.case_id}/{record.notification_id}: {_error_code(e)}"
            )
            raise StoreUnavailableError(str(e)) from e
        return True

    def update_deliveries(
        self,
        case_id: str,
        notification_id: str,
        deliveries: list[dict[str, Any]],
        expected_version: int,
        timestamp: str,
    ) -> int:
        """
        Replace the delivery ledger and bump the version, conditionally.

        The write succeeds only if the item exists and its version equals
        expected_version (or the version attribute was never written).

        Args:
            case_id: Case file number
            notification_id: Notification number
            deliveries: Full new ledger (list of DeliveryAttempt dicts)
            expected_version: Version read before computing the ledger
            timestamp: last_updated_at value

        Returns:
            The new stored version

        Raises:
            DeliveryConflictError: If a concurrent writer changed the version
            StoreUnavailableError: On any other DynamoDB error
        """
        try:
            response = self.table.update_item(
                Key={"case_id": case_id, "notification_id": notification_id},
                UpdateExpression="SET #d = :deliveries, #v = if_not_exists(#v, :zero) + :one, #u = :ts",
                ConditionExpression="attribute_exists(case_id) AND (attribute_not_exists(#v) OR #v = :prev)",
                ExpressionAttributeNames={
                    "#d": "deliveries",
                    "#v": "version",
                    "#u": "last_updated_at",
                },
                ExpressionAttributeValues={
                    ":deliveries": deliveries,
                    ":prev": expected_version,
                    ":zero": 0,
                    ":one": 1,
                    ":ts": timestamp,
                },
                ReturnValues="UPDATED_NEW",
            )
        except ClientError as e:
            if _error_code(e) == CONDITIONAL_CHECK_FAILED:
                raise DeliveryConflictError(case_id, notification_id, expected_version) from e
            logger.error(f"Failed to update deliveries for {case_id}/{notification_id}: {_error_code(e)}")
            raise StoreUnavailableError(str(e)) from e

        return int(response.get("Attributes", {}).get("version", expected_version + 1))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_stats(self, today: str) -> dict[str, Any]:
        """
        Counters for the status surface.

        Args:
            today: Day bucket (YYYY-MM-DD) for the "today" counter

        Returns:
            Dictionary with enabled flag, table status and counts; on failure
            enabled is False and the error is reported instead of raised
        """
        try:
            table_info = self.check_connection()
            key_projection = ["case_id", "notification_id"]
            open_count = len(
                self.scan(Attr("status").eq(NotificationStatus.OPEN.value), projection=key_projection)
            )
            today_count = len(self.scan(Attr("created_date").eq(today), projection=key_projection))
        except StoreUnavailableError as e:
            return {
                "enabled": False,
                "error": str(e),
                "total_records": 0,
                "open_count": 0,
                "today_count": 0,
            }

        return {
            "enabled": True,
            "table_name": self.table_name,
            "table_status": table_info.get("TableStatus"),
            "total_records": int(table_info.get("ItemCount", 0)),
            "table_size_bytes": int(table_info.get("TableSizeBytes", 0)),
            "open_count": open_count,
            "today_count": today_count,
        }

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": True,
            "initialized": self.initialized,
            "table_name": self.table_name,
            "region": self.region_name,
        }
