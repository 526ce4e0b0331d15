"""Global pytest configuration for all tests."""

import os

import boto3
import pytest
from moto import mock_aws

from sinoe_common.store import NotificationStore
from tests.fixtures.notification_samples import TABLE_NAME, create_notifications_table


def pytest_configure(config):
    """Set environment variables before any test collection or execution."""
    os.environ.setdefault("AWS_REGION", "us-east-1")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
    os.environ.setdefault("AWS_SESSION_TOKEN", "testing")


@pytest.fixture
def dynamodb():
    """Mocked DynamoDB resource with the notifications table created."""
    with mock_aws():
        resource = boto3.resource("dynamodb", region_name="us-east-1")
        create_notifications_table(resource)
        yield resource


@pytest.fixture
def store(dynamodb):
    return NotificationStore(TABLE_NAME, region_name="us-east-1", dynamodb=dynamodb)
