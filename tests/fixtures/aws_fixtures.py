"""Moto-backed AWS fixtures for the S3 artifact store and SQS notifications."""
import boto3
import pytest
from moto import mock_aws

from tests.consts import TEST_BUCKET_NAME, TEST_QUEUE_NAME


@pytest.fixture
def mocked_aws(monkeypatch):
    """Mock S3 and SQS with an artifact bucket and an event queue already created."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
    monkeypatch.delenv("AWS_PROFILE", raising=False)

    with mock_aws():
        s3_client = boto3.client("s3", region_name="us-east-1")
        s3_client.create_bucket(Bucket=TEST_BUCKET_NAME)

        sqs_client = boto3.client("sqs", region_name="us-east-1")
        sqs_client.create_queue(QueueName=TEST_QUEUE_NAME)

        yield


@pytest.fixture
def queue_url(mocked_aws) -> str:
    sqs_client = boto3.client("sqs", region_name="us-east-1")
    return sqs_client.get_queue_url(QueueName=TEST_QUEUE_NAME)["QueueUrl"]
