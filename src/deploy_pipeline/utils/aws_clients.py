"""AWS client management for the S3 artifact store and SQS notifications."""
import os
import boto3
import logging
from functools import lru_cache
from typing import Dict, Optional, Any

from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)


class AWSClientManager:
    """Creates and caches boto3 clients configured from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self.mode = self.settings.deployment_mode
        self._clients: Dict[str, Any] = {}

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        client_kwargs = {
            'region_name': self.region
        }

        # Check for AWS profile in environment (for SSO)
        aws_profile = os.environ.get('AWS_PROFILE')
        if aws_profile and self.mode == 'aws-prod':
            session = boto3.Session(profile_name=aws_profile)
            client = session.client(service_name, region_name=self.region)
            self._clients[service_name] = client
            logger.debug(f"Created {service_name} client using profile: {aws_profile}")
            return client

        # Endpoint override only applies to local/mock modes
        if self.endpoint_url and self.mode in ['local-dev', 'aws-mock']:
            client_kwargs['endpoint_url'] = self.endpoint_url

        client = boto3.client(service_name, **client_kwargs)
        self._clients[service_name] = client
        logger.debug(f"Created {service_name} client")
        return client


@lru_cache()
def get_client_manager() -> AWSClientManager:
    """Process-wide client manager bound to the cached settings."""
    return AWSClientManager(get_settings())


def _manager_for(settings: Optional[Settings]) -> AWSClientManager:
    if settings is None or settings is get_settings():
        return get_client_manager()
    return AWSClientManager(settings)


def get_s3_client(settings: Optional[Settings] = None):
    """Get an S3 client."""
    return _manager_for(settings).get_client('s3')


def get_sqs_client(settings: Optional[Settings] = None):
    """Get an SQS client."""
    return _manager_for(settings).get_client('sqs')
