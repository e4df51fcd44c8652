# src/deploy_pipeline/settings.py
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """
    Single source of truth for all orchestrator settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from deploy_pipeline.settings import get_settings
        settings = get_settings()
        store_dir = settings.artifact_dir
    """

    # Application Settings
    app_name: str = Field(
        default="deploy-pipeline",
        description="Application name"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="local-dev",
        description="Deployment mode: local-dev, aws-mock, or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    # Artifact Store
    artifact_backend: str = Field(
        default="local",
        description="Artifact store backend: local or s3"
    )

    artifact_dir: str = Field(
        default="artifacts",
        description="Root directory of the local artifact store"
    )

    artifact_bucket: str = Field(
        default="deploy-pipeline-artifacts",
        description="S3 bucket for build artifacts"
    )

    # Run state and logs
    state_dir: str = Field(
        default=".pipeline_state",
        description="Directory holding persisted pipeline runs"
    )

    log_dir: str = Field(
        default="pipeline_logs",
        description="Directory receiving per-stage log files"
    )

    # Stage execution
    retry_backoff_seconds: float = Field(
        default=1.0,
        description="Initial delay between stage attempts (doubles each retry)"
    )

    # Rollout
    traffic_step_percent: int = Field(
        default=25,
        description="Traffic percentage moved to the new revision per step"
    )

    traffic_step_interval: float = Field(
        default=10.0,
        description="Seconds to wait between traffic steps"
    )

    healthy_threshold: int = Field(
        default=3,
        description="Consecutive healthy polls required to pass verification"
    )

    health_poll_interval: float = Field(
        default=5.0,
        description="Seconds between health polls"
    )

    verify_timeout: float = Field(
        default=120.0,
        description="Overall verification timeout before forcing rollback"
    )

    rollback_max_attempts: int = Field(
        default=3,
        description="Attempts per backend call while restoring a rolled-back target"
    )

    rollback_backoff_seconds: float = Field(
        default=1.0,
        description="Initial delay between rollback attempts (doubles each retry)"
    )

    health_request_timeout: float = Field(
        default=5.0,
        description="Timeout of a single health probe request"
    )

    # Notifications
    notify_max_attempts: int = Field(
        default=5,
        description="Delivery attempts per subscriber before giving up"
    )

    notify_backoff_seconds: float = Field(
        default=0.5,
        description="Initial notification retry delay (doubles each retry)"
    )

    notify_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving terminal run events"
    )

    notify_sqs_queue_url: Optional[str] = Field(
        default=None,
        description="SQS queue receiving terminal run events"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('deployment_mode', mode='before')
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Normalize deployment mode values."""
        if v:
            mode_mapping = {
                "local": "local-dev",
                "cloud": "aws-prod",
            }
            return mode_mapping.get(v, v)
        return v

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        valid_modes = ["local-dev", "aws-mock", "aws-prod"]
        if v not in valid_modes:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {valid_modes}")
        return v

    @field_validator('artifact_backend')
    @classmethod
    def validate_artifact_backend(cls, v):
        valid_backends = ["local", "s3"]
        if v not in valid_backends:
            raise ValueError(f"Invalid artifact_backend: {v}. Must be one of {valid_backends}")
        return v

    @field_validator('traffic_step_percent')
    @classmethod
    def validate_traffic_step(cls, v):
        if not 1 <= v <= 100:
            raise ValueError("traffic_step_percent must be between 1 and 100")
        return v

    @field_validator('healthy_threshold', 'notify_max_attempts', 'rollback_max_attempts')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_prefix="PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
