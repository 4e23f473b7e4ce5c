"""Operator configuration loaded from environment variables."""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OperatorSettings(BaseSettings):
    """
    Runtime settings for the MongoDB operator.

    Every field can be overridden with an environment variable prefixed
    with ``MONGO_OPERATOR_`` (e.g. ``MONGO_OPERATOR_LOG_LEVEL=DEBUG``).
    """

    model_config = SettingsConfigDict(env_prefix="MONGO_OPERATOR_", extra="ignore")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log record format",
    )

    # Watch scope
    clusterwide: bool = Field(default=True, description="Watch all namespaces")
    namespace: Optional[str] = Field(
        default=None, description="Namespace to watch when not clusterwide"
    )

    # Endpoints
    metrics_port: int = Field(default=9090, ge=0, le=65535, description="Prometheus port")
    liveness_endpoint: str = Field(
        default="http://0.0.0.0:8080/healthz", description="kopf liveness endpoint"
    )

    # Remote call bounds
    probe_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Timeout for a single admin command"
    )
    agent_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for a single backup-agent call"
    )
    agent_start_grace_seconds: int = Field(
        default=600, ge=0, description="Time an agent may take to start streaming"
    )

    # Rollout
    verify_max_passes: int = Field(
        default=20, ge=1, description="Passes a member may stay in verification"
    )
    restore_verify_max_passes: int = Field(
        default=30, ge=1, description="Passes a restore may stay in verification"
    )

    # Requeue policy
    requeue_active_seconds: float = Field(
        default=10.0, gt=0, description="Requeue delay while work is in progress"
    )
    resync_interval_seconds: float = Field(
        default=60.0, gt=0, description="Periodic re-evaluation interval"
    )
    requeue_base_seconds: float = Field(
        default=5.0, gt=0, description="Base delay for transient failure backoff"
    )
    requeue_max_seconds: float = Field(
        default=300.0, gt=0, description="Upper bound for transient failure backoff"
    )
    transient_retry_budget: int = Field(
        default=8, ge=1, description="Consecutive transient failures before Error"
    )

    # Backup agent
    agent_image: str = Field(
        default="percona/percona-backup-mongodb:2.5.0",
        description="Default backup agent image",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()


@lru_cache(maxsize=1)
def get_settings() -> OperatorSettings:
    """Return the process-wide settings instance."""
    return OperatorSettings()
