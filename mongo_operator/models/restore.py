"""MongoRestore Custom Resource Definition models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from mongo_operator.models.conditions import set_condition


class RestorePhase(str, Enum):
    """Lifecycle of a restore request."""

    REQUESTED = "requested"
    PREPARING = "preparing"
    RESTORING = "restoring"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RestorePhase.READY, RestorePhase.FAILED)


class PITRTarget(BaseModel):
    """Point in time to restore to."""

    date: datetime = Field(description="Target timestamp (UTC)")

    @field_validator("date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Timestamps without an offset are UTC."""
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)


class MongoRestoreSpec(BaseModel):
    """
    MongoRestore Custom Resource Specification.

    Either names a completed backup to restore, or a storage plus a PITR
    target from which the base backup is chosen automatically.
    """

    cluster_name: str = Field(description="Name of the MongoCluster to restore")
    backup_name: Optional[str] = Field(default=None, description="Backup record to restore")
    storage_name: Optional[str] = Field(
        default=None, description="Storage to pick the base backup from (PITR)"
    )
    pitr: Optional[PITRTarget] = Field(default=None, description="Point-in-time target")

    @model_validator(mode="after")
    def validate_source(self) -> "MongoRestoreSpec":
        """A restore needs a backup name or a PITR target with a storage."""
        if self.pitr is None and not self.backup_name:
            raise ValueError("backup_name is required unless pitr is set")
        if self.pitr is not None and not (self.storage_name or self.backup_name):
            raise ValueError("storage_name or backup_name is required for pitr restores")
        return self


class RestoreRecord(BaseModel):
    """
    Persisted state of a restore, stored as the MongoRestore status.
    """

    name: str
    cluster: str
    phase: RestorePhase = Field(default=RestorePhase.REQUESTED)
    base_backup: Optional[str] = None
    increments: list[str] = Field(default_factory=list)
    target_time: Optional[datetime] = None
    replsets: list[str] = Field(default_factory=list)
    agents: dict[str, str] = Field(
        default_factory=dict, description="replset name -> restore agent name"
    )
    isolated: bool = Field(default=False, description="Rollout paused for this restore")
    verify_passes: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    resource_version: Optional[str] = Field(default=None, exclude=True)

    def add_condition(
        self,
        type_: str,
        status: str,
        reason: str,
        message: str,
        last_transition_time: Optional[str] = None,
    ) -> None:
        """Add or update a status condition."""
        self.conditions = set_condition(
            self.conditions, type_, status, reason, message, last_transition_time
        )
