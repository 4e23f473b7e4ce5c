"""MongoBackup Custom Resource Definition models and backup records."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class BackupType(str, Enum):
    """Kind of data a backup record holds."""

    FULL = "full"
    INCREMENTAL = "incremental"
    PITR_CHUNK = "pitr-chunk"


class BackupState(str, Enum):
    """Lifecycle of a backup record."""

    REQUESTED = "requested"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BackupState.COMPLETED, BackupState.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (BackupState.STARTING, BackupState.RUNNING)


class MongoBackupSpec(BaseModel):
    """
    MongoBackup Custom Resource Specification.

    An on-demand backup request. The resource name is the request identity.
    """

    cluster_name: str = Field(description="Name of the MongoCluster to back up")
    storage_name: str = Field(description="Storage destination declared on the cluster")
    type: BackupType = Field(default=BackupType.FULL, description="full or incremental")


class BackupRecord(BaseModel):
    """
    One entry of the backup catalog.

    Created when a backup is requested and mutated only by the backup
    orchestrator as the agent reports progress.
    """

    name: str = Field(description="Request identity")
    cluster: str = Field(description="Owning cluster")
    storage_name: str = Field(description="Destination storage name")
    type: BackupType = Field(default=BackupType.FULL)
    state: BackupState = Field(default=BackupState.REQUESTED)
    requested_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_write: Optional[datetime] = Field(
        default=None, description="Consistent point in time the backup restores to"
    )
    chunk_start: Optional[datetime] = Field(default=None, description="PITR chunk range start")
    chunk_end: Optional[datetime] = Field(default=None, description="PITR chunk range end")
    member: Optional[str] = Field(default=None, description="Member the agent reads from")
    agent: Optional[str] = Field(default=None, description="Agent process name")
    task: Optional[str] = Field(default=None, description="Schedule that requested it")
    error: Optional[str] = None

    @property
    def is_base(self) -> bool:
        """Full backups are the only valid PITR base."""
        return self.type == BackupType.FULL

    def to_status(self) -> dict[str, Any]:
        """Read-only projection published on the MongoBackup resource."""
        projection = {
            "state": self.state.value,
            "type": self.type.value,
            "storageName": self.storage_name,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "lastWrite": self.last_write.isoformat() if self.last_write else None,
            "error": self.error,
        }
        return {k: v for k, v in projection.items() if v is not None}


class BackupCatalog(BaseModel):
    """Persisted set of backup records for one cluster."""

    records: list[BackupRecord] = Field(default_factory=list)
    resource_version: Optional[str] = Field(default=None, exclude=True)

    def get(self, name: str) -> Optional[BackupRecord]:
        for record in self.records:
            if record.name == name:
                return record
        return None

    def put(self, record: BackupRecord) -> None:
        """Insert or replace a record by name."""
        self.records = [r for r in self.records if r.name != record.name]
        self.records.append(record)
        self.records.sort(key=lambda r: (r.requested_at or EPOCH, r.name))

    def remove(self, name: str) -> Optional[BackupRecord]:
        record = self.get(name)
        if record is not None:
            self.records = [r for r in self.records if r.name != name]
        return record
