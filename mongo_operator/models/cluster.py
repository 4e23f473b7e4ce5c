"""MongoCluster Custom Resource Definition models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from mongo_operator.models.backup import BackupType
from mongo_operator.models.conditions import set_condition
from mongo_operator.utils.storage import StorageDestination

DEFAULT_IMAGE = "percona/percona-server-mongodb:7.0.14"


class UpdateStrategy(str, Enum):
    """How image/config drift is rolled out to members."""

    MANUAL = "manual"
    ROLLING = "rolling"
    SMART = "smart"


class ReplicaSetSpec(BaseModel):
    """A replica set: a group of members holding the same data."""

    name: str = Field(description="Replica set name, unique within the cluster")
    size: int = Field(default=3, ge=1, description="Number of members")
    storage: str = Field(default="10Gi", description="Storage request per member")
    image: Optional[str] = Field(default=None, description="Overrides the cluster image")
    configuration: dict[str, Any] = Field(
        default_factory=dict, description="mongod configuration overrides"
    )


class RouterSpec(BaseModel):
    """Stateless query routers (mongos)."""

    size: int = Field(default=2, ge=0, description="Number of routers")
    image: Optional[str] = Field(default=None, description="Overrides the cluster image")
    configuration: dict[str, Any] = Field(
        default_factory=dict, description="mongos configuration overrides"
    )


class ShardingSpec(BaseModel):
    """Sharded topology. When enabled every entry of ``replsets`` is a shard."""

    enabled: bool = Field(default=False, description="Enable sharding")
    config_server: ReplicaSetSpec = Field(
        default_factory=lambda: ReplicaSetSpec(name="cfg"),
        description="Config server replica set",
    )
    routers: RouterSpec = Field(default_factory=RouterSpec, description="Router tier")


class BackupTask(BaseModel):
    """A scheduled backup."""

    name: str = Field(description="Task name")
    schedule: str = Field(description="Cron schedule (e.g. '0 2 * * *')")
    storage_name: str = Field(description="Storage destination name")
    type: BackupType = Field(default=BackupType.FULL, description="full or incremental")
    keep: Optional[int] = Field(default=None, ge=1, description="Completed backups to keep")
    enabled: bool = Field(default=True, description="Enable this task")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: BackupType) -> BackupType:
        """PITR chunks are produced by the PITR agent, never scheduled."""
        if v == BackupType.PITR_CHUNK:
            raise ValueError("type must be full or incremental")
        return v


class PITRSpec(BaseModel):
    """Continuous oplog capture for point-in-time recovery."""

    enabled: bool = Field(default=False, description="Enable PITR")
    storage_name: Optional[str] = Field(default=None, description="Storage for oplog chunks")
    oplog_span_minutes: int = Field(default=10, ge=1, description="Chunk length in minutes")


class BackupSpec(BaseModel):
    """Backup configuration of a cluster."""

    enabled: bool = Field(default=True, description="Enable backups")
    image: Optional[str] = Field(default=None, description="Backup agent image")
    storages: dict[str, StorageDestination] = Field(
        default_factory=dict, description="Named storage destinations"
    )
    tasks: list[BackupTask] = Field(default_factory=list, description="Scheduled backups")
    pitr: PITRSpec = Field(default_factory=PITRSpec, description="Point-in-time recovery")
    retention_days: Optional[int] = Field(default=None, ge=1, description="Days to retain")
    max_backups: Optional[int] = Field(default=None, ge=1, description="Backups to retain")
    delete_metadata_on_finalize: bool = Field(
        default=False, description="Drop the backup catalog when the cluster is deleted"
    )


class CredentialPolicy(BaseModel):
    """System users whose passwords the operator manages."""

    secret_name: str = Field(description="Secret holding the user passwords")
    users: list[str] = Field(
        default_factory=lambda: ["clusterAdmin", "userAdmin", "backup", "clusterMonitor"],
        description="Managed users",
    )
    generation: int = Field(
        default=0, ge=0, description="Bump to rotate every managed user's password"
    )
    restart_targets: list[str] = Field(
        default_factory=list,
        description="Replica sets (or 'routers') whose processes cache credentials",
    )


class ClusterSpec(BaseModel):
    """
    MongoCluster Custom Resource Specification.

    Immutable for the duration of a reconcile pass.
    """

    image: str = Field(default=DEFAULT_IMAGE, description="Database image")
    image_pull_policy: str = Field(default="IfNotPresent", description="Image pull policy")
    replsets: list[ReplicaSetSpec] = Field(
        default_factory=lambda: [ReplicaSetSpec(name="rs0")],
        description="Replica sets (shards when sharding is enabled)",
    )
    sharding: ShardingSpec = Field(default_factory=ShardingSpec, description="Sharding")
    backup: Optional[BackupSpec] = Field(default=None, description="Backups")
    credentials: Optional[CredentialPolicy] = Field(default=None, description="Credentials")
    update_strategy: UpdateStrategy = Field(
        default=UpdateStrategy.SMART, description="manual, rolling or smart"
    )
    pause: bool = Field(default=False, description="Stop reconciling members")

    @field_validator("image_pull_policy")
    @classmethod
    def validate_image_pull_policy(cls, v: str) -> str:
        """Validate image pull policy."""
        allowed = ["Always", "Never", "IfNotPresent"]
        if v not in allowed:
            raise ValueError(f"image_pull_policy must be one of {allowed}")
        return v

    def all_replsets(self) -> list[ReplicaSetSpec]:
        """Every replica set, config servers first."""
        if self.sharding.enabled:
            return [self.sharding.config_server, *self.replsets]
        return list(self.replsets)

    def replset(self, name: str) -> Optional[ReplicaSetSpec]:
        for rs in self.all_replsets():
            if rs.name == name:
                return rs
        return None

    def image_for(self, rs: ReplicaSetSpec) -> str:
        return rs.image or self.image


class ClusterPhase(str, Enum):
    """Overall cluster phase."""

    INITIALIZING = "Initializing"
    READY = "Ready"
    ERROR = "Error"
    STOPPING = "Stopping"


class RolloutPhase(str, Enum):
    """Per replica set rollout state."""

    STABLE = "stable"
    PLANNING = "planning"
    MUTATING = "mutating"
    VERIFYING = "verifying"
    ERROR = "error"


class RolloutState(BaseModel):
    """Resumable rollout state, persisted in status between passes."""

    phase: RolloutPhase = Field(default=RolloutPhase.STABLE)
    action: Optional[str] = Field(default=None, description="create, delete, update, restart")
    member: Optional[str] = Field(default=None, description="Member being mutated")
    step: int = Field(default=0, description="Sub-step of a multi-step action")
    verify_passes: int = Field(default=0, description="Passes spent verifying")
    paused: bool = Field(default=False, description="Isolated by a restore")
    error_generation: Optional[int] = Field(
        default=None, description="Spec generation the error was raised against"
    )
    reason: Optional[str] = None
    message: Optional[str] = None

    @property
    def in_flight(self) -> bool:
        return self.phase in (RolloutPhase.MUTATING, RolloutPhase.VERIFYING)


class CredentialPhase(str, Enum):
    """Credential rotation steps."""

    IDLE = "idle"
    STAGED = "staged"
    DURABLE = "durable"
    ACTIVE = "active"
    PROMOTED = "promoted"
    RESTARTING = "restarting"


class CredentialState(BaseModel):
    """Rotation progress of one user."""

    phase: CredentialPhase = Field(default=CredentialPhase.IDLE)
    generation: int = Field(default=0, description="Generation applied to the database")
    target_generation: Optional[int] = None
    fingerprint: Optional[str] = Field(default=None, description="sha256 of the staged value")
    message: Optional[str] = None


class ReplicaSetStatus(BaseModel):
    """Observed state of one replica set."""

    role: str = Field(default="replset", description="replset, config or shard")
    size: int = 0
    ready_members: int = 0
    healthy_members: int = 0
    ready: bool = False
    initialized: bool = False
    registered: bool = Field(default=False, description="Shard added to the routers")
    observed: bool = Field(default=False, description="Health was observed this pass")
    rollout: RolloutState = Field(default_factory=RolloutState)
    message: Optional[str] = None


class RouterStatus(BaseModel):
    """Observed state of the router tier."""

    size: int = 0
    ready_members: int = 0
    ready: bool = False
    observed: bool = False
    rollout: RolloutState = Field(default_factory=RolloutState)


class BackupSummary(BaseModel):
    """Read-only projection of the backup catalog."""

    completed: int = 0
    failed: int = 0
    running: list[str] = Field(default_factory=list)
    last_completed: Optional[str] = None
    last_completed_at: Optional[datetime] = None
    pitr_running: bool = False
    latest_restorable_time: Optional[datetime] = None
    observed: bool = False
    message: Optional[str] = None


class RestoreSummary(BaseModel):
    name: str
    phase: str
    message: Optional[str] = None


class ClusterStatus(BaseModel):
    """
    MongoCluster Custom Resource Status.

    Published back onto the MongoCluster resource; versioned so downstream
    automation can poll it.
    """

    schema_version: str = Field(default="v1", description="Status schema version")
    phase: ClusterPhase = Field(default=ClusterPhase.INITIALIZING)
    observed_generation: Optional[int] = None
    replsets: dict[str, ReplicaSetStatus] = Field(default_factory=dict)
    routers: Optional[RouterStatus] = None
    backup: Optional[BackupSummary] = None
    restores: list[RestoreSummary] = Field(default_factory=list)
    credentials: dict[str, CredentialState] = Field(default_factory=dict)
    last_error: Optional[str] = None
    last_error_reason: Optional[str] = None
    transient_failures: int = 0
    conditions: list[dict[str, Any]] = Field(default_factory=list)

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

    def get_condition(self, type_: str) -> Optional[dict[str, Any]]:
        return next((c for c in self.conditions if c.get("type") == type_), None)

    def rollout_state(self, replset: str) -> RolloutState:
        current = self.replsets.get(replset)
        return current.rollout.model_copy() if current else RolloutState()

    @classmethod
    def from_resource(cls, status: Optional[dict[str, Any]]) -> "ClusterStatus":
        """Parse the persisted status, tolerating foreign keys written by kopf."""
        if not status:
            return cls()
        known = {k: v for k, v in status.items() if k in cls.model_fields}
        try:
            return cls.model_validate(known)
        except ValueError:
            return cls()
