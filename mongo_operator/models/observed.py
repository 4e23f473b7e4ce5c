"""Observed state snapshot assembled at the start of each reconcile pass."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from mongo_operator.models.backup import BackupCatalog, MongoBackupSpec
from mongo_operator.models.cluster import ClusterStatus
from mongo_operator.models.restore import MongoRestoreSpec, RestoreRecord

MONGOD = "mongod"
MONGOS = "mongos"
ROUTERS = "routers"


class AgentState(str, Enum):
    """What a backup agent reports about itself."""

    PENDING = "pending"
    STREAMING = "streaming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABSENT = "absent"


@dataclass(frozen=True)
class MemberProcess:
    """A running database (or router) workload."""

    name: str
    replset: str
    index: int
    image: str
    config_hash: str = ""
    storage: Optional[str] = None
    restart_token: str = ""
    ready: bool = False
    terminating: bool = False
    host: str = ""
    component: str = MONGOD


@dataclass(frozen=True)
class AgentProcess:
    """A backup-agent invocation known to the platform."""

    name: str
    mode: str
    record: str
    member: Optional[str] = None
    terminating: bool = False


@dataclass(frozen=True)
class BackupRequest:
    """A MongoBackup resource addressed to this cluster."""

    name: str
    spec: MongoBackupSpec
    resource_version: Optional[str] = None
    status: dict = field(default_factory=dict)


@dataclass
class RestoreRequest:
    """A MongoRestore resource addressed to this cluster."""

    name: str
    spec: MongoRestoreSpec
    record: RestoreRecord


@dataclass
class ObservedState:
    """
    Snapshot of the live cluster.

    Possibly stale or partial: every source is read independently and a
    failed read is recorded in ``errors`` while the field stays empty.
    """

    cluster: str
    namespace: str
    generation: int = 0
    resource_version: Optional[str] = None
    deleting: bool = False
    members: dict[str, list[MemberProcess]] = field(default_factory=dict)
    routers: list[MemberProcess] = field(default_factory=list)
    agents: list[AgentProcess] = field(default_factory=list)
    catalog: Optional[BackupCatalog] = None
    backup_requests: list[BackupRequest] = field(default_factory=list)
    restores: list[RestoreRequest] = field(default_factory=list)
    status: ClusterStatus = field(default_factory=ClusterStatus)
    errors: list[str] = field(default_factory=list)

    def replset_members(self, name: str) -> list[MemberProcess]:
        """Members of a replica set; missing data means no members."""
        return sorted(self.members.get(name, []), key=lambda m: m.index)

    def member(self, name: str) -> Optional[MemberProcess]:
        for members in self.members.values():
            for member in members:
                if member.name == name:
                    return member
        for router in self.routers:
            if router.name == name:
                return router
        return None

    def agent(self, name: str) -> Optional[AgentProcess]:
        return next((a for a in self.agents if a.name == name), None)

    @property
    def backups_observed(self) -> bool:
        return self.catalog is not None
