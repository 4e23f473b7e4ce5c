"""Cluster topology: semantic validation, desired membership and diffing.

Everything in this module is pure. ``compute_diff`` never raises; problems
it detects (a size decrease that would break quorum) are returned as
``violations`` and the offending removals are dropped from the diff.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from mongo_operator import errors
from mongo_operator.models.cluster import ClusterSpec, ReplicaSetSpec
from mongo_operator.models.observed import MONGOD, MONGOS, ROUTERS, MemberProcess, ObservedState
from mongo_operator.utils.validators import (
    validate_cron_schedule,
    validate_member_name,
    validate_resource_name,
    validate_storage_size,
)


class ReplicaSetRole(str, Enum):
    REPLSET = "replset"
    CONFIG = "config"
    SHARD = "shard"


@dataclass(frozen=True)
class DesiredMember:
    """A member as the desired spec wants it to exist."""

    name: str
    replset: str
    index: int
    image: str
    config_hash: str
    storage: Optional[str]
    restart_token: str = ""
    component: str = MONGOD
    configuration: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class TopologyIndex:
    """
    Lookup table of the cluster graph.

    Config servers, shards and routers reference each other by name only.
    """

    cluster: str
    roles: dict[str, ReplicaSetRole]
    config_server: Optional[str] = None
    shards: tuple[str, ...] = ()
    routers: bool = False

    def role(self, replset: str) -> Optional[ReplicaSetRole]:
        return self.roles.get(replset)

    @property
    def sharded(self) -> bool:
        return self.config_server is not None


@dataclass
class ReplicaSetDiff:
    """Membership changes for one replica set (or the router tier)."""

    replset: str
    add: list[DesiredMember] = field(default_factory=list)
    remove: list[MemberProcess] = field(default_factory=list)
    update: list[DesiredMember] = field(default_factory=list)
    restart: list[DesiredMember] = field(default_factory=list)
    decommission: bool = False

    @property
    def empty(self) -> bool:
        return not (self.add or self.remove or self.update or self.restart)

    @property
    def topology_changes(self) -> bool:
        return bool(self.add or self.remove)


@dataclass
class TopologyDiff:
    """Per replica set diff between desired and observed membership."""

    replsets: dict[str, ReplicaSetDiff] = field(default_factory=dict)
    violations: list[str] = field(default_factory=list)

    def for_replset(self, name: str) -> ReplicaSetDiff:
        return self.replsets.get(name) or ReplicaSetDiff(replset=name)

    @property
    def empty(self) -> bool:
        return all(d.empty for d in self.replsets.values())


def quorum(size: int) -> int:
    """Majority of ``size`` voting members (2 for a 3-member set)."""
    if size <= 0:
        return 0
    return size // 2 + 1


def member_name(cluster: str, replset: str, index: int) -> str:
    return f"{cluster}-{replset}-{index}"


def config_hash(configuration: dict[str, Any]) -> str:
    """Stable fingerprint of a configuration override dict."""
    encoded = json.dumps(configuration, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


def validate_spec(spec: ClusterSpec, cluster: str) -> None:
    """
    Enforce the semantic invariants of a desired spec.

    Args:
        spec: Desired cluster spec (already schema-valid)
        cluster: Cluster resource name

    Raises:
        ValidationError: With every violation found, joined by "; "
    """
    problems: list[str] = []
    replsets = spec.all_replsets()

    names = [rs.name for rs in replsets]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        problems.append(f"replica set names must be unique: {', '.join(duplicates)}")

    if spec.sharding.enabled:
        shard_names = [rs.name for rs in spec.replsets]
        if not shard_names:
            problems.append("sharding requires at least one shard replica set")
        if spec.sharding.config_server.name in shard_names:
            problems.append("config server replica set must be distinct from data shards")
        if spec.sharding.routers.size < 1:
            problems.append("sharding requires at least one router")
        if ROUTERS in shard_names:
            problems.append(f"'{ROUTERS}' is reserved for the router tier")

    for rs in replsets:
        if not validate_resource_name(rs.name):
            problems.append(f"replica set name '{rs.name}' is not a valid DNS label")
        elif not validate_member_name(cluster, rs.name, rs.size - 1):
            problems.append(f"member names of replica set '{rs.name}' exceed 63 characters")
        if not validate_storage_size(rs.storage):
            problems.append(f"invalid storage size '{rs.storage}' for replica set '{rs.name}'")

    if spec.backup is not None and spec.backup.enabled:
        backup = spec.backup
        task_names = [t.name for t in backup.tasks]
        if len(set(task_names)) != len(task_names):
            problems.append("backup task names must be unique")
        for task in backup.tasks:
            if task.storage_name not in backup.storages:
                problems.append(
                    f"backup task '{task.name}' references unknown storage '{task.storage_name}'"
                )
            if not validate_cron_schedule(task.schedule):
                problems.append(f"backup task '{task.name}' has invalid schedule '{task.schedule}'")
        if backup.pitr.enabled:
            if not backup.pitr.storage_name:
                problems.append("pitr requires storage_name")
            elif backup.pitr.storage_name not in backup.storages:
                problems.append(f"pitr references unknown storage '{backup.pitr.storage_name}'")

    if spec.credentials is not None:
        allowed = set(names) | ({ROUTERS} if spec.sharding.enabled else set())
        for target in spec.credentials.restart_targets:
            if target not in allowed:
                problems.append(f"credential restart target '{target}' is not part of the cluster")

    if problems:
        raise errors.ValidationError("; ".join(problems))


def build_index(spec: ClusterSpec, cluster: str) -> TopologyIndex:
    if not spec.sharding.enabled:
        return TopologyIndex(
            cluster=cluster,
            roles={rs.name: ReplicaSetRole.REPLSET for rs in spec.replsets},
        )

    roles = {spec.sharding.config_server.name: ReplicaSetRole.CONFIG}
    roles.update({rs.name: ReplicaSetRole.SHARD for rs in spec.replsets})
    return TopologyIndex(
        cluster=cluster,
        roles=roles,
        config_server=spec.sharding.config_server.name,
        shards=tuple(rs.name for rs in spec.replsets),
        routers=spec.sharding.routers.size > 0,
    )


def _replset_members(
    spec: ClusterSpec, cluster: str, rs: ReplicaSetSpec, restart_token: str
) -> list[DesiredMember]:
    image = spec.image_for(rs)
    digest = config_hash(rs.configuration)
    return [
        DesiredMember(
            name=member_name(cluster, rs.name, index),
            replset=rs.name,
            index=index,
            image=image,
            config_hash=digest,
            storage=rs.storage,
            restart_token=restart_token,
            configuration=rs.configuration,
        )
        for index in range(rs.size)
    ]


def desired_members(
    spec: ClusterSpec,
    cluster: str,
    restart_tokens: Optional[dict[str, str]] = None,
) -> dict[str, list[DesiredMember]]:
    """
    Expand the spec into concrete members, keyed by replica set name.

    The router tier, when sharding is enabled, is keyed by ``ROUTERS``.
    """
    tokens = restart_tokens or {}
    members = {
        rs.name: _replset_members(spec, cluster, rs, tokens.get(rs.name, ""))
        for rs in spec.all_replsets()
    }

    if spec.sharding.enabled:
        routers = spec.sharding.routers
        image = routers.image or spec.image
        digest = config_hash(routers.configuration)
        members[ROUTERS] = [
            DesiredMember(
                name=member_name(cluster, "mongos", index),
                replset=ROUTERS,
                index=index,
                image=image,
                config_hash=digest,
                storage=None,
                restart_token=tokens.get(ROUTERS, ""),
                component=MONGOS,
                configuration=routers.configuration,
            )
            for index in range(routers.size)
        ]

    return members


def _diff_replset(
    replset: str, desired: list[DesiredMember], observed: list[MemberProcess]
) -> ReplicaSetDiff:
    diff = ReplicaSetDiff(replset=replset)
    observed_by_name = {m.name: m for m in observed}
    desired_names = {m.name for m in desired}

    for want in desired:
        have = observed_by_name.get(want.name)
        if have is None:
            diff.add.append(want)
        elif have.terminating or (want.storage and have.storage and have.storage != want.storage):
            # Same slot: removal is ordered before addition.
            diff.remove.append(have)
            diff.add.append(want)
        elif have.image != want.image or have.config_hash != want.config_hash:
            diff.update.append(want)
        elif have.restart_token != want.restart_token:
            diff.restart.append(want)

    diff.remove.extend(m for m in observed if m.name not in desired_names)

    diff.add.sort(key=lambda m: m.index)
    diff.remove.sort(key=lambda m: m.index, reverse=True)
    diff.update.sort(key=lambda m: m.index, reverse=True)
    diff.restart.sort(key=lambda m: m.index, reverse=True)
    return diff


def compute_diff(
    desired: dict[str, list[DesiredMember]], observed: ObservedState
) -> TopologyDiff:
    """
    Compare desired and observed membership by member identity.

    Args:
        desired: Output of :func:`desired_members`
        observed: Observed state snapshot (never mutated)

    Returns:
        The diff; never raises
    """
    diff = TopologyDiff()

    for replset, wanted in desired.items():
        have = observed.routers if replset == ROUTERS else observed.replset_members(replset)
        rs_diff = _diff_replset(replset, wanted, have)

        if replset != ROUTERS:
            live = [m for m in have if not m.terminating]
            target = len(wanted)
            if live and target < len(live) and target < quorum(len(live)):
                diff.violations.append(
                    f"replica set '{replset}' cannot shrink from {len(live)} to {target} "
                    f"members: below quorum of {quorum(len(live))}"
                )
                rs_diff.remove = [m for m in rs_diff.remove if m.terminating]

        diff.replsets[replset] = rs_diff

    for replset in sorted(set(observed.members) - set(desired)):
        members = observed.replset_members(replset)
        if members:
            diff.replsets[replset] = ReplicaSetDiff(
                replset=replset,
                remove=sorted(members, key=lambda m: m.index, reverse=True),
                decommission=True,
            )

    if ROUTERS not in desired and observed.routers:
        diff.replsets[ROUTERS] = ReplicaSetDiff(
            replset=ROUTERS,
            remove=sorted(observed.routers, key=lambda m: m.index, reverse=True),
            decommission=True,
        )

    return diff
