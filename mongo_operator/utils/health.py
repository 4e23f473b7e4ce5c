"""Health probing of replica set members and routers."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from mongo_operator.core.topology import quorum
from mongo_operator.errors import TransientInfraError
from mongo_operator.models.conditions import utcnow
from mongo_operator.models.observed import ROUTERS, MemberProcess
from mongo_operator.utils.mongo_admin import AdminPool

logger = logging.getLogger(__name__)

HEALTHY_STATES = {"PRIMARY", "SECONDARY"}
INITIALIZING_STATES = {"STARTUP", "STARTUP2", "RECOVERING", "ROLLBACK"}
MISMATCH_STATES = {"ARBITER", "REMOVED"}


class MemberCondition(str, Enum):
    HEALTHY = "healthy"
    INITIALIZING = "initializing"
    UNREACHABLE = "unreachable"
    ROLE_MISMATCH = "role_mismatch"


@dataclass
class MemberHealth:
    """Health of a single member."""

    member: str
    condition: MemberCondition = MemberCondition.UNREACHABLE
    state: Optional[str] = None
    ping_ms: Optional[float] = None
    optime: Optional[datetime] = None
    in_config: bool = False
    message: str = ""
    last_check: datetime = field(default_factory=utcnow)


@dataclass
class HealthReport:
    """Health of one replica set (or the router tier)."""

    replset: str
    members: dict[str, MemberHealth] = field(default_factory=dict)
    reachable: bool = False
    initialized: bool = False
    primary: Optional[str] = None
    config_size: int = 0
    shards: Optional[set[str]] = None
    message: str = ""

    def condition(self, member: str) -> MemberCondition:
        health = self.members.get(member)
        return health.condition if health else MemberCondition.UNREACHABLE

    def is_healthy(self, member: str) -> bool:
        return self.condition(member) == MemberCondition.HEALTHY

    def in_config(self, member: str) -> bool:
        health = self.members.get(member)
        return bool(health and health.in_config)

    def healthy_count(self, exclude: Optional[str] = None) -> int:
        return sum(
            1
            for name, health in self.members.items()
            if name != exclude and health.condition == MemberCondition.HEALTHY
        )

    def voting_size(self) -> int:
        return self.config_size or len(self.members)

    def is_rollout_safe(self, target: Optional[str] = None) -> bool:
        """Healthy members excluding ``target`` still form a majority."""
        return self.healthy_count(exclude=target) >= quorum(self.voting_size())

    @property
    def all_healthy(self) -> bool:
        return bool(self.members) and all(
            h.condition == MemberCondition.HEALTHY for h in self.members.values()
        )


def _classify(entry: Optional[dict[str, Any]], member: MemberProcess) -> MemberHealth:
    health = MemberHealth(member=member.name)
    if entry is None:
        health.condition = (
            MemberCondition.INITIALIZING if member.ready else MemberCondition.UNREACHABLE
        )
        health.message = "not in replica set config"
        return health

    health.in_config = True
    health.state = entry.get("stateStr")
    health.ping_ms = entry.get("pingMs")
    health.optime = entry.get("optimeDate")

    if entry.get("health", 1) == 0:
        health.condition = MemberCondition.UNREACHABLE
        health.message = entry.get("lastHeartbeatMessage", "heartbeat failed")
    elif health.state in HEALTHY_STATES:
        health.condition = MemberCondition.HEALTHY
    elif health.state in INITIALIZING_STATES:
        health.condition = MemberCondition.INITIALIZING
    elif health.state in MISMATCH_STATES:
        health.condition = MemberCondition.ROLE_MISMATCH
        health.message = f"unexpected state {health.state}"
    else:
        health.condition = MemberCondition.UNREACHABLE
        health.message = f"state {health.state}"
    return health


class HealthProber:
    """
    Probes replica set members through any reachable member.

    Probe failures never propagate: they degrade the affected members to
    unreachable and the rollout defers action on them.
    """

    def __init__(self, admin: AdminPool):
        """
        Initialize health prober.

        Args:
            admin: Pool of admin connections
        """
        self.admin = admin

    async def probe(self, replset: str, members: list[MemberProcess]) -> HealthReport:
        """
        Probe a replica set.

        Args:
            replset: Replica set name
            members: Observed member processes

        Returns:
            Health report covering every observed member
        """
        report = HealthReport(replset=replset)
        report.members = {m.name: MemberHealth(member=m.name) for m in members}
        if not members:
            report.message = "no members"
            return report

        ordered = sorted(members, key=lambda m: (not m.ready, m.index))
        status: Optional[dict[str, Any]] = None
        responder: Optional[MemberProcess] = None

        for member in ordered:
            if member.terminating:
                continue
            try:
                status = await self.admin.get(member.host).replset_status()
            except TransientInfraError as e:
                logger.debug(f"Probe of {member.name} failed: {e}")
                report.members[member.name].message = str(e)
                continue

            report.reachable = True
            if status is None:
                report.members[member.name].condition = MemberCondition.INITIALIZING
                report.members[member.name].message = "replica set not initialized"
                continue
            responder = member
            break

        if status is None or responder is None:
            report.message = (
                "replica set not initialized" if report.reachable else "no member reachable"
            )
            return report

        report.initialized = True
        if status.get("set") != replset:
            report.message = f"member reports replica set '{status.get('set')}'"
            for health in report.members.values():
                health.condition = MemberCondition.ROLE_MISMATCH
                health.message = report.message
            return report

        entries = {e.get("name"): e for e in status.get("members", [])}
        report.config_size = len(entries)
        for member in members:
            health = _classify(entries.get(member.host), member)
            if member.terminating:
                health.condition = MemberCondition.UNREACHABLE
                health.message = "terminating"
            report.members[member.name] = health
            if health.state == "PRIMARY":
                report.primary = member.name

        return report

    async def probe_routers(self, routers: list[MemberProcess]) -> HealthReport:
        """Ping every router and read the registered shards from one of them."""
        report = HealthReport(replset=ROUTERS, initialized=True)
        report.members = {r.name: MemberHealth(member=r.name) for r in routers}
        report.config_size = len(routers)

        async def ping(router: MemberProcess) -> Optional[float]:
            if router.terminating:
                return None
            try:
                return await self.admin.get(router.host).ping()
            except TransientInfraError as e:
                report.members[router.name].message = str(e)
                return None

        latencies = await asyncio.gather(*(ping(r) for r in routers))
        for router, latency in zip(routers, latencies):
            if latency is not None:
                report.reachable = True
                report.members[router.name].condition = MemberCondition.HEALTHY
                report.members[router.name].ping_ms = latency

        for router in routers:
            if not report.is_healthy(router.name):
                continue
            try:
                shards = await self.admin.get(router.host).list_shards()
            except TransientInfraError as e:
                logger.debug(f"listShards through {router.name} failed: {e}")
                continue
            report.shards = {s["_id"] for s in shards}
            break

        return report
