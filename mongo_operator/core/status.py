"""Status Aggregator.

Merges the sub-results of a pass into the published ``ClusterStatus``. A
sub-result that was not observed this pass keeps its previous value, so the
status never claims progress the pass did not see.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from mongo_operator.core.backup import BackupOutcome, latest_restorable_time
from mongo_operator.core.credentials import RotationOutcome
from mongo_operator.core.rollout import RolloutResult
from mongo_operator.core.topology import TopologyIndex
from mongo_operator.errors import OperatorError
from mongo_operator.models.backup import BackupState, BackupType
from mongo_operator.models.cluster import (
    BackupSummary,
    ClusterPhase,
    ClusterSpec,
    ClusterStatus,
    CredentialPhase,
    ReplicaSetStatus,
    RestoreSummary,
    RolloutPhase,
    RouterStatus,
)
from mongo_operator.models.conditions import utcnow
from mongo_operator.models.observed import ROUTERS, ObservedState
from mongo_operator.models.restore import RestorePhase
from mongo_operator.utils.health import HealthReport

logger = logging.getLogger(__name__)


class StatusAggregator:
    """Builds the cluster status from the outcome of one pass."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def aggregate(
        self,
        previous: ClusterStatus,
        observed: ObservedState,
        spec: Optional[ClusterSpec] = None,
        index: Optional[TopologyIndex] = None,
        reports: Optional[dict[str, HealthReport]] = None,
        rollout: Optional[RolloutResult] = None,
        backup: Optional[BackupOutcome] = None,
        credentials: Optional[list[RotationOutcome]] = None,
        error: Optional[OperatorError] = None,
        transient_failures: int = 0,
        retries_exhausted: bool = False,
    ) -> ClusterStatus:
        """
        Merge pass sub-results into a new status.

        Args:
            previous: Status persisted by the previous pass
            observed: Observed state of this pass
            spec: Desired spec (None when it failed validation)
            index: Topology lookup table
            reports: Health reports produced this pass
            rollout: Rollout result of this pass
            backup: Backup outcome of this pass
            credentials: Credential rotation outcomes of this pass
            error: Pass-level error
            transient_failures: Consecutive transient failures so far
            retries_exhausted: The transient retry budget is spent

        Returns:
            New cluster status; ``previous`` is not modified
        """
        status = previous.model_copy(deep=True)
        status.observed_generation = observed.generation
        status.transient_failures = transient_failures
        reports = reports or {}

        if spec is not None and index is not None:
            self._replsets(status, spec, index, observed, reports, rollout)
            self._routers(status, spec, observed, reports, rollout)
        if backup is not None:
            self._backup(status, spec, backup)
        if credentials is not None:
            for outcome in credentials:
                status.credentials[outcome.user] = outcome.state.model_copy()

        if error is not None:
            status.last_error = error.message
            status.last_error_reason = error.reason
        elif transient_failures == 0:
            status.last_error = None
            status.last_error_reason = None

        status.phase = self._phase(status, observed, spec, index, error, retries_exhausted)
        self._conditions(status, rollout, backup, error)
        return status

    def _replsets(
        self,
        status: ClusterStatus,
        spec: ClusterSpec,
        index: TopologyIndex,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
    ) -> None:
        router_report = reports.get(ROUTERS)
        shards = router_report.shards if router_report else None
        outcomes = rollout.outcomes if rollout else {}

        names = [rs.name for rs in spec.all_replsets()]
        names += [n for n in outcomes if n not in names and n != ROUTERS]
        names += [n for n in observed.members if n not in names and observed.members[n]]

        for name in list(status.replsets):
            if name not in names:
                del status.replsets[name]

        for name in names:
            rs_status = status.replsets.get(name) or ReplicaSetStatus()
            role = index.role(name)
            rs_status.role = role.value if role else rs_status.role
            desired = spec.replset(name)
            report = reports.get(name)
            members = observed.replset_members(name)

            if report is not None:
                rs_status.observed = True
                rs_status.size = len(members)
                rs_status.ready_members = sum(1 for m in members if m.ready)
                rs_status.healthy_members = report.healthy_count()
                if not members:
                    rs_status.initialized = False
                elif report.reachable:
                    rs_status.initialized = report.initialized or rs_status.initialized
                rs_status.ready = bool(
                    desired is not None
                    and report.primary
                    and report.all_healthy
                    and len(members) == desired.size
                )
            else:
                rs_status.observed = False

            if shards is not None:
                rs_status.registered = name in shards
            if rollout is not None and rollout.registered == name:
                rs_status.registered = True

            outcome = outcomes.get(name)
            if outcome is not None:
                rs_status.rollout = outcome.state.model_copy()
            rs_status.message = (
                rs_status.rollout.message or (report.message if report else None) or None
            )
            status.replsets[name] = rs_status

    def _routers(
        self,
        status: ClusterStatus,
        spec: ClusterSpec,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
    ) -> None:
        outcome = rollout.outcomes.get(ROUTERS) if rollout else None
        if not spec.sharding.enabled and not observed.routers and outcome is None:
            status.routers = None
            return

        routers = status.routers or RouterStatus()
        report = reports.get(ROUTERS)
        if report is not None:
            desired = spec.sharding.routers.size if spec.sharding.enabled else 0
            routers.observed = True
            routers.size = len(observed.routers)
            routers.ready_members = report.healthy_count()
            routers.ready = routers.size == desired and (desired == 0 or report.all_healthy)
        else:
            routers.observed = False
        if outcome is not None:
            routers.rollout = outcome.state.model_copy()
        status.routers = routers

    def _backup(
        self, status: ClusterStatus, spec: Optional[ClusterSpec], backup: BackupOutcome
    ) -> None:
        summary = status.backup.model_copy() if status.backup else BackupSummary()
        status.restores = [
            RestoreSummary(
                name=r.name,
                phase=r.phase.value,
                message=r.error or next((c["message"] for c in r.conditions[-1:]), None),
            )
            for r in backup.restores
        ]

        if backup.catalog is None:
            summary.observed = False
            summary.message = backup.message
            status.backup = summary
            return

        records = backup.catalog.records
        completed = [
            r
            for r in records
            if r.state == BackupState.COMPLETED and r.type != BackupType.PITR_CHUNK
        ]
        summary.observed = True
        summary.completed = len(completed)
        summary.failed = sum(1 for r in records if r.state == BackupState.FAILED)
        summary.running = sorted(r.name for r in records if r.state.is_active)
        summary.pitr_running = backup.pitr_running
        if completed:
            last = max(completed, key=lambda r: r.finished_at or r.requested_at or self.clock())
            summary.last_completed = last.name
            summary.last_completed_at = last.finished_at

        pitr = spec.backup.pitr if spec is not None and spec.backup is not None else None
        if pitr is not None and pitr.enabled and pitr.storage_name:
            summary.latest_restorable_time = latest_restorable_time(
                backup.catalog, pitr.storage_name
            )
        else:
            summary.latest_restorable_time = None

        problems = backup.agent_errors + backup.transient_errors
        summary.message = "; ".join(problems) if problems else backup.message
        status.backup = summary

    def _phase(
        self,
        status: ClusterStatus,
        observed: ObservedState,
        spec: Optional[ClusterSpec],
        index: Optional[TopologyIndex],
        error: Optional[OperatorError],
        retries_exhausted: bool,
    ) -> ClusterPhase:
        if observed.deleting or (spec is not None and spec.pause):
            return ClusterPhase.STOPPING
        if error is not None or retries_exhausted:
            return ClusterPhase.ERROR

        rollouts = [rs.rollout for rs in status.replsets.values()]
        if status.routers is not None:
            rollouts.append(status.routers.rollout)
        if any(r.phase == RolloutPhase.ERROR for r in rollouts):
            return ClusterPhase.ERROR
        if any(r.phase == RestorePhase.FAILED.value for r in status.restores):
            return ClusterPhase.ERROR

        if spec is None or index is None:
            return ClusterPhase.INITIALIZING
        for rs in spec.all_replsets():
            rs_status = status.replsets.get(rs.name)
            if rs_status is None or not (rs_status.observed and rs_status.ready):
                return ClusterPhase.INITIALIZING
            if index.sharded and rs.name in index.shards and not rs_status.registered:
                return ClusterPhase.INITIALIZING
        if len(status.replsets) != len(spec.all_replsets()):
            return ClusterPhase.INITIALIZING
        if any(r.phase != RolloutPhase.STABLE for r in rollouts):
            return ClusterPhase.INITIALIZING
        if spec.sharding.enabled and not (
            status.routers and status.routers.observed and status.routers.ready
        ):
            return ClusterPhase.INITIALIZING
        if spec.backup is not None and spec.backup.enabled:
            if status.backup is None or not status.backup.observed:
                return ClusterPhase.INITIALIZING
        if any(r.phase != RestorePhase.READY.value for r in status.restores):
            return ClusterPhase.INITIALIZING
        if any(c.phase != CredentialPhase.IDLE for c in status.credentials.values()):
            return ClusterPhase.INITIALIZING
        return ClusterPhase.READY

    def _conditions(
        self,
        status: ClusterStatus,
        rollout: Optional[RolloutResult],
        backup: Optional[BackupOutcome],
        error: Optional[OperatorError],
    ) -> None:
        if status.phase == ClusterPhase.READY:
            status.add_condition("Ready", "True", "ClusterReady", "all replica sets are healthy")
        elif status.phase == ClusterPhase.ERROR:
            reason = status.last_error_reason or "RolloutFailed"
            message = status.last_error or self._first_error(status)
            status.add_condition("Ready", "False", reason, message)
        elif status.phase == ClusterPhase.STOPPING:
            status.add_condition("Ready", "False", "Stopping", "cluster is paused or deleting")
        else:
            status.add_condition("Ready", "False", "Reconciling", "cluster is converging")

        progressing = bool((rollout and rollout.active) or (backup and backup.active))
        status.add_condition(
            "Progressing",
            "True" if progressing else "False",
            "Reconciling" if progressing else "Idle",
            "work in progress" if progressing else "no pending work",
        )

        degraded = [n for n, rs in status.replsets.items() if rs.observed and not rs.ready]
        status.add_condition(
            "Degraded",
            "True" if degraded else "False",
            "ReplicaSetsNotReady" if degraded else "AllReplicaSetsReady",
            ", ".join(sorted(degraded)) if degraded else "all replica sets ready",
        )

    @staticmethod
    def _first_error(status: ClusterStatus) -> str:
        for name, rs in status.replsets.items():
            if rs.rollout.phase == RolloutPhase.ERROR:
                return f"{name}: {rs.rollout.message or rs.rollout.reason}"
        if status.routers is not None and status.routers.rollout.phase == RolloutPhase.ERROR:
            return f"{ROUTERS}: {status.routers.rollout.message or status.routers.rollout.reason}"
        failed = next((r for r in status.restores if r.phase == RestorePhase.FAILED.value), None)
        if failed is not None:
            return f"restore {failed.name} failed: {failed.message}"
        return "unknown error"
