"""Backup/Restore Orchestrator.

Owns the backup catalog. Each pass it registers requested backups (on-demand
and scheduled), advances every record through
``requested -> starting -> running -> completed | failed`` as agents report,
keeps the PITR agent alive, prunes by retention, and advances restores
through ``requested -> preparing -> restoring -> verifying -> ready | failed``.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from croniter import croniter

from mongo_operator.core.rollout import RolloutResult
from mongo_operator.core.scheduler import PassGuard
from mongo_operator.errors import (
    AgentError,
    IncrementGapError,
    NoBaseBackupError,
    RestoreError,
    TransientInfraError,
)
from mongo_operator.models.backup import BackupCatalog, BackupRecord, BackupState, BackupType
from mongo_operator.models.cluster import ClusterSpec
from mongo_operator.models.conditions import utcnow
from mongo_operator.models.observed import AgentState, MemberProcess, ObservedState
from mongo_operator.models.restore import RestorePhase, RestoreRecord
from mongo_operator.utils.backup_agent import AgentMode, AgentReport, agent_name
from mongo_operator.utils.health import HealthReport
from mongo_operator.utils.k8s_client import K8sClient
from mongo_operator.utils.storage import StorageDestination
from mongo_operator.utils.workloads import cluster_labels

logger = logging.getLogger(__name__)


class AgentDriver(Protocol):
    async def start(
        self,
        name: str,
        host: str,
        storage_name: str,
        destination: StorageDestination,
        mode: AgentMode,
        record: str,
        member: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        credentials_secret: Optional[str] = None,
    ) -> None: ...

    async def status(self, name: str) -> AgentReport: ...

    async def stop(self, name: str) -> None: ...


class BackupStore:
    """
    Persistence of the catalog and of the restore/backup resources.

    The catalog lives in the ``<cluster>-backup-catalog`` ConfigMap and is
    written with a conditional replace. It deliberately has no owner
    reference so it can outlive the cluster resource.
    """

    def __init__(self, k8s: K8sClient, cluster: str):
        self.k8s = k8s
        self.cluster = cluster
        self.name = f"{cluster}-backup-catalog"

    async def load_catalog(self) -> BackupCatalog:
        cm = await self.k8s.get_configmap(self.name)
        if cm is None:
            return BackupCatalog()
        raw = json.loads((cm.data or {}).get("records", "[]"))
        return BackupCatalog(
            records=[BackupRecord.model_validate(r) for r in raw],
            resource_version=cm.metadata.resource_version,
        )

    async def save_catalog(self, catalog: BackupCatalog) -> None:
        data = {
            "records": json.dumps(
                [r.model_dump(mode="json") for r in catalog.records], sort_keys=True
            )
        }
        catalog.resource_version = await self.k8s.replace_configmap(
            self.name,
            data,
            catalog.resource_version,
            labels=cluster_labels(self.cluster, "backup-catalog"),
        )

    async def delete_catalog(self) -> None:
        logger.info(f"Deleting backup catalog {self.name}")
        await self.k8s.delete_configmap(self.name)

    async def project_backup(self, name: str, status: dict[str, Any]) -> None:
        await self.k8s.patch_status("mongobackups", name, status)

    async def save_restore(self, record: RestoreRecord) -> None:
        record.resource_version = await self.k8s.replace_status(
            "mongorestores",
            "MongoRestore",
            record.name,
            record.model_dump(mode="json", exclude={"name", "cluster"}),
            record.resource_version,
        )


@dataclass
class BackupOutcome:
    """What the orchestrator did in one pass."""

    catalog: Optional[BackupCatalog] = None
    restores: list[RestoreRecord] = field(default_factory=list)
    pitr_running: bool = False
    started: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    agent_errors: list[str] = field(default_factory=list)
    transient_errors: list[str] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def active(self) -> bool:
        records = self.catalog.records if self.catalog else []
        running = any(r.state.is_active or r.state == BackupState.REQUESTED for r in records)
        restoring = any(not r.phase.is_terminal for r in self.restores)
        return running or restoring or bool(self.started)


def isolated_replsets(restores: list[RestoreRecord]) -> set[str]:
    """Replica sets a restore has asked the rollout to leave alone."""
    isolated: set[str] = set()
    for record in restores:
        if record.isolated:
            isolated.update(record.replsets)
    return isolated


def latest_restorable_time(catalog: BackupCatalog, storage_name: str) -> Optional[datetime]:
    """Newest point reachable from the latest base backup through contiguous chunks."""
    bases = [
        r
        for r in catalog.records
        if r.is_base
        and r.state == BackupState.COMPLETED
        and r.storage_name == storage_name
        and r.last_write
    ]
    if not bases:
        return None
    cursor = max(b.last_write for b in bases)
    chunks = sorted(
        (
            r
            for r in catalog.records
            if r.type == BackupType.PITR_CHUNK
            and r.state == BackupState.COMPLETED
            and r.storage_name == storage_name
            and r.chunk_end
            and r.chunk_end > cursor
        ),
        key=lambda r: r.chunk_start,
    )
    for chunk in chunks:
        if chunk.chunk_start > cursor:
            break
        cursor = max(cursor, chunk.chunk_end)
    return cursor


class BackupOrchestrator:
    """
    Drives backup agents and restores for one cluster.

    Agent failures are recorded on the affected record and never abort the
    pass; agent timeouts skip that record until the next pass.
    """

    def __init__(
        self,
        cluster: str,
        spec: ClusterSpec,
        agents: AgentDriver,
        store: BackupStore,
        guard: PassGuard,
        start_grace_seconds: int = 600,
        restore_verify_max_passes: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize backup orchestrator.

        Args:
            cluster: Cluster name
            spec: Desired cluster spec
            agents: Backup agent driver
            store: Catalog and resource persistence
            guard: Cancellation guard of the cluster
            start_grace_seconds: Time an agent may take to report streaming
            restore_verify_max_passes: Passes a restore may spend verifying
            clock: Current time source
        """
        self.cluster = cluster
        self.spec = spec
        self.backup = spec.backup
        self.agents = agents
        self.store = store
        self.guard = guard
        self.start_grace = timedelta(seconds=start_grace_seconds)
        self.restore_verify_max_passes = restore_verify_max_passes
        self.clock = clock
        self.catalog = BackupCatalog()
        self.dirty = False
        self.credentials_secret = spec.credentials.secret_name if spec.credentials else None

    @property
    def pitr_agent(self) -> str:
        return agent_name(self.cluster, "pitr")

    def storage(self, name: str) -> Optional[StorageDestination]:
        if self.backup is None:
            return None
        return self.backup.storages.get(name)

    # Requests

    def request_backup(
        self,
        name: str,
        storage_name: str,
        type_: BackupType = BackupType.FULL,
        task: Optional[str] = None,
    ) -> BackupRecord:
        """
        Register a backup request.

        Idempotent by ``name``: an existing record is returned unchanged,
        whatever its state.

        Args:
            name: Request identity
            storage_name: Destination storage name
            type_: full or incremental
            task: Schedule that requested it

        Returns:
            The catalog record for ``name``
        """
        existing = self.catalog.get(name)
        if existing is not None:
            return existing

        record = BackupRecord(
            name=name,
            cluster=self.cluster,
            storage_name=storage_name,
            type=type_,
            task=task,
            requested_at=self.clock(),
        )
        if self.storage(storage_name) is None:
            record.state = BackupState.FAILED
            record.finished_at = record.requested_at
            record.error = f"unknown storage '{storage_name}'"
        logger.info(f"Backup {name} requested on storage {storage_name}")
        self.catalog.put(record)
        self.dirty = True
        return record

    def request_scheduled(self) -> list[BackupRecord]:
        """Request the latest due tick of every enabled schedule."""
        if self.backup is None or not self.backup.enabled:
            return []
        now = self.clock()
        requested = []
        for task in self.backup.tasks:
            if not task.enabled:
                continue
            tick = croniter(task.schedule, now).get_prev(datetime)
            name = f"{self.cluster}-{task.name}-{tick:%Y%m%d%H%M%S}"
            if self.catalog.get(name) is not None:
                continue
            previous = [r for r in self.catalog.records if r.task == task.name]
            if any(r.requested_at and r.requested_at >= tick for r in previous):
                continue
            requested.append(self.request_backup(name, task.storage_name, task.type, task.name))
        return requested

    # Restore planning

    def plan_pitr_restore(
        self, storage_name: str, target: datetime, base_name: Optional[str] = None
    ) -> tuple[BackupRecord, list[BackupRecord]]:
        """
        Choose the base backup and the chunks that replay up to ``target``.

        Args:
            storage_name: Storage to restore from
            target: Point in time to restore to
            base_name: Use this completed backup as the base

        Returns:
            The base backup and the ordered chunks

        Raises:
            NoBaseBackupError: No completed base at or before ``target``
            IncrementGapError: The chunks do not cover ``(base, target]``
        """
        bases = [
            r
            for r in self.catalog.records
            if r.is_base
            and r.state == BackupState.COMPLETED
            and r.storage_name == storage_name
            and r.last_write is not None
            and r.last_write <= target
            and (base_name is None or r.name == base_name)
        ]
        if not bases:
            raise NoBaseBackupError(
                f"no base backup available on storage '{storage_name}' at or before "
                f"{target.isoformat()}"
            )
        base = max(bases, key=lambda r: r.last_write)

        chunks = sorted(
            (
                r
                for r in self.catalog.records
                if r.type == BackupType.PITR_CHUNK
                and r.state == BackupState.COMPLETED
                and r.storage_name == storage_name
                and r.chunk_start is not None
                and r.chunk_end is not None
                and r.chunk_end > base.last_write
                and r.chunk_start < target
            ),
            key=lambda r: r.chunk_start,
        )

        cursor = base.last_write
        selected = []
        for chunk in chunks:
            if cursor >= target:
                break
            if chunk.chunk_start > cursor:
                raise IncrementGapError(
                    f"oplog gap between {cursor.isoformat()} and {chunk.chunk_start.isoformat()}"
                )
            selected.append(chunk)
            cursor = max(cursor, chunk.chunk_end)

        if cursor < target:
            raise IncrementGapError(
                f"oplog on storage '{storage_name}' only covers up to {cursor.isoformat()}"
            )
        return base, selected

    # Pass

    def _eligible_member(
        self,
        replset: str,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
    ) -> Optional[MemberProcess]:
        """A healthy member, secondaries first, that no rollout is touching."""
        report = reports.get(replset)
        if report is None:
            return None
        busy = None
        if rollout is not None and replset in rollout.outcomes:
            busy = rollout.outcomes[replset].state.member
        candidates = [
            m
            for m in observed.replset_members(replset)
            if not m.terminating and report.is_healthy(m.name) and m.name != busy
        ]
        secondaries = [m for m in candidates if m.name != report.primary]
        return (secondaries or candidates or [None])[0]

    def _targets(
        self,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
    ) -> Optional[dict[str, MemberProcess]]:
        """One eligible member per data-bearing replica set, or None if any is missing."""
        targets = {}
        for rs in self.spec.all_replsets():
            member = self._eligible_member(rs.name, observed, reports, rollout)
            if member is None:
                return None
            targets[rs.name] = member
        return targets

    async def reconcile(
        self,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult] = None,
    ) -> BackupOutcome:
        """
        Advance backups, PITR, retention and restores by one pass.

        Args:
            observed: Observed state (catalog, agents, requests, restores)
            reports: Health reports per replica set
            rollout: Rollout result of this pass

        Returns:
            Backup outcome; the catalog is persisted by :meth:`persist`
        """
        outcome = BackupOutcome()
        outcome.restores = [r.record.model_copy(deep=True) for r in observed.restores]

        if observed.catalog is None:
            outcome.message = "backup catalog not observed"
            return outcome
        self.catalog = observed.catalog.model_copy(deep=True)
        outcome.catalog = self.catalog

        for request in observed.backup_requests:
            if request.spec.cluster_name == self.cluster:
                self.request_backup(request.name, request.spec.storage_name, request.spec.type)
        self.request_scheduled()

        restoring = any(not r.phase.is_terminal or r.isolated for r in outcome.restores)
        await self._advance_backups(observed, reports, rollout, outcome, restoring)
        await self._advance_pitr(observed, reports, rollout, outcome, restoring)
        await self._prune(outcome, observed)
        await self._advance_restores(observed, reports, rollout, outcome)
        await self._reap_agents(observed, outcome)
        return outcome

    async def _advance_backups(
        self,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
        outcome: BackupOutcome,
        restoring: bool,
    ) -> None:
        for record in list(self.catalog.records):
            if record.type == BackupType.PITR_CHUNK or record.state.is_terminal:
                continue
            try:
                if record.state == BackupState.REQUESTED:
                    await self._start_backup(record, observed, reports, rollout, outcome, restoring)
                else:
                    await self._poll_backup(record, outcome)
            except TransientInfraError as e:
                logger.warning(f"Backup {record.name} deferred: {e}")
                outcome.transient_errors.append(f"{record.name}: {e}")

    async def _start_backup(
        self,
        record: BackupRecord,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
        outcome: BackupOutcome,
        restoring: bool,
    ) -> None:
        if restoring:
            outcome.message = f"backup {record.name} waiting for restore to finish"
            return
        active = [
            r for r in self.catalog.records if r.type != BackupType.PITR_CHUNK and r.state.is_active
        ]
        if active:
            outcome.message = f"backup {record.name} waiting for {active[0].name}"
            return
        targets = self._targets(observed, reports, rollout)
        if targets is None:
            outcome.message = f"backup {record.name} waiting for an eligible member"
            return

        first = next(iter(targets.values()))
        name = agent_name(record.name, "backup")
        params: dict[str, Any] = {
            "type": record.type.value,
            "members": {rs: m.host for rs, m in targets.items()},
        }
        if record.type == BackupType.INCREMENTAL:
            base = self._latest_completed(record.storage_name)
            if base is not None:
                params["base"] = base.name

        self.guard.ensure_active()
        await self.agents.start(
            name,
            first.host,
            record.storage_name,
            self.storage(record.storage_name),
            AgentMode.BACKUP,
            record.name,
            member=first.name,
            params=params,
            credentials_secret=self.credentials_secret,
        )
        record.state = BackupState.STARTING
        record.started_at = self.clock()
        record.agent = name
        record.member = first.name
        self.catalog.put(record)
        self.dirty = True
        outcome.started.append(record.name)

    def _latest_completed(self, storage_name: str) -> Optional[BackupRecord]:
        done = [
            r
            for r in self.catalog.records
            if r.type != BackupType.PITR_CHUNK
            and r.state == BackupState.COMPLETED
            and r.storage_name == storage_name
        ]
        return max(done, key=lambda r: r.finished_at or r.requested_at) if done else None

    def _finish(
        self, record: BackupRecord, state: BackupState, error: Optional[str] = None
    ) -> None:
        record.state = state
        record.finished_at = self.clock()
        record.error = error
        self.catalog.put(record)
        self.dirty = True

    async def _poll_backup(self, record: BackupRecord, outcome: BackupOutcome) -> None:
        report = await self.agents.status(record.agent)

        if report.state == AgentState.SUCCEEDED:
            record.last_write = report.last_write or self.clock()
            self._finish(record, BackupState.COMPLETED)
            outcome.completed.append(record.name)
            logger.info(f"Backup {record.name} completed")
        elif report.state in (AgentState.FAILED, AgentState.ABSENT):
            error = AgentError(report.error or "backup agent disappeared")
            self._finish(record, BackupState.FAILED, error.message)
            outcome.failed.append(record.name)
            outcome.agent_errors.append(f"{record.name}: {error.message}")
            logger.error(f"Backup {record.name} failed: {error.message}")
        elif report.state == AgentState.STREAMING:
            if record.state != BackupState.RUNNING:
                record.state = BackupState.RUNNING
                self.catalog.put(record)
                self.dirty = True
            return
        elif record.started_at and self.clock() - record.started_at > self.start_grace:
            self._finish(record, BackupState.FAILED, "backup agent did not start streaming")
            outcome.failed.append(record.name)
            outcome.agent_errors.append(f"{record.name}: agent start timed out")
        else:
            return

        if report.state != AgentState.ABSENT:
            await self.agents.stop(record.agent)

    async def _advance_pitr(
        self,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
        outcome: BackupOutcome,
        restoring: bool,
    ) -> None:
        pitr = self.backup.pitr if self.backup and self.backup.enabled else None
        exists = observed.agent(self.pitr_agent) is not None
        wanted = bool(pitr and pitr.enabled and not restoring)

        try:
            if not wanted:
                if exists:
                    self.guard.ensure_active()
                    await self.agents.stop(self.pitr_agent)
                return

            base = self._latest_base(pitr.storage_name)
            if base is None:
                outcome.message = "PITR waiting for a completed base backup"
                return

            report = await self.agents.status(self.pitr_agent)
            self._record_chunks(pitr.storage_name, report)

            if report.state in (AgentState.FAILED, AgentState.SUCCEEDED):
                outcome.agent_errors.append(f"pitr: {report.error or 'agent exited'}")
                self.guard.ensure_active()
                await self.agents.stop(self.pitr_agent)
                return
            if report.state == AgentState.ABSENT:
                target = self._eligible_member(
                    self.spec.all_replsets()[0].name, observed, reports, rollout
                )
                if target is None:
                    outcome.message = "PITR waiting for an eligible member"
                    return
                self.guard.ensure_active()
                await self.agents.start(
                    self.pitr_agent,
                    target.host,
                    pitr.storage_name,
                    self.storage(pitr.storage_name),
                    AgentMode.PITR,
                    self.pitr_agent,
                    member=target.name,
                    params={"base": base.name, "spanMinutes": pitr.oplog_span_minutes},
                    credentials_secret=self.credentials_secret,
                )
                return
            outcome.pitr_running = report.state == AgentState.STREAMING
        except TransientInfraError as e:
            logger.warning(f"PITR deferred: {e}")
            outcome.transient_errors.append(f"pitr: {e}")

    def _latest_base(self, storage_name: str) -> Optional[BackupRecord]:
        bases = [
            r
            for r in self.catalog.records
            if r.is_base and r.state == BackupState.COMPLETED and r.storage_name == storage_name
        ]
        return max(bases, key=lambda r: r.last_write or r.finished_at) if bases else None

    def _record_chunks(self, storage_name: str, report: AgentReport) -> None:
        for chunk in report.chunks:
            if self.catalog.get(chunk.name) is not None:
                continue
            self.catalog.put(
                BackupRecord(
                    name=chunk.name,
                    cluster=self.cluster,
                    storage_name=storage_name,
                    type=BackupType.PITR_CHUNK,
                    state=BackupState.COMPLETED,
                    requested_at=chunk.start,
                    started_at=chunk.start,
                    finished_at=chunk.end,
                    chunk_start=chunk.start,
                    chunk_end=chunk.end,
                    last_write=chunk.end,
                    agent=self.pitr_agent,
                )
            )
            self.dirty = True

    # Retention

    def _expired(self, protected: set[str]) -> list[BackupRecord]:
        if self.backup is None:
            return []
        now = self.clock()
        expired: dict[str, BackupRecord] = {}
        snapshots = [
            r
            for r in self.catalog.records
            if r.type != BackupType.PITR_CHUNK and r.state.is_terminal and r.name not in protected
        ]
        completed = sorted(
            (r for r in snapshots if r.state == BackupState.COMPLETED),
            key=lambda r: r.finished_at or r.requested_at,
            reverse=True,
        )

        for task in self.backup.tasks:
            if task.keep is None:
                continue
            mine = [r for r in completed if r.task == task.name]
            expired.update({r.name: r for r in mine[task.keep :]})

        if self.backup.max_backups is not None:
            expired.update({r.name: r for r in completed[self.backup.max_backups :]})

        if self.backup.retention_days is not None:
            cutoff = now - timedelta(days=self.backup.retention_days)
            expired.update(
                {r.name: r for r in snapshots if (r.finished_at or r.requested_at) < cutoff}
            )

        # The newest base of every storage always survives.
        for storage_name in {r.storage_name for r in completed}:
            newest = self._latest_base(storage_name)
            if newest is not None:
                expired.pop(newest.name, None)

        # Chunks older than the oldest surviving base can no longer be replayed.
        for storage_name in {r.storage_name for r in self.catalog.records}:
            bases = [
                r
                for r in self.catalog.records
                if r.is_base
                and r.state == BackupState.COMPLETED
                and r.storage_name == storage_name
                and r.name not in expired
                and r.last_write
            ]
            if not bases:
                continue
            floor = min(b.last_write for b in bases)
            for r in self.catalog.records:
                if (
                    r.type == BackupType.PITR_CHUNK
                    and r.storage_name == storage_name
                    and r.chunk_end
                    and r.chunk_end <= floor
                    and r.name not in protected
                ):
                    expired[r.name] = r

        return sorted(expired.values(), key=lambda r: r.name)

    async def _prune(self, outcome: BackupOutcome, observed: ObservedState) -> None:
        protected = {r.name for r in observed.backup_requests}
        for restore in outcome.restores:
            if not restore.phase.is_terminal:
                protected.add(restore.base_backup or "")
                protected.update(restore.increments)

        for record in self._expired(protected):
            try:
                await self._delete_record(record, observed)
            except TransientInfraError as e:
                outcome.transient_errors.append(f"prune {record.name}: {e}")
                return
            outcome.pruned.append(record.name)

    async def _delete_record(self, record: BackupRecord, observed: ObservedState) -> None:
        """Drop a record from the catalog and delete its data from storage."""
        destination = self.storage(record.storage_name)
        if record.state == BackupState.COMPLETED and destination is not None:
            target = next(
                (m for members in observed.members.values() for m in members if m.ready), None
            )
            if target is not None:
                self.guard.ensure_active()
                await self.agents.start(
                    agent_name(record.name, "delete"),
                    target.host,
                    record.storage_name,
                    destination,
                    AgentMode.DELETE,
                    record.name,
                    params={"record": record.name, "type": record.type.value},
                    credentials_secret=self.credentials_secret,
                )
        logger.info(f"Pruning backup {record.name}")
        self.catalog.remove(record.name)
        self.dirty = True

    async def delete_backup(self, name: str, observed: ObservedState) -> Optional[BackupRecord]:
        """
        Remove a backup on request (its MongoBackup resource was deleted).

        Returns:
            The removed record, or None if it was unknown
        """
        if observed.catalog is None:
            raise TransientInfraError("backup catalog not observed")
        self.catalog = observed.catalog.model_copy(deep=True)
        record = self.catalog.get(name)
        if record is None:
            return None
        if record.state.is_active and record.agent:
            await self.agents.stop(record.agent)
        await self._delete_record(record, observed)
        return record

    async def _reap_agents(self, observed: ObservedState, outcome: BackupOutcome) -> None:
        """Stop agents whose work is over or whose owner is gone."""
        restores = {r.name: r for r in outcome.restores}
        for agent in observed.agents:
            if agent.terminating or agent.name == self.pitr_agent:
                continue
            try:
                if agent.mode == AgentMode.DELETE.value:
                    report = await self.agents.status(agent.name)
                    if report.state in (AgentState.SUCCEEDED, AgentState.FAILED):
                        if report.state == AgentState.FAILED:
                            outcome.agent_errors.append(f"delete {agent.record}: {report.error}")
                        await self.agents.stop(agent.name)
                elif agent.mode == AgentMode.RESTORE.value:
                    restore = restores.get(agent.record)
                    if restore is None or restore.phase != RestorePhase.RESTORING:
                        await self.agents.stop(agent.name)
                elif agent.mode == AgentMode.BACKUP.value:
                    record = self.catalog.get(agent.record)
                    if record is None or record.state.is_terminal:
                        await self.agents.stop(agent.name)
            except TransientInfraError as e:
                outcome.transient_errors.append(f"agent {agent.name}: {e}")

    # Restores

    def _fail_restore(self, record: RestoreRecord, error: Exception, reason: str) -> None:
        logger.error(f"Restore {record.name} failed: {error}")
        record.phase = RestorePhase.FAILED
        record.error = str(error)
        record.reason = reason
        record.finished_at = self.clock()
        record.add_condition("Ready", "False", reason, str(error))

    async def _advance_restores(
        self,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
        outcome: BackupOutcome,
    ) -> None:
        by_name = {r.name: r for r in observed.restores}
        in_progress = [
            r
            for r in outcome.restores
            if r.phase != RestorePhase.REQUESTED and not r.phase.is_terminal
        ]
        for record in sorted(outcome.restores, key=lambda r: r.name):
            if record.phase.is_terminal:
                continue
            try:
                if record.phase == RestorePhase.REQUESTED:
                    if in_progress:
                        record.add_condition(
                            "Ready", "False", "Queued", f"waiting for restore {in_progress[0].name}"
                        )
                        continue
                    self._plan_restore(record, by_name[record.name].spec)
                    if record.phase == RestorePhase.PREPARING:
                        in_progress.append(record)
                elif record.phase == RestorePhase.PREPARING:
                    await self._prepare_restore(record, observed, reports, rollout)
                elif record.phase == RestorePhase.RESTORING:
                    await self._poll_restore(record, outcome)
                elif record.phase == RestorePhase.VERIFYING:
                    self._verify_restore(record, observed, reports)
            except TransientInfraError as e:
                logger.warning(f"Restore {record.name} deferred: {e}")
                outcome.transient_errors.append(f"{record.name}: {e}")

    def _plan_restore(self, record: RestoreRecord, spec: Any) -> None:
        """Resolve the restore source; failures are final and mutate nothing."""
        try:
            if spec.pitr is not None:
                storage_name = spec.storage_name
                if spec.backup_name:
                    named = self.catalog.get(spec.backup_name)
                    if named is None:
                        raise NoBaseBackupError(f"backup '{spec.backup_name}' not found")
                    storage_name = named.storage_name
                base, chunks = self.plan_pitr_restore(
                    storage_name, spec.pitr.date, base_name=spec.backup_name
                )
                record.target_time = spec.pitr.date
            else:
                base = self.catalog.get(spec.backup_name)
                if base is None or base.state != BackupState.COMPLETED:
                    raise NoBaseBackupError(
                        f"backup '{spec.backup_name}' is not a completed backup"
                    )
                chunks = []
                record.target_time = base.last_write
            if self.storage(base.storage_name) is None:
                raise RestoreError(f"unknown storage '{base.storage_name}'")
        except RestoreError as e:
            self._fail_restore(record, e, e.reason)
            return

        record.base_backup = base.name
        record.increments = [c.name for c in chunks]
        record.replsets = [rs.name for rs in self.spec.all_replsets()]
        record.phase = RestorePhase.PREPARING
        record.isolated = True
        record.started_at = self.clock()
        record.add_condition("Ready", "False", "Preparing", "isolating replica sets")
        logger.info(
            f"Restore {record.name}: base {base.name} with {len(chunks)} oplog chunks, "
            f"isolating {record.replsets}"
        )

    async def _prepare_restore(
        self,
        record: RestoreRecord,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
    ) -> None:
        if rollout is not None:
            busy = [
                name
                for name in record.replsets
                if name in rollout.outcomes and rollout.outcomes[name].state.in_flight
            ]
            if busy:
                record.add_condition(
                    "Ready", "False", "Preparing", f"waiting for rollout of {busy}"
                )
                return
        if observed.agent(self.pitr_agent) is not None:
            record.add_condition("Ready", "False", "Preparing", "waiting for PITR to stop")
            return
        if any(r.state.is_active for r in self.catalog.records):
            record.add_condition("Ready", "False", "Preparing", "waiting for running backups")
            return

        base = self.catalog.get(record.base_backup)
        if base is None:
            error = NoBaseBackupError(f"backup {record.base_backup} vanished")
            self._fail_restore(record, error, error.reason)
            return

        targets = {}
        for name in record.replsets:
            report = reports.get(name)
            primary = next(
                (m for m in observed.replset_members(name) if report and m.name == report.primary),
                None,
            )
            if primary is None:
                record.add_condition(
                    "Ready", "False", "Preparing", f"waiting for a primary in {name}"
                )
                return
            targets[name] = primary

        for name, member in targets.items():
            agent = agent_name(record.name, "restore", name)
            self.guard.ensure_active()
            await self.agents.start(
                agent,
                member.host,
                base.storage_name,
                self.storage(base.storage_name),
                AgentMode.RESTORE,
                record.name,
                member=member.name,
                params={
                    "replset": name,
                    "base": base.name,
                    "increments": record.increments,
                    "target": record.target_time.isoformat() if record.target_time else None,
                },
                credentials_secret=self.credentials_secret,
            )
            record.agents[name] = agent
        record.phase = RestorePhase.RESTORING
        record.add_condition("Ready", "False", "Restoring", f"restoring from {base.name}")

    async def _poll_restore(self, record: RestoreRecord, outcome: BackupOutcome) -> None:
        reports = {name: await self.agents.status(agent) for name, agent in record.agents.items()}
        failed = {
            name: r
            for name, r in reports.items()
            if r.state in (AgentState.FAILED, AgentState.ABSENT)
        }
        if failed:
            name, report = next(iter(failed.items()))
            error = AgentError(f"restore of {name} failed: {report.error or 'agent disappeared'}")
            outcome.agent_errors.append(f"{record.name}: {error.message}")
            for agent in record.agents.values():
                await self.agents.stop(agent)
            self._fail_restore(record, error, error.reason)
            return
        if all(r.state == AgentState.SUCCEEDED for r in reports.values()):
            for agent in record.agents.values():
                await self.agents.stop(agent)
            record.phase = RestorePhase.VERIFYING
            record.verify_passes = 0
            record.add_condition("Ready", "False", "Verifying", "waiting for replica sets")

    def _verify_restore(
        self, record: RestoreRecord, observed: ObservedState, reports: dict[str, HealthReport]
    ) -> None:
        unhealthy = []
        for name in record.replsets:
            report = reports.get(name)
            members = observed.replset_members(name)
            if (
                report is None
                or not report.primary
                or not members
                or not all(report.is_healthy(m.name) for m in members)
            ):
                unhealthy.append(name)

        if not unhealthy:
            record.phase = RestorePhase.READY
            record.isolated = False
            record.finished_at = self.clock()
            record.add_condition("Ready", "True", "Restored", "restore verified")
            logger.info(f"Restore {record.name} verified")
            return

        record.verify_passes += 1
        if record.verify_passes > self.restore_verify_max_passes:
            self._fail_restore(
                record,
                RestoreError(f"replica sets {unhealthy} did not recover after restore"),
                "VerificationTimeout",
            )

    # Persistence and finalization

    async def persist(self, outcome: BackupOutcome, observed: ObservedState) -> None:
        """Write the catalog, the MongoBackup projections and changed restores."""
        if outcome.catalog is not None and self.dirty:
            await self.store.save_catalog(self.catalog)
            self.dirty = False

        for request in observed.backup_requests:
            record = self.catalog.get(request.name)
            if record is None:
                continue
            projection = record.to_status()
            if projection != {k: v for k, v in request.status.items() if k in projection}:
                await self.store.project_backup(request.name, projection)

        before = {r.name: r.record for r in observed.restores}
        for record in outcome.restores:
            previous = before.get(record.name)
            if previous is None or previous.model_dump() != record.model_dump():
                await self.store.save_restore(record)

    async def finalize(self, observed: ObservedState) -> None:
        """Stop every agent and, per policy, drop the catalog."""
        for agent in observed.agents:
            if not agent.terminating:
                await self.agents.stop(agent.name)
        if self.backup is not None and self.backup.delete_metadata_on_finalize:
            await self.store.delete_catalog()
