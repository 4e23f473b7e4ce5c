"""Tests for the backup and restore orchestrator."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from conftest import CLUSTER, NAMESPACE, health_report, make_members
from mongo_operator.core.backup import (
    BackupOrchestrator,
    isolated_replsets,
    latest_restorable_time,
)
from mongo_operator.errors import IncrementGapError, NoBaseBackupError, TransientInfraError
from mongo_operator.models.backup import (
    BackupCatalog,
    BackupRecord,
    BackupState,
    BackupType,
    MongoBackupSpec,
)
from mongo_operator.models.cluster import (
    BackupSpec,
    BackupTask,
    ClusterSpec,
    PITRSpec,
    ReplicaSetSpec,
)
from mongo_operator.models.observed import (
    AgentProcess,
    AgentState,
    BackupRequest,
    ObservedState,
    RestoreRequest,
)
from mongo_operator.models.restore import (
    MongoRestoreSpec,
    PITRTarget,
    RestorePhase,
    RestoreRecord,
)
from mongo_operator.utils.backup_agent import AgentMode, AgentReport, PITRChunk
from mongo_operator.utils.storage import S3StorageConfig, StorageDestination, StorageType

NOW = datetime(2024, 5, 1, 2, 30, tzinfo=timezone.utc)
T0 = NOW - timedelta(hours=1)


def _spec(**backup) -> ClusterSpec:
    storages = {
        "s3main": StorageDestination(
            type=StorageType.S3, s3=S3StorageConfig(bucket="mongo-backups")
        )
    }
    return ClusterSpec(
        replsets=[ReplicaSetSpec(name="rs0")],
        backup=BackupSpec(storages=storages, **backup),
    )


def _orchestrator(agents, store, guard, spec: Optional[ClusterSpec] = None, now=NOW):
    return BackupOrchestrator(CLUSTER, spec or _spec(), agents, store, guard, clock=lambda: now)


def _observed(
    catalog: Optional[BackupCatalog] = None,
    requests: tuple = (),
    restores: tuple = (),
    agents: tuple = (),
    unreachable: tuple[int, ...] = (),
):
    members = make_members("rs0", 3)
    observed = ObservedState(
        cluster=CLUSTER,
        namespace=NAMESPACE,
        members={"rs0": members},
        catalog=catalog if catalog is not None else BackupCatalog(),
        backup_requests=list(requests),
        restores=list(restores),
        agents=list(agents),
    )
    return observed, {"rs0": health_report("rs0", members, unreachable=unreachable)}


def _completed(name: str, last_write: datetime, storage: str = "s3main") -> BackupRecord:
    return BackupRecord(
        name=name,
        cluster=CLUSTER,
        storage_name=storage,
        state=BackupState.COMPLETED,
        requested_at=last_write - timedelta(minutes=5),
        finished_at=last_write,
        last_write=last_write,
    )


def _chunk(name: str, start: datetime, end: datetime) -> BackupRecord:
    return BackupRecord(
        name=name,
        cluster=CLUSTER,
        storage_name="s3main",
        type=BackupType.PITR_CHUNK,
        state=BackupState.COMPLETED,
        requested_at=start,
        chunk_start=start,
        chunk_end=end,
        last_write=end,
    )


def _catalog(*records: BackupRecord) -> BackupCatalog:
    catalog = BackupCatalog()
    for record in records:
        catalog.put(record)
    return catalog


def _backup_request(name: str) -> BackupRequest:
    return BackupRequest(
        name=name, spec=MongoBackupSpec(cluster_name=CLUSTER, storage_name="s3main")
    )


def _restore_request(record: Optional[RestoreRecord] = None, **spec) -> RestoreRequest:
    return RestoreRequest(
        name="r1",
        spec=MongoRestoreSpec(cluster_name=CLUSTER, **spec),
        record=record or RestoreRecord(name="r1", cluster=CLUSTER),
    )


class TestBackupRequests:
    """Tests for registering backup requests."""

    def test_request_is_idempotent(self, agents, store, guard) -> None:
        """Test that requesting the same backup twice yields one record."""
        orchestrator = _orchestrator(agents, store, guard)

        first = orchestrator.request_backup("b1", "s3main")
        first.state = BackupState.COMPLETED
        second = orchestrator.request_backup("b1", "s3main", BackupType.INCREMENTAL)

        assert second is first
        assert second.state == BackupState.COMPLETED
        assert second.type == BackupType.FULL
        assert len(orchestrator.catalog.records) == 1

    def test_unknown_storage_fails_record(self, agents, store, guard) -> None:
        """Test that a request against an undeclared storage fails immediately."""
        orchestrator = _orchestrator(agents, store, guard)

        record = orchestrator.request_backup("b1", "nowhere")

        assert record.state == BackupState.FAILED
        assert record.error == "unknown storage 'nowhere'"

    def test_scheduled_backup_named_after_tick(self, agents, store, guard) -> None:
        """Test that a schedule requests its latest tick exactly once."""
        spec = _spec(
            tasks=[BackupTask(name="nightly", schedule="0 2 * * *", storage_name="s3main")]
        )
        orchestrator = _orchestrator(agents, store, guard, spec=spec)

        requested = orchestrator.request_scheduled()
        assert [r.name for r in requested] == ["demo-nightly-20240501020000"]
        assert requested[0].task == "nightly"
        assert orchestrator.request_scheduled() == []

    def test_disabled_task_not_requested(self, agents, store, guard) -> None:
        """Test that disabled schedules request nothing."""
        spec = _spec(
            tasks=[
                BackupTask(
                    name="nightly", schedule="0 2 * * *", storage_name="s3main", enabled=False
                )
            ]
        )
        orchestrator = _orchestrator(agents, store, guard, spec=spec)

        assert orchestrator.request_scheduled() == []


class TestBackupLifecycle:
    """Tests for advancing backup records as agents report."""

    async def test_backup_runs_to_completion(self, agents, store, guard) -> None:
        """Test requested -> starting -> completed through the agent."""
        observed, reports = _observed(requests=(_backup_request("b1"),))
        orchestrator = _orchestrator(agents, store, guard)

        outcome = await orchestrator.reconcile(observed, reports)
        await orchestrator.persist(outcome, observed)

        assert outcome.started == ["b1"]
        assert agents.started[0]["name"] == "b1-backup"
        assert agents.started[0]["mode"] == AgentMode.BACKUP
        assert agents.started[0]["member"] == "demo-rs0-1"
        assert store.catalog.get("b1").state == BackupState.STARTING
        assert store.projections["b1"]["state"] == "starting"

        agents.reports["b1-backup"] = AgentReport(state=AgentState.SUCCEEDED, last_write=NOW)
        observed, reports = _observed(catalog=store.catalog, requests=(_backup_request("b1"),))
        orchestrator = _orchestrator(agents, store, guard)

        outcome = await orchestrator.reconcile(observed, reports)

        record = outcome.catalog.get("b1")
        assert outcome.completed == ["b1"]
        assert record.state == BackupState.COMPLETED
        assert record.last_write == NOW
        assert agents.stopped == ["b1-backup"]

    async def test_agent_failure_recorded(self, agents, store, guard) -> None:
        """Test that an agent failure fails the record without failing the pass."""
        record = BackupRecord(
            name="b1",
            cluster=CLUSTER,
            storage_name="s3main",
            state=BackupState.RUNNING,
            requested_at=NOW,
            started_at=NOW,
            agent="b1-backup",
        )
        agents.reports["b1-backup"] = AgentReport(state=AgentState.FAILED, error="disk full")
        observed, reports = _observed(catalog=_catalog(record))

        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)

        assert outcome.catalog.get("b1").state == BackupState.FAILED
        assert outcome.catalog.get("b1").error == "disk full"
        assert outcome.agent_errors == ["b1: disk full"]
        assert outcome.transient_errors == []

    async def test_agent_start_timeout(self, agents, store, guard) -> None:
        """Test that an agent which never starts streaming fails the record."""
        record = BackupRecord(
            name="b1",
            cluster=CLUSTER,
            storage_name="s3main",
            state=BackupState.STARTING,
            requested_at=NOW - timedelta(minutes=20),
            started_at=NOW - timedelta(minutes=20),
            agent="b1-backup",
        )
        agents.reports["b1-backup"] = AgentReport(state=AgentState.PENDING)
        observed, reports = _observed(catalog=_catalog(record))

        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)

        assert outcome.catalog.get("b1").state == BackupState.FAILED
        assert outcome.failed == ["b1"]

    async def test_backup_waits_for_healthy_member(self, agents, store, guard) -> None:
        """Test that no agent starts while no member is eligible."""
        observed, reports = _observed(
            requests=(_backup_request("b1"),), unreachable=(0, 1, 2)
        )

        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)

        assert agents.started == []
        assert outcome.catalog.get("b1").state == BackupState.REQUESTED
        assert "eligible member" in outcome.message

    async def test_unobserved_catalog_changes_nothing(self, agents, store, guard) -> None:
        """Test that a pass without the catalog starts no agents."""
        observed, reports = _observed(requests=(_backup_request("b1"),))
        observed.catalog = None

        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)

        assert outcome.catalog is None
        assert agents.started == []


class TestPITR:
    """Tests for point-in-time recovery planning and oplog capture."""

    def test_no_base_backup_fails_fast(self, agents, store, guard) -> None:
        """Test that a PITR target with no prior completed backup is rejected."""
        orchestrator = _orchestrator(agents, store, guard)
        orchestrator.request_backup("b1", "s3main")

        with pytest.raises(NoBaseBackupError, match="no base backup available"):
            orchestrator.plan_pitr_restore("s3main", NOW)

    def test_plan_selects_latest_base_and_chunks(self, agents, store, guard) -> None:
        """Test that the plan uses the latest base and the chunks up to the target."""
        orchestrator = _orchestrator(agents, store, guard)
        c1 = _chunk("c1", T0 - timedelta(minutes=5), T0 + timedelta(minutes=10))
        c2 = _chunk("c2", T0 + timedelta(minutes=10), T0 + timedelta(minutes=20))
        c3 = _chunk("c3", T0 + timedelta(minutes=20), T0 + timedelta(minutes=30))
        orchestrator.catalog = _catalog(
            _completed("old", T0 - timedelta(days=1)), _completed("b1", T0), c1, c2, c3
        )

        base, chunks = orchestrator.plan_pitr_restore("s3main", T0 + timedelta(minutes=15))

        assert base.name == "b1"
        assert [c.name for c in chunks] == ["c1", "c2"]

    def test_gap_in_chunks_detected(self, agents, store, guard) -> None:
        """Test that a hole in the oplog chain is reported."""
        orchestrator = _orchestrator(agents, store, guard)
        orchestrator.catalog = _catalog(
            _completed("b1", T0),
            _chunk("c1", T0, T0 + timedelta(minutes=10)),
            _chunk("c2", T0 + timedelta(minutes=12), T0 + timedelta(minutes=20)),
        )

        with pytest.raises(IncrementGapError, match="oplog gap"):
            orchestrator.plan_pitr_restore("s3main", T0 + timedelta(minutes=15))

    def test_target_beyond_coverage_detected(self, agents, store, guard) -> None:
        """Test that a target after the last chunk is reported."""
        orchestrator = _orchestrator(agents, store, guard)
        orchestrator.catalog = _catalog(
            _completed("b1", T0), _chunk("c1", T0, T0 + timedelta(minutes=10))
        )

        with pytest.raises(IncrementGapError, match="only covers"):
            orchestrator.plan_pitr_restore("s3main", T0 + timedelta(minutes=15))

    def test_latest_restorable_time_stops_at_gap(self) -> None:
        """Test that the restorable window ends where the chunks stop being contiguous."""
        catalog = _catalog(
            _completed("b1", T0),
            _chunk("c1", T0, T0 + timedelta(minutes=10)),
            _chunk("c2", T0 + timedelta(minutes=10), T0 + timedelta(minutes=20)),
            _chunk("c3", T0 + timedelta(minutes=25), T0 + timedelta(minutes=30)),
        )

        assert latest_restorable_time(catalog, "s3main") == T0 + timedelta(minutes=20)
        assert latest_restorable_time(catalog, "elsewhere") is None

    async def test_pitr_agent_started_after_base(self, agents, store, guard) -> None:
        """Test that the PITR agent starts once a completed base exists."""
        spec = _spec(pitr=PITRSpec(enabled=True, storage_name="s3main"))
        observed, reports = _observed(catalog=_catalog(_completed("b1", T0)))

        await _orchestrator(agents, store, guard, spec=spec).reconcile(observed, reports)

        assert agents.started_names == ["demo-pitr"]
        assert agents.started[0]["mode"] == AgentMode.PITR
        assert agents.started[0]["params"]["base"] == "b1"

    async def test_pitr_chunks_recorded(self, agents, store, guard) -> None:
        """Test that chunks reported by the PITR agent enter the catalog."""
        spec = _spec(pitr=PITRSpec(enabled=True, storage_name="s3main"))
        agents.reports["demo-pitr"] = AgentReport(
            state=AgentState.STREAMING,
            chunks=[PITRChunk("chunk-1", T0, T0 + timedelta(minutes=10))],
        )
        observed, reports = _observed(
            catalog=_catalog(_completed("b1", T0)),
            agents=(AgentProcess(name="demo-pitr", mode="pitr", record="demo-pitr"),),
        )

        outcome = await _orchestrator(agents, store, guard, spec=spec).reconcile(
            observed, reports
        )

        chunk = outcome.catalog.get("chunk-1")
        assert outcome.pitr_running is True
        assert chunk.type == BackupType.PITR_CHUNK
        assert chunk.chunk_end == T0 + timedelta(minutes=10)
        assert agents.started == []


class TestRestore:
    """Tests for restore requests."""

    async def test_pitr_restore_without_backup_fails(self, agents, store, guard) -> None:
        """Test that a PITR restore before any backup exists fails without isolating."""
        request = _restore_request(storage_name="s3main", pitr=PITRTarget(date=NOW))
        observed, reports = _observed(
            requests=(_backup_request("b1"),), restores=(request,)
        )

        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)

        record = outcome.restores[0]
        assert record.phase == RestorePhase.FAILED
        assert record.reason == "NoBaseBackup"
        assert "no base backup available" in record.error
        assert isolated_replsets(outcome.restores) == set()
        assert agents.started == []

    async def test_gap_fails_restore_without_mutation(self, agents, store, guard) -> None:
        """Test that an oplog gap fails the restore before anything is touched."""
        catalog = _catalog(
            _completed("b1", T0),
            _chunk("c1", T0, T0 + timedelta(minutes=10)),
            _chunk("c2", T0 + timedelta(minutes=12), T0 + timedelta(minutes=20)),
        )
        request = _restore_request(
            storage_name="s3main", pitr=PITRTarget(date=T0 + timedelta(minutes=15))
        )
        observed, reports = _observed(catalog=catalog, restores=(request,))

        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)

        assert outcome.restores[0].phase == RestorePhase.FAILED
        assert outcome.restores[0].reason == "IncrementGap"
        assert outcome.restores[0].isolated is False
        assert agents.started == []

    async def test_restore_runs_to_ready(self, agents, store, guard) -> None:
        """Test requested -> preparing -> restoring -> verifying -> ready."""
        catalog = _catalog(_completed("b1", T0))

        observed, reports = _observed(
            catalog=catalog, restores=(_restore_request(backup_name="b1"),)
        )
        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)
        record = outcome.restores[0]
        assert record.phase == RestorePhase.PREPARING
        assert record.isolated is True
        assert record.base_backup == "b1"
        assert isolated_replsets(outcome.restores) == {"rs0"}
        assert agents.started == []

        observed, reports = _observed(
            catalog=catalog, restores=(_restore_request(record, backup_name="b1"),)
        )
        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)
        record = outcome.restores[0]
        assert record.phase == RestorePhase.RESTORING
        assert agents.started_names == ["r1-restore-rs0"]
        assert agents.started[0]["member"] == "demo-rs0-0"
        assert agents.started[0]["mode"] == AgentMode.RESTORE

        agents.reports["r1-restore-rs0"] = AgentReport(state=AgentState.SUCCEEDED)
        observed, reports = _observed(
            catalog=catalog, restores=(_restore_request(record, backup_name="b1"),)
        )
        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)
        record = outcome.restores[0]
        assert record.phase == RestorePhase.VERIFYING
        assert agents.stopped == ["r1-restore-rs0"]

        observed, reports = _observed(
            catalog=catalog, restores=(_restore_request(record, backup_name="b1"),)
        )
        outcome = await _orchestrator(agents, store, guard).reconcile(observed, reports)
        record = outcome.restores[0]
        assert record.phase == RestorePhase.READY
        assert record.isolated is False

    async def test_restore_state_persisted(self, agents, store, guard) -> None:
        """Test that a changed restore record is written back."""
        observed, reports = _observed(
            catalog=_catalog(_completed("b1", T0)),
            restores=(_restore_request(backup_name="b1"),),
        )
        orchestrator = _orchestrator(agents, store, guard)

        outcome = await orchestrator.reconcile(observed, reports)
        await orchestrator.persist(outcome, observed)

        assert store.restores["r1"].phase == RestorePhase.PREPARING


class TestRetention:
    """Tests for pruning and deleting backups."""

    async def test_max_backups_prunes_oldest(self, agents, store, guard) -> None:
        """Test that only the newest backups survive and their data is deleted."""
        catalog = _catalog(
            _completed("b1", T0 - timedelta(days=2)),
            _completed("b2", T0 - timedelta(days=1)),
            _completed("b3", T0),
        )
        observed, reports = _observed(catalog=catalog)

        outcome = await _orchestrator(agents, store, guard, spec=_spec(max_backups=1)).reconcile(
            observed, reports
        )

        assert outcome.pruned == ["b1", "b2"]
        assert [r.name for r in outcome.catalog.records] == ["b3"]
        assert agents.started_names == ["b1-delete", "b2-delete"]
        assert all(s["mode"] == AgentMode.DELETE for s in agents.started)

    async def test_requested_backup_protected(self, agents, store, guard) -> None:
        """Test that a backup with a live MongoBackup resource is not pruned."""
        catalog = _catalog(
            _completed("b1", T0 - timedelta(days=2)),
            _completed("b2", T0 - timedelta(days=1)),
            _completed("b3", T0),
        )
        observed, reports = _observed(catalog=catalog, requests=(_backup_request("b1"),))

        outcome = await _orchestrator(agents, store, guard, spec=_spec(max_backups=1)).reconcile(
            observed, reports
        )

        assert outcome.pruned == ["b2"]

    async def test_delete_backup(self, agents, store, guard) -> None:
        """Test removing a backup whose resource was deleted."""
        observed, _ = _observed(catalog=_catalog(_completed("b1", T0)))
        orchestrator = _orchestrator(agents, store, guard)

        removed = await orchestrator.delete_backup("b1", observed)

        assert removed.name == "b1"
        assert orchestrator.catalog.get("b1") is None
        assert agents.started_names == ["b1-delete"]
        assert await orchestrator.delete_backup("missing", observed) is None

    async def test_delete_backup_needs_catalog(self, agents, store, guard) -> None:
        """Test that deleting without an observed catalog is retried."""
        observed, _ = _observed()
        observed.catalog = None

        with pytest.raises(TransientInfraError):
            await _orchestrator(agents, store, guard).delete_backup("b1", observed)

    async def test_finalize_keeps_catalog_by_default(self, agents, store, guard) -> None:
        """Test that finalization stops agents and keeps the catalog."""
        observed, _ = _observed(
            agents=(AgentProcess(name="demo-pitr", mode="pitr", record="demo-pitr"),)
        )

        await _orchestrator(agents, store, guard).finalize(observed)
        assert agents.stopped == ["demo-pitr"]
        assert store.catalog_deleted is False

        await _orchestrator(
            agents, store, guard, spec=_spec(delete_metadata_on_finalize=True)
        ).finalize(observed)
        assert store.catalog_deleted is True
