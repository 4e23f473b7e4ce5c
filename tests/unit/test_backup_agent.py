"""Tests for the backup agent driver."""

import json
from datetime import datetime, timezone
from types import SimpleNamespace

from conftest import CLUSTER, FakeK8s
from mongo_operator.models.observed import AgentState
from mongo_operator.utils.backup_agent import (
    MAX_AGENT_NAME,
    AgentMode,
    BackupAgentDriver,
    agent_name,
)
from mongo_operator.utils.storage import (
    FilesystemConfig,
    S3StorageConfig,
    StorageDestination,
    StorageType,
)

S3 = StorageDestination(
    type=StorageType.S3, s3=S3StorageConfig(bucket="backups", credentials_secret="aws")
)
HOST = "demo-rs0-0-0.demo-rs0.default.svc.cluster.local:27017"


def _driver(k8s: FakeK8s) -> BackupAgentDriver:
    return BackupAgentDriver(k8s, CLUSTER, image="agent:1.0")


def _env(manifest: dict) -> dict:
    container = manifest["spec"]["template"]["spec"]["containers"][0]
    return {e["name"]: e.get("value", e.get("valueFrom")) for e in container["env"]}


class TestAgentName:
    """Tests for agent naming."""

    def test_short_name(self) -> None:
        """Test that short names are joined as is."""
        assert agent_name("b1", "backup") == "b1-backup"

    def test_long_name_is_shortened(self) -> None:
        """Test that long names keep a prefix and gain a stable digest."""
        name = agent_name("restore-" + "x" * 60, "rs0")

        assert len(name) <= MAX_AGENT_NAME
        assert name.startswith("restore-xxx")
        assert name == agent_name("restore-" + "x" * 60, "rs0")
        assert name != agent_name("restore-" + "x" * 60, "rs1")


class TestBuildJob:
    """Tests for the agent Job manifest."""

    def test_backup_job(self, k8s: FakeK8s) -> None:
        """Test env, labels and credentials of a backup agent."""
        manifest = _driver(k8s).build_job(
            "b1-backup",
            HOST,
            "s3main",
            S3,
            AgentMode.BACKUP,
            "b1",
            member="demo-rs0-1",
            params={"type": "full"},
            credentials_secret="demo-users",
        )

        env = _env(manifest)
        assert env["AGENT_MODE"] == "backup"
        assert env["AGENT_TARGET_HOST"] == HOST
        assert env["AGENT_PROGRESS_CONFIGMAP"] == "b1-backup-progress"
        assert json.loads(env["AGENT_DESTINATION"])["bucket"] == "backups"
        assert json.loads(env["AGENT_PARAMS"]) == {"type": "full"}
        assert env["AGENT_PASSWORD"] == {
            "secretKeyRef": {"name": "demo-users", "key": "backup"}
        }
        container = manifest["spec"]["template"]["spec"]["containers"][0]
        assert container["envFrom"] == [{"secretRef": {"name": "aws"}}]
        labels = manifest["metadata"]["labels"]
        assert labels["mongo.dbops.io/record"] == "b1"
        assert labels["mongo.dbops.io/member"] == "demo-rs0-1"
        assert manifest["spec"]["backoffLimit"] == 0

    def test_filesystem_mount(self, k8s: FakeK8s) -> None:
        """Test that a filesystem destination mounts its claim."""
        destination = StorageDestination(
            type=StorageType.FILESYSTEM, filesystem=FilesystemConfig(claim_name="pvc")
        )

        manifest = _driver(k8s).build_job(
            "r1-restore-rs0", HOST, "local", destination, AgentMode.RESTORE, "r1"
        )

        spec = manifest["spec"]["template"]["spec"]
        assert spec["volumes"][0]["persistentVolumeClaim"]["claimName"] == "pvc"
        assert spec["containers"][0]["volumeMounts"][0]["mountPath"] == "/backups"
        assert "AGENT_PASSWORD" not in _env(manifest)


class TestAgentStatus:
    """Tests for polling and stopping agents."""

    async def test_absent(self, k8s: FakeK8s) -> None:
        """Test an agent that was never started."""
        report = await _driver(k8s).status("b1-backup")

        assert report.state == AgentState.ABSENT

    async def test_pending_then_succeeded(self, k8s: FakeK8s) -> None:
        """Test that the Job outcome is the terminal signal."""
        driver = _driver(k8s)
        await driver.start("b1-backup", HOST, "s3main", S3, AgentMode.BACKUP, "b1")

        assert (await driver.status("b1-backup")).state == AgentState.PENDING

        k8s.jobs["b1-backup"].status.succeeded = 1
        assert (await driver.status("b1-backup")).state == AgentState.SUCCEEDED

    async def test_failed_job(self, k8s: FakeK8s) -> None:
        """Test that a failed Job reports an error."""
        driver = _driver(k8s)
        await driver.start("b1-backup", HOST, "s3main", S3, AgentMode.BACKUP, "b1")
        k8s.jobs["b1-backup"].status.failed = 1

        report = await driver.status("b1-backup")

        assert report.state == AgentState.FAILED
        assert report.error == "agent job failed"

    async def test_streaming_with_chunks(self, k8s: FakeK8s) -> None:
        """Test PITR progress read from the progress ConfigMap."""
        driver = _driver(k8s)
        await driver.start("demo-pitr", HOST, "s3main", S3, AgentMode.PITR, "pitr")
        chunks = [
            {"name": "c1", "start": "2024-05-01T01:00:00Z", "end": "2024-05-01T01:10:00Z"}
        ]
        await k8s.apply_configmap(
            "demo-pitr-progress",
            {
                "state": "streaming",
                "lastWrite": "2024-05-01T01:10:00Z",
                "chunks": json.dumps(chunks),
            },
        )

        report = await driver.status("demo-pitr")

        assert report.state == AgentState.STREAMING
        assert report.last_write == datetime(2024, 5, 1, 1, 10, tzinfo=timezone.utc)
        assert report.chunks[0].name == "c1"
        assert report.chunks[0].start == datetime(2024, 5, 1, 1, 0, tzinfo=timezone.utc)

    async def test_stop_removes_job_and_progress(self, k8s: FakeK8s) -> None:
        """Test that stopping an agent drops its Job and progress record."""
        driver = _driver(k8s)
        await driver.start("b1-backup", HOST, "s3main", S3, AgentMode.BACKUP, "b1")
        await k8s.apply_configmap("b1-backup-progress", {"state": "streaming"})

        await driver.stop("b1-backup")

        assert k8s.jobs == {}
        assert "b1-backup-progress" not in k8s.configmaps

    async def test_list_agents(self, k8s: FakeK8s) -> None:
        """Test that only agent Jobs are listed."""
        driver = _driver(k8s)
        await driver.start(
            "b1-backup", HOST, "s3main", S3, AgentMode.BACKUP, "b1", member="demo-rs0-1"
        )
        k8s.jobs["unrelated"] = SimpleNamespace(
            metadata=SimpleNamespace(name="unrelated", labels={}, deletion_timestamp=None),
            status=SimpleNamespace(succeeded=0, failed=0),
        )

        agents = await driver.list_agents()

        assert [(a.name, a.mode, a.record, a.member) for a in agents] == [
            ("b1-backup", "backup", "b1", "demo-rs0-1")
        ]
