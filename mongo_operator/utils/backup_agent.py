"""Backup agent driver.

Each agent invocation is a Kubernetes Job running the agent image against
one member. The agent reports progress by writing a ``<agent>-progress``
ConfigMap (``state``, ``lastWrite``, ``error`` and, for PITR, ``chunks``);
the Job's own completion is the terminal signal.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from mongo_operator.errors import TransientInfraError
from mongo_operator.models.observed import AgentProcess, AgentState
from mongo_operator.utils.k8s_client import K8sClient
from mongo_operator.utils.storage import StorageDestination, destination_descriptor
from mongo_operator.utils.workloads import (
    GROUP,
    LABEL_COMPONENT,
    cluster_labels,
    cluster_selector,
)

logger = logging.getLogger(__name__)

AGENT_COMPONENT = "backup-agent"
LABEL_MODE = f"{GROUP}/agent-mode"
LABEL_RECORD = f"{GROUP}/record"
LABEL_MEMBER = f"{GROUP}/member"
MAX_AGENT_NAME = 52


class AgentMode(str, Enum):
    """What an agent invocation does."""

    BACKUP = "backup"
    PITR = "pitr"
    RESTORE = "restore"
    DELETE = "delete"


@dataclass
class PITRChunk:
    """An oplog range the PITR agent finished uploading."""

    name: str
    start: datetime
    end: datetime


@dataclass
class AgentReport:
    """Progress reported by one agent invocation."""

    state: AgentState
    last_write: Optional[datetime] = None
    error: Optional[str] = None
    chunks: list[PITRChunk] = field(default_factory=list)


def agent_name(*parts: str) -> str:
    """Job name for an agent, shortened with a digest when too long."""
    name = "-".join(parts)
    if len(name) <= MAX_AGENT_NAME:
        return name
    digest = hashlib.sha256(name.encode()).hexdigest()[:8]
    return f"{name[: MAX_AGENT_NAME - 9].rstrip('-')}-{digest}"


def progress_configmap(name: str) -> str:
    return f"{name}-progress"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _parse_chunks(raw: Optional[str]) -> list[PITRChunk]:
    if not raw:
        return []
    chunks = []
    for entry in json.loads(raw):
        chunks.append(
            PITRChunk(
                name=entry["name"],
                start=_parse_time(entry["start"]),
                end=_parse_time(entry["end"]),
            )
        )
    return chunks


class BackupAgentDriver:
    """
    Starts, polls and stops backup agents for one cluster.

    Every call is bounded by ``timeout``; a timeout surfaces as
    ``TransientInfraError`` so the orchestrator can defer that record only.
    """

    def __init__(self, k8s: K8sClient, cluster: str, image: str, timeout: float = 10.0):
        """
        Initialize agent driver.

        Args:
            k8s: Kubernetes client scoped to the cluster namespace
            cluster: Cluster name
            image: Agent image
            timeout: Per-call timeout in seconds
        """
        self.k8s = k8s
        self.cluster = cluster
        self.image = image
        self.timeout = timeout

    async def _bounded(self, coro: Any, action: str) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientInfraError(f"agent {action} timed out") from e

    def build_job(
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
    ) -> dict[str, Any]:
        """
        Create Kubernetes Job manifest for one agent invocation.

        Args:
            name: Agent (Job) name
            host: Database host the agent connects to
            storage_name: Storage name
            destination: Storage destination
            mode: Agent mode
            record: Backup record or restore the agent works for
            member: Member the agent reads from
            params: Mode specific parameters
            credentials_secret: Secret with the backup user's password

        Returns:
            Kubernetes Job manifest
        """
        labels = {
            **cluster_labels(self.cluster, AGENT_COMPONENT),
            LABEL_MODE: mode.value,
            LABEL_RECORD: record[:63],
        }
        if member:
            labels[LABEL_MEMBER] = member

        env = [
            {"name": "AGENT_MODE", "value": mode.value},
            {"name": "AGENT_NAME", "value": name},
            {"name": "AGENT_TARGET_HOST", "value": host},
            {"name": "AGENT_PROGRESS_CONFIGMAP", "value": progress_configmap(name)},
            {
                "name": "AGENT_DESTINATION",
                "value": json.dumps(destination_descriptor(storage_name, destination)),
            },
            {"name": "AGENT_PARAMS", "value": json.dumps(params or {}, default=str)},
        ]
        if credentials_secret:
            env.append(
                {
                    "name": "AGENT_PASSWORD",
                    "valueFrom": {"secretKeyRef": {"name": credentials_secret, "key": "backup"}},
                }
            )

        container: dict[str, Any] = {
            "name": "agent",
            "image": self.image,
            "env": env,
            "volumeMounts": [],
        }
        if destination.credentials_secret:
            container["envFrom"] = [{"secretRef": {"name": destination.credentials_secret}}]

        volumes = []
        if destination.filesystem:
            container["volumeMounts"].append(
                {"name": "backups", "mountPath": destination.filesystem.path}
            )
            volumes.append(
                {
                    "name": "backups",
                    "persistentVolumeClaim": {"claimName": destination.filesystem.claim_name},
                }
            )

        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {"name": name, "namespace": self.k8s.namespace, "labels": labels},
            "spec": {
                "backoffLimit": 0,
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "restartPolicy": "Never",
                        "containers": [container],
                        "volumes": volumes,
                    },
                },
            },
        }

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
    ) -> None:
        """Start an agent. Starting an agent that already exists is a no-op."""
        manifest = self.build_job(
            name, host, storage_name, destination, mode, record, member, params, credentials_secret
        )
        logger.info(f"Starting {mode.value} agent {name} against {host}")
        await self._bounded(self.k8s.create_job(manifest), f"start {name}")

    async def status(self, name: str) -> AgentReport:
        """
        Poll an agent.

        Returns:
            The agent's report; ``absent`` if the agent does not exist
        """
        job = await self._bounded(self.k8s.get_job(name), f"status {name}")
        if job is None:
            return AgentReport(state=AgentState.ABSENT)

        progress = await self._bounded(
            self.k8s.get_configmap(progress_configmap(name)), f"progress {name}"
        )
        data = (progress.data or {}) if progress else {}
        report = AgentReport(
            state=AgentState.PENDING,
            last_write=_parse_time(data.get("lastWrite")),
            error=data.get("error"),
            chunks=_parse_chunks(data.get("chunks")),
        )

        job_status = job.status
        if job_status and (job_status.succeeded or 0) > 0:
            report.state = AgentState.SUCCEEDED
        elif job_status and (job_status.failed or 0) > 0:
            report.state = AgentState.FAILED
            report.error = report.error or "agent job failed"
        elif data.get("state") == "failed":
            report.state = AgentState.FAILED
        elif data.get("state") in ("streaming", "succeeded"):
            report.state = AgentState.STREAMING
        return report

    async def stop(self, name: str) -> None:
        """Stop an agent and drop its progress record."""
        logger.info(f"Stopping agent {name}")
        await self._bounded(self.k8s.delete_job(name), f"stop {name}")
        await self._bounded(
            self.k8s.delete_configmap(progress_configmap(name)), f"stop {name}"
        )

    async def list_agents(self) -> list[AgentProcess]:
        """Every agent Job of the cluster."""
        selector = cluster_selector(self.cluster, AGENT_COMPONENT)
        jobs = await self._bounded(self.k8s.list_jobs(selector), "list")
        agents = []
        for job in jobs:
            labels = job.metadata.labels or {}
            if labels.get(LABEL_COMPONENT) != AGENT_COMPONENT:
                continue
            agents.append(
                AgentProcess(
                    name=job.metadata.name,
                    mode=labels.get(LABEL_MODE, AgentMode.BACKUP.value),
                    record=labels.get(LABEL_RECORD, ""),
                    member=labels.get(LABEL_MEMBER),
                    terminating=job.metadata.deletion_timestamp is not None,
                )
            )
        return agents
