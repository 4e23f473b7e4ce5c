"""Assembly of the observed state at the start of a pass."""

import logging
from typing import Any, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from mongo_operator.errors import TransientInfraError
from mongo_operator.models.backup import BackupCatalog, MongoBackupSpec
from mongo_operator.models.cluster import ClusterStatus
from mongo_operator.models.observed import (
    ROUTERS,
    AgentProcess,
    BackupRequest,
    MemberProcess,
    ObservedState,
    RestoreRequest,
)
from mongo_operator.models.restore import MongoRestoreSpec, RestoreRecord
from mongo_operator.utils.k8s_client import K8sClient
from mongo_operator.utils.workloads import cluster_selector, member_from_statefulset

logger = logging.getLogger(__name__)


class AgentLister(Protocol):
    async def list_agents(self) -> list[AgentProcess]: ...


class CatalogLoader(Protocol):
    async def load_catalog(self) -> BackupCatalog: ...


def restore_record(obj: dict[str, Any], cluster: str) -> RestoreRecord:
    """Rebuild a restore record from the status of a MongoRestore resource."""
    metadata = obj.get("metadata", {})
    status = obj.get("status") or {}
    known = {k: v for k, v in status.items() if k in RestoreRecord.model_fields}
    known.update(name=metadata["name"], cluster=cluster)
    try:
        record = RestoreRecord.model_validate(known)
    except PydanticValidationError:
        logger.warning(f"Discarding unreadable status of restore {metadata['name']}")
        record = RestoreRecord(name=metadata["name"], cluster=cluster)
    record.resource_version = metadata.get("resourceVersion")
    return record


class ClusterObserver:
    """
    Reads everything a pass needs about one cluster.

    Member workloads and restore requests are required: without them
    nothing can be decided safely, so a failed listing propagates. Every
    other source degrades into ``ObservedState.errors`` and leaves its field
    empty.
    """

    def __init__(self, k8s: K8sClient, agents: AgentLister, catalog: CatalogLoader):
        self.k8s = k8s
        self.agents = agents
        self.catalog = catalog

    async def observe(self, name: str, body: dict[str, Any]) -> ObservedState:
        """
        Build the observed state of a cluster.

        Args:
            name: Cluster name
            body: MongoCluster resource as delivered by the watch

        Returns:
            Observed state snapshot

        Raises:
            TransientInfraError: If member workloads or restores cannot be listed
        """
        metadata = body.get("metadata", {})
        observed = ObservedState(
            cluster=name,
            namespace=self.k8s.namespace,
            generation=metadata.get("generation") or 0,
            resource_version=metadata.get("resourceVersion"),
            deleting=metadata.get("deletionTimestamp") is not None,
            status=ClusterStatus.from_resource(body.get("status")),
        )

        await self._members(observed)
        await self._backups(observed)
        await self._requests(observed)
        return observed

    async def _members(self, observed: ObservedState) -> None:
        statefulsets = await self.k8s.list_statefulsets(cluster_selector(observed.cluster))
        for sts in statefulsets:
            member: Optional[MemberProcess] = member_from_statefulset(
                sts, observed.cluster, observed.namespace
            )
            if member is None:
                continue
            if member.replset == ROUTERS:
                observed.routers.append(member)
            else:
                observed.members.setdefault(member.replset, []).append(member)
        observed.routers.sort(key=lambda m: m.index)

    async def _backups(self, observed: ObservedState) -> None:
        # Agents and catalog are only meaningful together.
        try:
            observed.agents = await self.agents.list_agents()
            observed.catalog = await self.catalog.load_catalog()
        except TransientInfraError as e:
            logger.warning(f"Backup state of {observed.cluster} not observed: {e}")
            observed.agents = []
            observed.catalog = None
            observed.errors.append(f"backups: {e}")

    async def _requests(self, observed: ObservedState) -> None:
        try:
            backups = await self.k8s.list_custom_objects("mongobackups")
        except TransientInfraError as e:
            observed.errors.append(f"mongobackups: {e}")
            backups = []
        for obj in backups:
            spec = obj.get("spec") or {}
            if spec.get("cluster_name") != observed.cluster:
                continue
            metadata = obj.get("metadata", {})
            try:
                parsed = MongoBackupSpec(**spec)
            except PydanticValidationError as e:
                logger.warning(f"Ignoring invalid backup request {metadata.get('name')}: {e}")
                continue
            observed.backup_requests.append(
                BackupRequest(
                    name=metadata["name"],
                    spec=parsed,
                    resource_version=metadata.get("resourceVersion"),
                    status=obj.get("status") or {},
                )
            )

        # Required: an unseen restore must not lose its isolation.
        restores = await self.k8s.list_custom_objects("mongorestores")
        for obj in restores:
            spec = obj.get("spec") or {}
            if spec.get("cluster_name") != observed.cluster:
                continue
            metadata = obj.get("metadata", {})
            if metadata.get("deletionTimestamp"):
                continue
            try:
                parsed = MongoRestoreSpec(**spec)
            except PydanticValidationError as e:
                logger.warning(f"Ignoring invalid restore request {metadata.get('name')}: {e}")
                continue
            observed.restores.append(
                RestoreRequest(
                    name=metadata["name"],
                    spec=parsed,
                    record=restore_record(obj, observed.cluster),
                )
            )
