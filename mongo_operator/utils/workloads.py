"""Workload manifests for cluster members.

Every database member and every router runs as its own single-replica
StatefulSet so that a member can be created, updated, restarted or removed
individually by identity.
"""

import json
import logging
from typing import Any, Optional

from mongo_operator.core.topology import DesiredMember, ReplicaSetRole, TopologyIndex
from mongo_operator.models.cluster import ClusterSpec
from mongo_operator.models.observed import MONGOD, MONGOS, ROUTERS, MemberProcess
from mongo_operator.utils.k8s_client import K8sClient
from mongo_operator.utils.mongo_admin import MONGODB_PORT

logger = logging.getLogger(__name__)

GROUP = "mongo.dbops.io"
LABEL_NAME = "app.kubernetes.io/name"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_REPLSET = f"{GROUP}/replset"
LABEL_INDEX = f"{GROUP}/member-index"
ANNOTATION_CONFIG_HASH = f"{GROUP}/config-hash"
ANNOTATION_RESTART_TOKEN = f"{GROUP}/restart-token"
MANAGED_BY = "mongo-operator"


def cluster_labels(cluster: str, component: Optional[str] = None) -> dict[str, str]:
    labels = {
        LABEL_NAME: "mongodb",
        LABEL_INSTANCE: cluster,
        LABEL_MANAGED_BY: MANAGED_BY,
    }
    if component:
        labels[LABEL_COMPONENT] = component
    return labels


def cluster_selector(cluster: str, component: Optional[str] = None) -> str:
    return ",".join(f"{k}={v}" for k, v in cluster_labels(cluster, component).items())


def service_name(cluster: str, replset: str) -> str:
    return f"{cluster}-mongos" if replset == ROUTERS else f"{cluster}-{replset}"


def member_host(cluster: str, namespace: str, replset: str, name: str) -> str:
    """Stable DNS name of a member's pod behind its headless service."""
    return f"{name}-0.{service_name(cluster, replset)}.{namespace}.svc.cluster.local:{MONGODB_PORT}"


def owner_reference(body: dict[str, Any]) -> dict[str, Any]:
    metadata = body.get("metadata", {})
    return {
        "apiVersion": body.get("apiVersion", f"{GROUP}/v1alpha1"),
        "kind": body.get("kind", "MongoCluster"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def config_map_name(cluster: str, replset: str) -> str:
    return f"{service_name(cluster, replset)}-config"


def build_headless_service(
    cluster: str, namespace: str, replset: str, owner: Optional[dict[str, Any]] = None
) -> dict[str, Any]:
    component = MONGOS if replset == ROUTERS else MONGOD
    selector = {**cluster_labels(cluster, component), LABEL_REPLSET: replset}
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": service_name(cluster, replset),
            "namespace": namespace,
            "labels": selector,
            "ownerReferences": [owner] if owner else [],
        },
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": selector,
            "ports": [{"name": "mongodb", "port": MONGODB_PORT, "targetPort": MONGODB_PORT}],
        },
    }


def _member_args(
    member: DesiredMember, index: TopologyIndex, config_hosts: list[str]
) -> list[str]:
    if member.component == MONGOS:
        return [
            "mongos",
            "--bind_ip_all",
            "--port",
            str(MONGODB_PORT),
            "--configdb",
            f"{index.config_server}/{','.join(config_hosts)}",
        ]

    args = ["mongod", "--bind_ip_all", "--port", str(MONGODB_PORT), "--replSet", member.replset]
    role = index.role(member.replset)
    if role == ReplicaSetRole.CONFIG:
        args.append("--configsvr")
    elif role == ReplicaSetRole.SHARD:
        args.append("--shardsvr")
    if member.configuration:
        args.extend(["--config", "/etc/mongod/mongod.conf"])
    return args


def build_member_statefulset(
    member: DesiredMember,
    cluster: str,
    namespace: str,
    index: TopologyIndex,
    config_hosts: list[str],
    image_pull_policy: str = "IfNotPresent",
    owner: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """
    Build the single-replica StatefulSet of one member.

    Args:
        member: Desired member
        cluster: Cluster name
        namespace: Namespace
        index: Topology lookup table (role of the member's replica set)
        config_hosts: Config server hosts (routers only)
        image_pull_policy: Image pull policy
        owner: Owner reference to the MongoCluster

    Returns:
        StatefulSet manifest
    """
    labels = {
        **cluster_labels(cluster, member.component),
        LABEL_REPLSET: member.replset,
        LABEL_INDEX: str(member.index),
    }
    annotations = {
        ANNOTATION_CONFIG_HASH: member.config_hash,
        ANNOTATION_RESTART_TOKEN: member.restart_token,
    }

    container: dict[str, Any] = {
        "name": member.component,
        "image": member.image,
        "imagePullPolicy": image_pull_policy,
        "args": _member_args(member, index, config_hosts),
        "ports": [{"name": "mongodb", "containerPort": MONGODB_PORT}],
        "readinessProbe": {
            "tcpSocket": {"port": MONGODB_PORT},
            "initialDelaySeconds": 10,
            "periodSeconds": 10,
        },
        "volumeMounts": [],
    }
    volumes: list[dict[str, Any]] = []
    claim_templates: list[dict[str, Any]] = []

    if member.configuration:
        container["volumeMounts"].append({"name": "config", "mountPath": "/etc/mongod"})
        volumes.append(
            {
                "name": "config",
                "configMap": {"name": config_map_name(cluster, member.replset)},
            }
        )

    if member.storage:
        container["volumeMounts"].append({"name": "data", "mountPath": "/data/db"})
        claim_templates.append(
            {
                "metadata": {"name": "data", "labels": labels},
                "spec": {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": member.storage}},
                },
            }
        )

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": member.name,
            "namespace": namespace,
            "labels": labels,
            "annotations": annotations,
            "ownerReferences": [owner] if owner else [],
        },
        "spec": {
            "replicas": 1,
            "serviceName": service_name(cluster, member.replset),
            "selector": {
                "matchLabels": {
                    LABEL_INSTANCE: cluster,
                    LABEL_REPLSET: member.replset,
                    LABEL_INDEX: str(member.index),
                }
            },
            "updateStrategy": {"type": "RollingUpdate"},
            "template": {
                "metadata": {"labels": labels, "annotations": annotations},
                "spec": {"containers": [container], "volumes": volumes},
            },
            "volumeClaimTemplates": claim_templates,
        },
    }


def member_from_statefulset(sts: Any, cluster: str, namespace: str) -> Optional[MemberProcess]:
    """Translate a member StatefulSet into a MemberProcess, or None if foreign."""
    metadata = sts.metadata
    labels = metadata.labels or {}
    replset = labels.get(LABEL_REPLSET)
    raw_index = labels.get(LABEL_INDEX)
    if replset is None or raw_index is None or not raw_index.isdigit():
        return None

    template = sts.spec.template
    annotations = (template.metadata.annotations or {}) if template.metadata else {}
    containers = template.spec.containers or []
    image = containers[0].image if containers else ""

    storage = None
    for claim in sts.spec.volume_claim_templates or []:
        requests = (claim.spec.resources.requests or {}) if claim.spec.resources else {}
        storage = requests.get("storage", storage)

    status = sts.status
    ready = bool(
        status
        and (status.ready_replicas or 0) >= 1
        and (status.observed_generation or 0) >= (metadata.generation or 0)
        and (not status.update_revision or status.update_revision == status.current_revision)
    )

    return MemberProcess(
        name=metadata.name,
        replset=ROUTERS if labels.get(LABEL_COMPONENT) == MONGOS else replset,
        index=int(raw_index),
        image=image,
        config_hash=annotations.get(ANNOTATION_CONFIG_HASH, ""),
        storage=storage,
        restart_token=annotations.get(ANNOTATION_RESTART_TOKEN, ""),
        ready=ready,
        terminating=metadata.deletion_timestamp is not None,
        host=member_host(cluster, namespace, replset, metadata.name),
        component=labels.get(LABEL_COMPONENT, MONGOD),
    )


class ClusterWorkloads:
    """
    Platform mutations for one cluster's members.

    Each call creates, updates, restarts or deletes exactly one member
    workload. All calls are idempotent.
    """

    def __init__(
        self,
        k8s: K8sClient,
        cluster: str,
        spec: ClusterSpec,
        index: TopologyIndex,
        owner: Optional[dict[str, Any]] = None,
    ):
        self.k8s = k8s
        self.cluster = cluster
        self.namespace = k8s.namespace
        self.spec = spec
        self.index = index
        self.owner = owner

    def member_host(self, replset: str, name: str) -> str:
        return member_host(self.cluster, self.namespace, replset, name)

    def config_server_hosts(self) -> list[str]:
        if not self.spec.sharding.enabled:
            return []
        cfg = self.spec.sharding.config_server
        return [
            self.member_host(cfg.name, f"{self.cluster}-{cfg.name}-{i}") for i in range(cfg.size)
        ]

    def _manifest(self, member: DesiredMember) -> dict[str, Any]:
        return build_member_statefulset(
            member,
            self.cluster,
            self.namespace,
            self.index,
            self.config_server_hosts(),
            self.spec.image_pull_policy,
            self.owner,
        )

    async def _ensure_support(self, member: DesiredMember) -> None:
        await self.k8s.ensure_service(
            build_headless_service(self.cluster, self.namespace, member.replset, self.owner)
        )
        if member.configuration:
            await self.k8s.apply_configmap(
                config_map_name(self.cluster, member.replset),
                {"mongod.conf": json.dumps(member.configuration, indent=2, sort_keys=True)},
                labels=cluster_labels(self.cluster, member.component),
                owner=self.owner,
            )

    async def create_member(self, member: DesiredMember) -> None:
        logger.info(f"Creating member {member.name}")
        await self._ensure_support(member)
        await self.k8s.create_statefulset(self._manifest(member))

    async def update_member(self, member: DesiredMember) -> None:
        logger.info(f"Updating member {member.name} to image {member.image}")
        await self._ensure_support(member)
        await self.k8s.replace_statefulset_template(member.name, self._manifest(member))

    async def restart_member(self, member: DesiredMember) -> None:
        logger.info(f"Restarting member {member.name}")
        await self.k8s.patch_statefulset(
            member.name,
            {
                "spec": {
                    "template": {
                        "metadata": {
                            "annotations": {ANNOTATION_RESTART_TOKEN: member.restart_token}
                        }
                    }
                }
            },
        )

    async def delete_member(self, member: MemberProcess) -> None:
        logger.info(f"Deleting member {member.name}")
        await self.k8s.delete_statefulset(member.name)
