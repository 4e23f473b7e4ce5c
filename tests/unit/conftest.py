"""Shared fakes for the unit tests.

The fakes stand in for the Kubernetes API, the database admin connections,
the backup agents and the users Secret. They record what was asked of them
so tests can assert on mutations.
"""

import base64
import copy
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from mongo_operator.core.scheduler import PassGuard
from mongo_operator.core.topology import config_hash
from mongo_operator.errors import StaleResourceError, TransientInfraError
from mongo_operator.models.backup import BackupCatalog
from mongo_operator.models.cluster import DEFAULT_IMAGE
from mongo_operator.models.observed import MONGOD, MONGOS, ROUTERS, AgentState, MemberProcess
from mongo_operator.utils.backup_agent import AgentReport
from mongo_operator.utils.health import HealthReport, MemberCondition, MemberHealth
from mongo_operator.utils.workloads import member_host

CLUSTER = "demo"
NAMESPACE = "default"


# Members and health


def make_member(
    replset: str = "rs0",
    index: int = 0,
    ready: bool = True,
    image: str = DEFAULT_IMAGE,
    configuration: Optional[dict[str, Any]] = None,
    restart_token: str = "",
    terminating: bool = False,
    storage: Optional[str] = "10Gi",
) -> MemberProcess:
    """An observed member matching what the default spec desires."""
    if replset == ROUTERS:
        name = f"{CLUSTER}-mongos-{index}"
        component = MONGOS
        storage = None
    else:
        name = f"{CLUSTER}-{replset}-{index}"
        component = MONGOD
    return MemberProcess(
        name=name,
        replset=replset,
        index=index,
        image=image,
        config_hash=config_hash(configuration or {}),
        storage=storage,
        restart_token=restart_token,
        ready=ready,
        terminating=terminating,
        host=member_host(CLUSTER, NAMESPACE, replset, name),
        component=component,
    )


def make_members(replset: str, count: int, **kwargs: Any) -> list[MemberProcess]:
    return [make_member(replset, i, **kwargs) for i in range(count)]


def health_report(
    replset: str,
    members: list[MemberProcess],
    primary: Optional[int] = 0,
    unreachable: tuple[int, ...] = (),
    outside: tuple[int, ...] = (),
    reachable: bool = True,
    initialized: bool = True,
    shards: Optional[set[str]] = None,
) -> HealthReport:
    """
    Build a health report by member index.

    ``unreachable`` members stay in the replica set config, ``outside``
    members are running but not part of it.
    """
    report = HealthReport(
        replset=replset, reachable=reachable, initialized=initialized, shards=shards
    )
    for member in members:
        if member.index in unreachable:
            health = MemberHealth(
                member=member.name,
                condition=MemberCondition.UNREACHABLE,
                in_config=member.index not in outside,
            )
        elif member.index in outside:
            health = MemberHealth(member=member.name, condition=MemberCondition.INITIALIZING)
        else:
            state = "PRIMARY" if member.index == primary else "SECONDARY"
            health = MemberHealth(
                member=member.name, condition=MemberCondition.HEALTHY, state=state, in_config=True
            )
            if state == "PRIMARY":
                report.primary = member.name
        report.members[member.name] = health
    report.config_size = sum(1 for h in report.members.values() if h.in_config)
    return report


def replset_status_doc(
    replset: str,
    members: list[MemberProcess],
    primary: int = 0,
    down: tuple[int, ...] = (),
) -> dict[str, Any]:
    """A replSetGetStatus document listing ``members``."""
    entries = []
    for member in members:
        if member.index in down:
            entries.append(
                {"name": member.host, "health": 0, "stateStr": "(not reachable/healthy)"}
            )
        else:
            state = "PRIMARY" if member.index == primary else "SECONDARY"
            entries.append({"name": member.host, "health": 1, "stateStr": state})
    return {"set": replset, "members": entries}


# Database admin


class FakeAdmin:
    """Admin connection to one host; every call is recorded on the pool."""

    def __init__(self, pool: "FakeAdminPool", host: str):
        self.pool = pool
        self.host = host

    def _reach(self, op: str, *args: Any) -> None:
        if self.host in self.pool.unreachable:
            raise TransientInfraError(f"{self.host} unreachable")
        self.pool.calls.append((self.host, op, *args))

    async def ping(self) -> float:
        self._reach("ping")
        return 1.0

    async def replset_status(self) -> Optional[dict[str, Any]]:
        self._reach("replset_status")
        return self.pool.statuses.get(self.host)

    async def initiate(self, replset: str, hosts: list[str], configsvr: bool = False) -> None:
        self._reach("initiate", replset, tuple(hosts))

    async def add_member(self, host: str) -> bool:
        self._reach("add_member", host)
        return True

    async def remove_member(self, host: str) -> bool:
        self._reach("remove_member", host)
        return True

    async def step_down(self, seconds: int = 60) -> None:
        self._reach("step_down")

    async def set_user_password(self, user: str, password: str) -> None:
        self._reach("set_user_password", user, password)

    async def list_shards(self) -> list[dict[str, Any]]:
        self._reach("list_shards")
        return list(self.pool.shards)

    async def add_shard(self, replset: str, hosts: list[str]) -> None:
        self._reach("add_shard", replset, tuple(hosts))

    async def remove_shard(self, replset: str) -> str:
        self._reach("remove_shard", replset)
        return self.pool.drain


class FakeAdminPool:
    """Stand-in for AdminPool with scripted replica set status per host."""

    READS = ("ping", "replset_status", "list_shards")

    def __init__(self, **kwargs: Any):
        self.options = kwargs
        self.statuses: dict[str, Optional[dict[str, Any]]] = {}
        self.unreachable: set[str] = set()
        self.shards: list[dict[str, Any]] = []
        self.drain = "completed"
        self.calls: list[tuple[Any, ...]] = []
        self.closed = False

    def get(self, host: str) -> FakeAdmin:
        return FakeAdmin(self, host)

    def close(self) -> None:
        self.closed = True

    @property
    def mutations(self) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[1] not in self.READS]


# Member workloads


class FakePlatform:
    """Records member workload mutations made by the rollout."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def member_host(self, replset: str, name: str) -> str:
        return member_host(CLUSTER, NAMESPACE, replset, name)

    async def create_member(self, member: Any) -> None:
        self.calls.append(("create", member.name))

    async def update_member(self, member: Any) -> None:
        self.calls.append(("update", member.name))

    async def restart_member(self, member: Any) -> None:
        self.calls.append(("restart", member.name))

    async def delete_member(self, member: Any) -> None:
        self.calls.append(("delete", member.name))


# Backups


class FakeAgents:
    """Backup agent driver with scripted reports."""

    def __init__(self) -> None:
        self.reports: dict[str, AgentReport] = {}
        self.started: list[dict[str, Any]] = []
        self.stopped: list[str] = []

    async def start(
        self,
        name: str,
        host: str,
        storage_name: str,
        destination: Any,
        mode: Any,
        record: str,
        member: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        credentials_secret: Optional[str] = None,
    ) -> None:
        self.started.append(
            {
                "name": name,
                "host": host,
                "storage": storage_name,
                "mode": mode,
                "record": record,
                "member": member,
                "params": params or {},
            }
        )
        self.reports.setdefault(name, AgentReport(state=AgentState.PENDING))

    async def status(self, name: str) -> AgentReport:
        return self.reports.get(name, AgentReport(state=AgentState.ABSENT))

    async def stop(self, name: str) -> None:
        self.stopped.append(name)
        self.reports.pop(name, None)

    @property
    def started_names(self) -> list[str]:
        return [s["name"] for s in self.started]


class FakeStore:
    """Catalog and resource persistence kept in memory."""

    def __init__(self) -> None:
        self.catalog = BackupCatalog()
        self.saved: list[BackupCatalog] = []
        self.projections: dict[str, dict[str, Any]] = {}
        self.restores: dict[str, Any] = {}
        self.catalog_deleted = False

    async def load_catalog(self) -> BackupCatalog:
        return self.catalog.model_copy(deep=True)

    async def save_catalog(self, catalog: BackupCatalog) -> None:
        self.catalog = catalog.model_copy(deep=True)
        self.saved.append(self.catalog)

    async def delete_catalog(self) -> None:
        self.catalog_deleted = True

    async def project_backup(self, name: str, status: dict[str, Any]) -> None:
        self.projections[name] = dict(status)

    async def save_restore(self, record: Any) -> None:
        self.restores[record.name] = record.model_copy(deep=True)


# Credentials


class FakeSecretStore:
    """
    Users Secret with resource versions.

    With ``durable=False`` writes are acknowledged but never kept.
    """

    def __init__(self, data: Optional[dict[str, str]] = None, durable: bool = True):
        self.data = dict(data or {})
        self.version = 1 if data else 0
        self.durable = durable
        self.writes: list[dict[str, str]] = []

    def _current(self) -> Optional[str]:
        return str(self.version) if self.version else None

    async def read(self) -> tuple[dict[str, str], Optional[str]]:
        return dict(self.data), self._current()

    async def write(self, data: dict[str, str], resource_version: Optional[str]) -> str:
        if resource_version != self._current():
            raise StaleResourceError("users secret changed")
        self.writes.append(dict(data))
        if self.durable:
            self.data = dict(data)
            self.version += 1
            return str(self.version)
        return str(self.version + 1)


# Kubernetes API


def statefulset_view(manifest: dict[str, Any], ready: bool = True) -> SimpleNamespace:
    """Shape a StatefulSet manifest like the objects the client library returns."""
    metadata = manifest["metadata"]
    template = manifest["spec"]["template"]
    generation = metadata.get("generation", 1)
    claims = [
        SimpleNamespace(
            spec=SimpleNamespace(
                resources=SimpleNamespace(requests=c["spec"]["resources"]["requests"])
            )
        )
        for c in manifest["spec"].get("volumeClaimTemplates", [])
    ]
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=metadata["name"],
            labels=metadata.get("labels", {}),
            generation=generation,
            deletion_timestamp=metadata.get("deletionTimestamp"),
        ),
        spec=SimpleNamespace(
            template=SimpleNamespace(
                metadata=SimpleNamespace(annotations=template["metadata"].get("annotations", {})),
                spec=SimpleNamespace(
                    containers=[
                        SimpleNamespace(image=c["image"]) for c in template["spec"]["containers"]
                    ]
                ),
            ),
            volume_claim_templates=claims,
        ),
        status=SimpleNamespace(
            ready_replicas=1 if ready else 0,
            observed_generation=generation,
            update_revision="rev-1",
            current_revision="rev-1",
        ),
    )


class FakeK8s:
    """
    In-memory namespace implementing the K8sClient methods the operator uses.

    ``failures`` maps a method name (or ``list_<plural>``) to the exception
    that call raises.
    """

    def __init__(self, namespace: str = NAMESPACE):
        self.namespace = namespace
        self.objects: dict[str, dict[str, dict[str, Any]]] = {
            "mongoclusters": {},
            "mongobackups": {},
            "mongorestores": {},
        }
        self.statefulsets: dict[str, dict[str, Any]] = {}
        self.not_ready: set[str] = set()
        self.services: dict[str, dict[str, Any]] = {}
        self.configmaps: dict[str, SimpleNamespace] = {}
        self.secrets: dict[str, SimpleNamespace] = {}
        self.jobs: dict[str, SimpleNamespace] = {}
        self.status_writes: list[tuple[str, str, dict[str, Any]]] = []
        self.failures: dict[str, Exception] = {}
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _check(self, op: str) -> None:
        error = self.failures.get(op)
        if error is not None:
            raise error

    # Setup helpers

    def add_cluster(
        self, name: str, spec: dict[str, Any], status: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        body = {
            "apiVersion": "mongo.dbops.io/v1alpha1",
            "kind": "MongoCluster",
            "metadata": {
                "name": name,
                "namespace": self.namespace,
                "uid": f"uid-{name}",
                "generation": 1,
                "resourceVersion": self._next_version(),
            },
            "spec": spec,
            "status": status or {},
        }
        self.objects["mongoclusters"][name] = body
        return copy.deepcopy(body)

    def cluster(self, name: str) -> dict[str, Any]:
        return self.objects["mongoclusters"][name]

    def put_secret(self, name: str, data: dict[str, str]) -> None:
        self.secrets[name] = SimpleNamespace(
            metadata=SimpleNamespace(name=name, resource_version=self._next_version()),
            data={k: base64.b64encode(v.encode()).decode() for k, v in data.items()},
        )

    # Custom resources

    async def get_custom_object(self, plural: str, name: str) -> Optional[dict[str, Any]]:
        self._check("get_custom_object")
        obj = self.objects[plural].get(name)
        return copy.deepcopy(obj) if obj is not None else None

    async def list_custom_objects(self, plural: str) -> list[dict[str, Any]]:
        self._check(f"list_{plural}")
        return [copy.deepcopy(o) for o in self.objects[plural].values()]

    async def replace_status(
        self,
        plural: str,
        kind: str,
        name: str,
        status: dict[str, Any],
        resource_version: Optional[str],
    ) -> Optional[str]:
        self._check("replace_status")
        obj = self.objects[plural].get(name)
        if obj is None:
            raise TransientInfraError(f"{plural}/{name} not found")
        if resource_version and resource_version != obj["metadata"]["resourceVersion"]:
            raise StaleResourceError(f"{plural}/{name} changed")
        obj["status"] = copy.deepcopy(status)
        obj["metadata"]["resourceVersion"] = self._next_version()
        self.status_writes.append((plural, name, copy.deepcopy(status)))
        return obj["metadata"]["resourceVersion"]

    async def patch_status(self, plural: str, name: str, status: dict[str, Any]) -> None:
        obj = self.objects[plural].get(name)
        if obj is not None:
            obj.setdefault("status", {}).update(status)

    # StatefulSets

    async def list_statefulsets(self, label_selector: str) -> list[SimpleNamespace]:
        self._check("list_statefulsets")
        return [
            statefulset_view(m, ready=name not in self.not_ready)
            for name, m in sorted(self.statefulsets.items())
        ]

    async def create_statefulset(self, manifest: dict[str, Any]) -> None:
        self.statefulsets.setdefault(manifest["metadata"]["name"], copy.deepcopy(manifest))

    async def replace_statefulset_template(self, name: str, manifest: dict[str, Any]) -> None:
        sts = self.statefulsets[name]
        sts["metadata"]["annotations"] = dict(manifest["metadata"].get("annotations", {}))
        sts["spec"]["template"] = copy.deepcopy(manifest["spec"]["template"])

    async def patch_statefulset(self, name: str, patch: dict[str, Any]) -> None:
        annotations = patch["spec"]["template"]["metadata"]["annotations"]
        self.statefulsets[name]["spec"]["template"]["metadata"]["annotations"].update(annotations)

    async def delete_statefulset(self, name: str, delete_claims: bool = True) -> None:
        self.statefulsets.pop(name, None)

    # Services and ConfigMaps

    async def ensure_service(self, manifest: dict[str, Any]) -> None:
        self.services.setdefault(manifest["metadata"]["name"], copy.deepcopy(manifest))

    async def apply_configmap(
        self,
        name: str,
        data: dict[str, str],
        labels: Optional[dict[str, str]] = None,
        owner: Optional[dict[str, Any]] = None,
    ) -> None:
        self.configmaps[name] = SimpleNamespace(
            metadata=SimpleNamespace(name=name, resource_version=self._next_version()),
            data=dict(data),
        )

    async def get_configmap(self, name: str) -> Optional[SimpleNamespace]:
        self._check("get_configmap")
        return self.configmaps.get(name)

    async def replace_configmap(
        self,
        name: str,
        data: dict[str, str],
        resource_version: Optional[str],
        labels: Optional[dict[str, str]] = None,
        owner: Optional[dict[str, Any]] = None,
    ) -> str:
        current = self.configmaps.get(name)
        current_version = current.metadata.resource_version if current else None
        if resource_version != current_version:
            raise StaleResourceError(f"configmap {name} changed")
        version = self._next_version()
        self.configmaps[name] = SimpleNamespace(
            metadata=SimpleNamespace(name=name, resource_version=version), data=dict(data)
        )
        return version

    async def delete_configmap(self, name: str) -> None:
        self.configmaps.pop(name, None)

    # Secrets

    async def get_secret(self, name: str) -> Optional[SimpleNamespace]:
        self._check("get_secret")
        return self.secrets.get(name)

    async def write_secret(
        self,
        name: str,
        data: dict[str, str],
        resource_version: Optional[str],
        labels: Optional[dict[str, str]] = None,
    ) -> str:
        current = self.secrets.get(name)
        current_version = current.metadata.resource_version if current else None
        if resource_version != current_version:
            raise StaleResourceError(f"secret {name} changed")
        self.put_secret(name, data)
        return self.secrets[name].metadata.resource_version

    # Jobs

    async def create_job(self, manifest: dict[str, Any]) -> None:
        name = manifest["metadata"]["name"]
        self.jobs.setdefault(
            name,
            SimpleNamespace(
                metadata=SimpleNamespace(
                    name=name,
                    labels=dict(manifest["metadata"].get("labels", {})),
                    deletion_timestamp=None,
                ),
                status=SimpleNamespace(succeeded=0, failed=0),
                manifest=copy.deepcopy(manifest),
            ),
        )

    async def get_job(self, name: str) -> Optional[SimpleNamespace]:
        self._check("get_job")
        return self.jobs.get(name)

    async def list_jobs(self, label_selector: str) -> list[SimpleNamespace]:
        self._check("list_jobs")
        return list(self.jobs.values())

    async def delete_job(self, name: str) -> None:
        self.jobs.pop(name, None)


# Fixtures


@pytest.fixture
def guard() -> PassGuard:
    return PassGuard(f"{NAMESPACE}/{CLUSTER}")


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def admin() -> FakeAdminPool:
    return FakeAdminPool()


@pytest.fixture
def agents() -> FakeAgents:
    return FakeAgents()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def k8s() -> FakeK8s:
    return FakeK8s()
