"""Reconcile Driver.

One pass: observe, validate, diff, probe, then let the rollout, backup and
credential components advance at most one logical step each, aggregate the
status and publish it with a conditional update. Passes of one cluster are
serialized through the :class:`PassScheduler`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from mongo_operator.config import OperatorSettings, get_settings
from mongo_operator.core.backup import (
    BackupOrchestrator,
    BackupOutcome,
    BackupStore,
    isolated_replsets,
)
from mongo_operator.core.credentials import (
    CredentialRotationManager,
    CredentialStore,
    RotationOutcome,
    admin_password,
)
from mongo_operator.core.observer import ClusterObserver
from mongo_operator.core.rollout import RolloutController, RolloutResult
from mongo_operator.core.scheduler import PassGuard, PassScheduler
from mongo_operator.core.status import StatusAggregator
from mongo_operator.core.topology import (
    TopologyIndex,
    build_index,
    compute_diff,
    desired_members,
    validate_spec,
)
from mongo_operator.errors import (
    OperatorError,
    PassAbandoned,
    StaleResourceError,
    TransientInfraError,
    ValidationError,
)
from mongo_operator.models.cluster import (
    ClusterPhase,
    ClusterSpec,
    ClusterStatus,
    CredentialPhase,
)
from mongo_operator.models.observed import ROUTERS, ObservedState
from mongo_operator.utils.backup_agent import BackupAgentDriver
from mongo_operator.utils.health import HealthProber, HealthReport
from mongo_operator.utils.k8s_client import K8sClient
from mongo_operator.utils.metrics import ClusterMetrics, get_metrics
from mongo_operator.utils.mongo_admin import AdminPool
from mongo_operator.utils.workloads import ClusterWorkloads, owner_reference

logger = logging.getLogger(__name__)

CLUSTER_PLURAL = "mongoclusters"
ADMIN_USERNAME = "clusterAdmin"


@dataclass
class ReconcileResult:
    """Published status and when the cluster should be looked at again."""

    status: ClusterStatus
    requeue_after: Optional[float] = None
    error: Optional[OperatorError] = None
    mutations: list[str] = field(default_factory=list)


def parse_spec(body: dict[str, Any]) -> ClusterSpec:
    """
    Parse the desired spec of a MongoCluster resource.

    Raises:
        ValidationError: If the payload does not match the schema
    """
    try:
        return ClusterSpec(**(body.get("spec") or {}))
    except PydanticValidationError as e:
        raise ValidationError(f"invalid MongoCluster spec: {e}") from e


class ReconcileDriver:
    """
    Composes observation, rollout, backups, credentials and status.

    Every error ends up in the status with a reason; the returned requeue
    delay tells the caller when to run the next pass.
    """

    def __init__(
        self,
        settings: Optional[OperatorSettings] = None,
        scheduler: Optional[PassScheduler] = None,
        metrics: Optional[ClusterMetrics] = None,
        k8s_factory: Callable[[str], K8sClient] = K8sClient,
        admin_factory: Callable[..., AdminPool] = AdminPool,
        aggregator: Optional[StatusAggregator] = None,
    ):
        """
        Initialize reconcile driver.

        Args:
            settings: Operator settings
            scheduler: Per-cluster pass serialization
            metrics: Prometheus metrics
            k8s_factory: Builds a platform client for a namespace
            admin_factory: Builds a database admin pool for credentials
            aggregator: Status aggregator
        """
        self.settings = settings or get_settings()
        self.scheduler = scheduler or PassScheduler()
        self.metrics = metrics or get_metrics()
        self.k8s_factory = k8s_factory
        self.admin_factory = admin_factory
        self.aggregator = aggregator or StatusAggregator()
        self._pools: dict[str, tuple[tuple[Optional[str], Optional[str]], AdminPool]] = {}

    # Entry points

    async def reconcile(self, name: str, namespace: str, body: dict[str, Any]) -> ReconcileResult:
        """
        Run one reconcile pass for a cluster.

        Args:
            name: Cluster name
            namespace: Cluster namespace
            body: MongoCluster resource as delivered by the watch

        Returns:
            Published status and requeue delay (None means no requeue)
        """
        key = f"{namespace}/{name}"
        metadata = body.get("metadata") or {}
        guard = self.scheduler.guard(key, metadata.get("uid"))
        if metadata.get("deletionTimestamp"):
            guard.abandon()
        return await self.scheduler.run(
            key, lambda _: self._run_pass(name, namespace, body, guard)
        )

    async def finalize(self, name: str, namespace: str, body: dict[str, Any]) -> None:
        """
        Clean up after a deleted cluster.

        In-flight passes stop starting mutations; backup agents are stopped
        and, per policy, the backup catalog is deleted.
        """
        key = f"{namespace}/{name}"
        self.scheduler.guard(key, (body.get("metadata") or {}).get("uid")).abandon()
        await self.scheduler.run(
            key, lambda _: self._finalize(name, namespace, body), coalesce=False
        )
        self._close_pool(key)
        self.scheduler.forget(key)
        self.metrics.forget(name, namespace)

    async def delete_backup(
        self, cluster: str, namespace: str, backup_name: str
    ) -> Optional[str]:
        """
        Remove a backup record whose MongoBackup resource was deleted.

        Returns:
            Name of the removed record, or None if the catalog did not have it
        """
        key = f"{namespace}/{cluster}"
        return await self.scheduler.run(
            key,
            lambda guard: self._delete_backup(cluster, namespace, backup_name, guard),
            coalesce=False,
        )

    # Pass

    async def _run_pass(
        self, name: str, namespace: str, body: dict[str, Any], guard: PassGuard
    ) -> ReconcileResult:
        started = time.monotonic()
        try:
            result = await self._pass(name, namespace, body, guard)
        except PassAbandoned as e:
            logger.info(f"Pass of {namespace}/{name} abandoned: {e}")
            previous = ClusterStatus.from_resource(body.get("status"))
            previous.phase = ClusterPhase.STOPPING
            result = ReconcileResult(status=previous, error=e)

        outcome = "error" if result.error else "success"
        self.metrics.record_reconcile(name, namespace, outcome, time.monotonic() - started)
        self.metrics.update_phase(name, namespace, result.status.phase.value)
        if result.error is not None:
            self.metrics.record_error(name, namespace, result.error.reason)
        return result

    async def _pass(
        self, name: str, namespace: str, body: dict[str, Any], guard: PassGuard
    ) -> ReconcileResult:
        k8s = self.k8s_factory(namespace)
        store = BackupStore(k8s, name)

        # Coalesced passes may be served a stale body.
        try:
            fresh = await self._read_cluster(k8s, name)
        except TransientInfraError as e:
            # Nothing was read, so there is no status to publish over.
            logger.warning(f"Reading MongoCluster {namespace}/{name} failed: {e}")
            previous = ClusterStatus.from_resource(body.get("status"))
            return ReconcileResult(
                status=previous,
                requeue_after=self._backoff(previous.transient_failures + 1),
            )
        if fresh is None:
            logger.info(f"MongoCluster {namespace}/{name} no longer exists")
            return ReconcileResult(status=ClusterStatus.from_resource(body.get("status")))
        body = fresh
        previous = ClusterStatus.from_resource(body.get("status"))

        try:
            spec = parse_spec(body)
        except ValidationError as e:
            return await self._invalid(k8s, name, body, previous, e)

        agents = BackupAgentDriver(
            k8s,
            name,
            (spec.backup.image if spec.backup else None) or self.settings.agent_image,
            timeout=self.settings.agent_timeout_seconds,
        )
        observer = ClusterObserver(k8s, agents, store)
        try:
            observed = await observer.observe(name, body)
        except TransientInfraError as e:
            return await self._transient(k8s, name, body, previous, e)

        if observed.deleting:
            guard.abandon()
            status = self.aggregator.aggregate(previous, observed, spec=spec)
            return ReconcileResult(status=status)

        try:
            validate_spec(spec, name)
            index = build_index(spec, name)
        except ValidationError as e:
            return await self._invalid(k8s, name, body, previous, e, observed)

        try:
            return await self._converge(
                k8s, name, body, spec, index, observed, guard, agents, store
            )
        except TransientInfraError as e:
            return await self._transient(k8s, name, body, previous, e, observed)

    async def _converge(
        self,
        k8s: K8sClient,
        name: str,
        body: dict[str, Any],
        spec: ClusterSpec,
        index: TopologyIndex,
        observed: ObservedState,
        guard: PassGuard,
        agents: BackupAgentDriver,
        store: BackupStore,
    ) -> ReconcileResult:
        key = f"{k8s.namespace}/{name}"
        previous = observed.status

        credential_store = None
        password, fallback = None, None
        if spec.credentials is not None:
            credential_store = CredentialStore(k8s, spec.credentials.secret_name, name)
            data, _ = await credential_store.read()
            password, fallback = admin_password(data)
        pool = self._pool(key, password, fallback)

        manager = None
        if spec.credentials is not None and credential_store is not None:
            manager = CredentialRotationManager(
                spec.credentials, credential_store, pool, guard, previous.credentials
            )
        tokens = manager.restart_tokens() if manager else {}

        desired = desired_members(spec, name, tokens)
        diff = compute_diff(desired, observed)
        if diff.violations:
            return await self._invalid(
                k8s, name, body, previous, ValidationError("; ".join(diff.violations)), observed
            )

        reports = await self._probe(pool, desired, observed)

        restores = [r.record for r in observed.restores]
        rollout: Optional[RolloutResult] = None
        if not spec.pause:
            workloads = ClusterWorkloads(k8s, name, spec, index, owner_reference(body))
            controller = RolloutController(
                workloads,
                pool,
                guard,
                strategy=spec.update_strategy,
                generation=observed.generation,
                verify_max_passes=self.settings.verify_max_passes,
            )
            rollout = await controller.reconcile(
                desired, diff, reports, observed, index, previous, isolated_replsets(restores)
            )

        backup: Optional[BackupOutcome] = None
        if spec.backup is not None or observed.restores or observed.backup_requests:
            backup = await self._backups(
                name, spec, observed, reports, rollout, agents, store, guard
            )

        credentials: Optional[list[RotationOutcome]] = None
        if manager is not None and not spec.pause:
            credentials = await manager.reconcile(
                observed, self._primaries(spec, observed, reports), rollout
            )

        transient = list(observed.errors)
        if rollout is not None:
            transient += rollout.transient_errors
        if backup is not None:
            transient += backup.transient_errors
        if credentials is not None:
            transient += [f"{c.user}: {c.error}" for c in credentials if c.error]

        self._record(name, k8s.namespace, rollout, backup, credentials, reports)

        failures = previous.transient_failures + 1 if transient else 0
        exhausted = failures >= self.settings.transient_retry_budget
        error = None
        if exhausted:
            error = TransientInfraError(
                f"{failures} consecutive transient failures: {'; '.join(transient)}"
            )
        status = self.aggregator.aggregate(
            previous,
            observed,
            spec=spec,
            index=index,
            reports=reports,
            rollout=rollout,
            backup=backup,
            credentials=credentials,
            error=error,
            transient_failures=failures,
            retries_exhausted=exhausted,
        )
        if transient and not exhausted:
            status.last_error = "; ".join(transient)
            status.last_error_reason = TransientInfraError.reason

        active = bool(
            (rollout and rollout.active)
            or (backup and backup.active)
            or (manager and any(s.phase != CredentialPhase.IDLE for s in manager.states.values()))
        )
        if transient:
            requeue = self._backoff(failures)
        elif active:
            requeue = self.settings.requeue_active_seconds
        else:
            requeue = self.settings.resync_interval_seconds

        try:
            await self._write_status(k8s, name, status, observed.resource_version)
        except StaleResourceError as e:
            logger.info(f"Status of {key} changed underneath: {e}")
            requeue = self.settings.requeue_base_seconds

        mutations = [str(a) for a in rollout.mutations] if rollout else []
        if mutations:
            logger.info(f"Pass of {key} applied {mutations}")
        return ReconcileResult(
            status=status, requeue_after=requeue, error=error, mutations=mutations
        )

    # Components

    async def _probe(
        self,
        pool: AdminPool,
        desired: dict[str, Any],
        observed: ObservedState,
    ) -> dict[str, HealthReport]:
        prober = HealthProber(pool)
        names = [n for n in desired if n != ROUTERS]
        names += [n for n in observed.members if n not in desired]
        results = await asyncio.gather(
            *(prober.probe(n, observed.replset_members(n)) for n in names)
        )
        reports = dict(zip(names, results))
        if ROUTERS in desired or observed.routers:
            reports[ROUTERS] = await prober.probe_routers(observed.routers)
        return reports

    async def _backups(
        self,
        name: str,
        spec: ClusterSpec,
        observed: ObservedState,
        reports: dict[str, HealthReport],
        rollout: Optional[RolloutResult],
        agents: BackupAgentDriver,
        store: BackupStore,
        guard: PassGuard,
    ) -> BackupOutcome:
        orchestrator = BackupOrchestrator(
            name,
            spec,
            agents,
            store,
            guard,
            start_grace_seconds=self.settings.agent_start_grace_seconds,
            restore_verify_max_passes=self.settings.restore_verify_max_passes,
        )
        outcome = await orchestrator.reconcile(observed, reports, rollout)
        try:
            await orchestrator.persist(outcome, observed)
        except TransientInfraError as e:
            logger.warning(f"Persisting backup state of {name} failed: {e}")
            outcome.transient_errors.append(f"persist: {e}")
        return outcome

    @staticmethod
    def _primaries(
        spec: ClusterSpec, observed: ObservedState, reports: dict[str, HealthReport]
    ) -> list[str]:
        """Hosts of every replica set's primary, or nothing if one is missing."""
        hosts = []
        for rs in spec.all_replsets():
            report = reports.get(rs.name)
            primary = next(
                (
                    m
                    for m in observed.replset_members(rs.name)
                    if report is not None and m.name == report.primary
                ),
                None,
            )
            if primary is None:
                return []
            hosts.append(primary.host)
        return hosts

    def _record(
        self,
        name: str,
        namespace: str,
        rollout: Optional[RolloutResult],
        backup: Optional[BackupOutcome],
        credentials: Optional[list[RotationOutcome]],
        reports: dict[str, HealthReport],
    ) -> None:
        for replset, report in reports.items():
            self.metrics.update_replset(name, namespace, replset, report.healthy_count())
        if rollout is not None:
            for action in rollout.mutations:
                self.metrics.record_mutation(name, namespace, action.replset, action.kind.value)
        if backup is not None:
            for _ in backup.completed:
                self.metrics.record_backup(name, namespace, "completed")
            for _ in backup.failed:
                self.metrics.record_backup(name, namespace, "failed")
        for outcome in credentials or []:
            if outcome.completed:
                self.metrics.record_rotation(name, namespace, outcome.user)

    # Error paths

    def _backoff(self, failures: int) -> float:
        delay = self.settings.requeue_base_seconds * 2 ** max(failures - 1, 0)
        return min(delay, self.settings.requeue_max_seconds)

    async def _invalid(
        self,
        k8s: K8sClient,
        name: str,
        body: dict[str, Any],
        previous: ClusterStatus,
        error: ValidationError,
        observed: Optional[ObservedState] = None,
    ) -> ReconcileResult:
        logger.error(f"MongoCluster {k8s.namespace}/{name} is invalid: {error}")
        observed = observed or self._stub(name, k8s.namespace, body, previous)
        status = self.aggregator.aggregate(previous, observed, error=error)
        try:
            await self._write_status(k8s, name, status, observed.resource_version)
        except TransientInfraError as e:
            logger.warning(f"Could not publish validation error of {name}: {e}")
        return ReconcileResult(status=status, error=error)

    async def _transient(
        self,
        k8s: K8sClient,
        name: str,
        body: dict[str, Any],
        previous: ClusterStatus,
        error: TransientInfraError,
        observed: Optional[ObservedState] = None,
    ) -> ReconcileResult:
        failures = previous.transient_failures + 1
        exhausted = failures >= self.settings.transient_retry_budget
        logger.warning(f"Pass of {k8s.namespace}/{name} failed ({failures}): {error}")
        observed = observed or self._stub(name, k8s.namespace, body, previous)
        status = self.aggregator.aggregate(
            previous,
            observed,
            error=error if exhausted else None,
            transient_failures=failures,
            retries_exhausted=exhausted,
        )
        status.last_error = error.message
        status.last_error_reason = error.reason
        try:
            await self._write_status(k8s, name, status, observed.resource_version)
        except TransientInfraError as e:
            logger.warning(f"Could not publish transient failure of {name}: {e}")
        return ReconcileResult(
            status=status,
            requeue_after=self._backoff(failures),
            error=error if exhausted else None,
        )

    @staticmethod
    def _stub(
        name: str, namespace: str, body: dict[str, Any], previous: ClusterStatus
    ) -> ObservedState:
        metadata = body.get("metadata", {})
        return ObservedState(
            cluster=name,
            namespace=namespace,
            generation=metadata.get("generation") or 0,
            resource_version=metadata.get("resourceVersion"),
            deleting=metadata.get("deletionTimestamp") is not None,
            status=previous,
        )

    # Platform

    async def _read_cluster(self, k8s: K8sClient, name: str) -> Optional[dict[str, Any]]:
        return await k8s.get_custom_object(CLUSTER_PLURAL, name)

    async def _write_status(
        self,
        k8s: K8sClient,
        name: str,
        status: ClusterStatus,
        resource_version: Optional[str],
    ) -> None:
        await k8s.replace_status(
            CLUSTER_PLURAL,
            "MongoCluster",
            name,
            status.model_dump(mode="json"),
            resource_version,
        )

    def _pool(
        self, key: str, password: Optional[str], fallback: Optional[str] = None
    ) -> AdminPool:
        """Admin pool of a cluster, rebuilt when its admin passwords change."""
        cached = self._pools.get(key)
        if cached is not None and cached[0] == (password, fallback):
            return cached[1]
        if cached is not None:
            cached[1].close()
        pool = self.admin_factory(
            username=ADMIN_USERNAME if password else None,
            password=password,
            fallback_password=fallback,
            timeout=self.settings.probe_timeout_seconds,
        )
        self._pools[key] = ((password, fallback), pool)
        return pool

    def _close_pool(self, key: str) -> None:
        cached = self._pools.pop(key, None)
        if cached is not None:
            cached[1].close()

    # Finalization and backup deletion

    async def _finalize(self, name: str, namespace: str, body: dict[str, Any]) -> None:
        k8s = self.k8s_factory(namespace)
        store = BackupStore(k8s, name)
        try:
            spec = parse_spec(body)
        except ValidationError:
            spec = None

        image = (spec.backup.image if spec and spec.backup else None) or self.settings.agent_image
        agents = BackupAgentDriver(k8s, name, image, timeout=self.settings.agent_timeout_seconds)
        observed = ObservedState(cluster=name, namespace=namespace, deleting=True)
        observed.agents = await agents.list_agents()

        if spec is not None:
            orchestrator = BackupOrchestrator(name, spec, agents, store, PassGuard(name))
            await orchestrator.finalize(observed)
        else:
            for agent in observed.agents:
                await agents.stop(agent.name)

        status = ClusterStatus.from_resource(body.get("status"))
        status.phase = ClusterPhase.STOPPING
        status.add_condition("Ready", "False", "Stopping", "cluster is being deleted")
        try:
            await self._write_status(k8s, name, status, None)
        except TransientInfraError as e:
            logger.debug(f"Final status of {name} not written: {e}")
        logger.info(f"MongoCluster {namespace}/{name} finalized")

    async def _delete_backup(
        self, cluster: str, namespace: str, backup_name: str, guard: PassGuard
    ) -> Optional[str]:
        k8s = self.k8s_factory(namespace)
        body = await self._read_cluster(k8s, cluster)
        if body is None or (body.get("metadata") or {}).get("deletionTimestamp"):
            return None
        spec = parse_spec(body)
        store = BackupStore(k8s, cluster)
        agents = BackupAgentDriver(
            k8s,
            cluster,
            (spec.backup.image if spec.backup else None) or self.settings.agent_image,
            timeout=self.settings.agent_timeout_seconds,
        )
        observed = await ClusterObserver(k8s, agents, store).observe(cluster, body)
        orchestrator = BackupOrchestrator(cluster, spec, agents, store, guard)
        record = await orchestrator.delete_backup(backup_name, observed)
        if record is None:
            return None
        await store.save_catalog(orchestrator.catalog)
        return record.name
