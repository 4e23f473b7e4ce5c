"""Prometheus metrics for the MongoDB operator."""

import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

PHASES = ("Initializing", "Ready", "Error", "Stopping")


class ClusterMetrics:
    """
    Prometheus metrics collector for the MongoDB operator.

    Tracks reconcile passes, cluster phases, rollout mutations, backups and
    credential rotations.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics with optional custom registry."""
        self.registry = registry or CollectorRegistry()

        # Reconcile passes
        self.reconcile_total = Counter(
            "mongo_reconcile_total",
            "Total number of reconcile passes",
            ["name", "namespace", "result"],
            registry=self.registry,
        )

        self.reconcile_errors = Counter(
            "mongo_reconcile_errors_total",
            "Total reconcile errors",
            ["name", "namespace", "reason"],
            registry=self.registry,
        )

        self.reconcile_duration = Histogram(
            "mongo_reconcile_duration_seconds",
            "Reconcile pass duration in seconds",
            ["name", "namespace"],
            registry=self.registry,
        )

        # Cluster state
        self.cluster_phase = Gauge(
            "mongo_cluster_phase",
            "Cluster phase (1 for the current phase, 0 otherwise)",
            ["name", "namespace", "phase"],
            registry=self.registry,
        )

        self.replset_healthy_members = Gauge(
            "mongo_replset_healthy_members",
            "Healthy members per replica set",
            ["name", "namespace", "replset"],
            registry=self.registry,
        )

        # Rollout
        self.rollout_mutations = Counter(
            "mongo_rollout_mutations_total",
            "Member mutations applied by the rollout",
            ["name", "namespace", "replset", "action"],
            registry=self.registry,
        )

        # Backups
        self.backup_total = Counter(
            "mongo_backup_total",
            "Total number of finished backups",
            ["name", "namespace", "status"],
            registry=self.registry,
        )

        self.credential_rotations = Counter(
            "mongo_credential_rotations_total",
            "Completed credential rotations",
            ["name", "namespace", "user"],
            registry=self.registry,
        )

    def record_reconcile(self, name: str, namespace: str, result: str, duration: float) -> None:
        """Record a reconcile pass."""
        self.reconcile_total.labels(name=name, namespace=namespace, result=result).inc()
        self.reconcile_duration.labels(name=name, namespace=namespace).observe(duration)

    def record_error(self, name: str, namespace: str, reason: str) -> None:
        """Record a reconcile error."""
        self.reconcile_errors.labels(name=name, namespace=namespace, reason=reason).inc()

    def update_phase(self, name: str, namespace: str, phase: str) -> None:
        for candidate in PHASES:
            self.cluster_phase.labels(name=name, namespace=namespace, phase=candidate).set(
                1 if candidate == phase else 0
            )

    def update_replset(self, name: str, namespace: str, replset: str, healthy: int) -> None:
        self.replset_healthy_members.labels(
            name=name, namespace=namespace, replset=replset
        ).set(healthy)

    def record_mutation(self, name: str, namespace: str, replset: str, action: str) -> None:
        self.rollout_mutations.labels(
            name=name, namespace=namespace, replset=replset, action=action
        ).inc()

    def record_backup(self, name: str, namespace: str, status: str) -> None:
        """Record a finished backup."""
        self.backup_total.labels(name=name, namespace=namespace, status=status).inc()

    def record_rotation(self, name: str, namespace: str, user: str) -> None:
        self.credential_rotations.labels(name=name, namespace=namespace, user=user).inc()

    def forget(self, name: str, namespace: str) -> None:
        """Drop the phase series of a deleted cluster."""
        for phase in PHASES:
            try:
                self.cluster_phase.remove(name, namespace, phase)
            except KeyError:
                continue

    def export_metrics(self) -> bytes:
        """Export metrics in Prometheus format."""
        return generate_latest(self.registry)


# Global metrics instance
_metrics: Optional[ClusterMetrics] = None


def get_metrics() -> ClusterMetrics:
    """Get or create global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = ClusterMetrics()
    return _metrics
