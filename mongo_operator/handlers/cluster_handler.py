"""MongoCluster resource event handlers."""

import logging
from typing import Any, Optional

import kopf

from mongo_operator.config import get_settings
from mongo_operator.core.reconciler import ReconcileDriver, ReconcileResult
from mongo_operator.errors import ValidationError
from mongo_operator.utils.workloads import GROUP

logger = logging.getLogger(__name__)

VERSION = "v1alpha1"
PLURAL = "mongoclusters"

_driver: Optional[ReconcileDriver] = None


def get_driver() -> ReconcileDriver:
    """Get or create the process-wide reconcile driver."""
    global _driver
    if _driver is None:
        _driver = ReconcileDriver()
    return _driver


def raise_for_requeue(result: ReconcileResult, interval: Optional[float] = None) -> None:
    """
    Translate a reconcile result into kopf's retry semantics.

    Args:
        result: Result of the pass
        interval: Delay after which kopf calls the handler anyway (timers)

    Raises:
        kopf.PermanentError: If the spec is invalid
        kopf.TemporaryError: If the pass asked to be repeated sooner
    """
    if isinstance(result.error, ValidationError):
        raise kopf.PermanentError(f"Invalid MongoCluster specification: {result.error}")
    delay = result.requeue_after
    if delay is None or (interval is not None and delay >= interval):
        return
    raise kopf.TemporaryError(result.status.last_error or "reconcile in progress", delay=delay)


@kopf.on.startup()
async def configure(settings: kopf.OperatorSettings, **kwargs: Any) -> None:
    """Keep kopf's bookkeeping in annotations; the status belongs to the operator."""
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=GROUP)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=GROUP)
    settings.posting.level = logging.WARNING


@kopf.on.create(GROUP, VERSION, PLURAL)
@kopf.on.update(GROUP, VERSION, PLURAL, field="spec")
@kopf.on.resume(GROUP, VERSION, PLURAL)
async def reconcile_cluster(
    body: kopf.Body,
    name: str,
    namespace: str,
    **kwargs: Any,
) -> None:
    """
    Handle MongoCluster creation, spec changes and operator restarts.

    Each invocation runs one reconcile pass; kopf retries the handler
    while the cluster has work in progress.

    Args:
        body: MongoCluster resource
        name: MongoCluster resource name
        namespace: Kubernetes namespace
        **kwargs: Additional kopf arguments
    """
    logger.info(f"Reconciling MongoCluster {namespace}/{name}")
    result = await get_driver().reconcile(name, namespace, dict(body))
    raise_for_requeue(result)


@kopf.timer(GROUP, VERSION, PLURAL, interval=get_settings().resync_interval_seconds)
async def resync_cluster(
    body: kopf.Body,
    name: str,
    namespace: str,
    **kwargs: Any,
) -> None:
    """Periodic re-evaluation; catches drift no event reports."""
    result = await get_driver().reconcile(name, namespace, dict(body))
    raise_for_requeue(result, interval=get_settings().resync_interval_seconds)


@kopf.on.delete(GROUP, VERSION, PLURAL)
async def delete_cluster(
    body: kopf.Body,
    name: str,
    namespace: str,
    **kwargs: Any,
) -> None:
    """
    Handle MongoCluster deletion.

    Member workloads, services and configuration go with the owner
    reference; backup agents are stopped here and the backup catalog is
    kept unless the backup policy says otherwise.

    Args:
        body: MongoCluster resource
        name: MongoCluster resource name
        namespace: Kubernetes namespace
        **kwargs: Additional kopf arguments
    """
    logger.info(f"Deleting MongoCluster {namespace}/{name}")
    await get_driver().finalize(name, namespace, dict(body))
    logger.info(f"MongoCluster {namespace}/{name} deleted successfully")
