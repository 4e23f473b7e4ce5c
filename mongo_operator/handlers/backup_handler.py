"""MongoBackup and MongoRestore resource event handlers.

Both resources are requests addressed to a cluster; the work itself happens
in the cluster's reconcile pass, so the handlers validate the payload and
trigger a pass.
"""

import logging
from typing import Any

import kopf
from pydantic import ValidationError as PydanticValidationError

from mongo_operator.handlers.cluster_handler import VERSION, get_driver
from mongo_operator.models.backup import MongoBackupSpec
from mongo_operator.models.restore import MongoRestoreSpec
from mongo_operator.utils.workloads import GROUP

logger = logging.getLogger(__name__)


async def _trigger(cluster: str, namespace: str) -> None:
    # The pass reads the cluster resource itself.
    await get_driver().reconcile(cluster, namespace, {"metadata": {"name": cluster}})


@kopf.on.create(GROUP, VERSION, "mongobackups")
async def create_backup(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    **kwargs: Any,
) -> None:
    """
    Handle an on-demand backup request.

    Args:
        spec: MongoBackup specification
        name: MongoBackup resource name (the request identity)
        namespace: Kubernetes namespace
        **kwargs: Additional kopf arguments
    """
    try:
        backup_spec = MongoBackupSpec(**spec)
    except PydanticValidationError as e:
        logger.error(f"Invalid MongoBackup spec: {e}")
        raise kopf.PermanentError(f"Invalid MongoBackup specification: {e}")

    logger.info(f"Backup {name} requested for cluster {backup_spec.cluster_name}")
    await _trigger(backup_spec.cluster_name, namespace)


@kopf.on.delete(GROUP, VERSION, "mongobackups")
async def delete_backup(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    **kwargs: Any,
) -> None:
    """Remove the backup record and its data from storage."""
    cluster = spec.get("cluster_name")
    if not cluster:
        return
    removed = await get_driver().delete_backup(cluster, namespace, name)
    if removed:
        logger.info(f"Backup {name} of cluster {cluster} removed")


@kopf.on.create(GROUP, VERSION, "mongorestores")
async def create_restore(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    **kwargs: Any,
) -> None:
    """
    Handle a restore request.

    Args:
        spec: MongoRestore specification
        name: MongoRestore resource name
        namespace: Kubernetes namespace
        **kwargs: Additional kopf arguments
    """
    try:
        restore_spec = MongoRestoreSpec(**spec)
    except PydanticValidationError as e:
        logger.error(f"Invalid MongoRestore spec: {e}")
        raise kopf.PermanentError(f"Invalid MongoRestore specification: {e}")

    logger.info(f"Restore {name} requested for cluster {restore_spec.cluster_name}")
    await _trigger(restore_spec.cluster_name, namespace)


@kopf.on.delete(GROUP, VERSION, "mongorestores", optional=True)
async def delete_restore(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    **kwargs: Any,
) -> None:
    """A deleted restore releases its isolation on the next pass."""
    cluster = spec.get("cluster_name")
    if cluster:
        logger.info(f"Restore {name} deleted, releasing cluster {cluster}")
        await _trigger(cluster, namespace)
