"""Kopf event handlers for MongoDB custom resources."""

from mongo_operator.handlers.backup_handler import (
    create_backup,
    create_restore,
    delete_backup,
    delete_restore,
)
from mongo_operator.handlers.cluster_handler import (
    delete_cluster,
    reconcile_cluster,
    resync_cluster,
)

__all__ = [
    "reconcile_cluster",
    "resync_cluster",
    "delete_cluster",
    "create_backup",
    "delete_backup",
    "create_restore",
    "delete_restore",
]
