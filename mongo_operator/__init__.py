"""
MongoDB Operator - Kubernetes operator for MongoDB replica sets and sharded clusters

Continuously reconciles MongoCluster custom resources against live members,
storage and replica-set membership: health-gated rolling changes, scheduled
and on-demand backups with point-in-time recovery, restores and credential
rotation.

This operator uses Kopf (Kubernetes Operator Pythonic Framework) to watch
MongoCluster, MongoBackup and MongoRestore resources.
"""

__version__ = "0.4.0"
__license__ = "Apache-2.0"

from mongo_operator.models.backup import BackupRecord, MongoBackupSpec
from mongo_operator.models.cluster import ClusterSpec, ClusterStatus
from mongo_operator.models.restore import MongoRestoreSpec, RestoreRecord

__all__ = [
    "ClusterSpec",
    "ClusterStatus",
    "MongoBackupSpec",
    "BackupRecord",
    "MongoRestoreSpec",
    "RestoreRecord",
]
