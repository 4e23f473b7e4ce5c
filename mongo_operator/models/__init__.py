"""Pydantic models for MongoDB custom resources."""

from mongo_operator.models.backup import BackupCatalog, BackupRecord, MongoBackupSpec
from mongo_operator.models.cluster import ClusterSpec, ClusterStatus
from mongo_operator.models.observed import ObservedState
from mongo_operator.models.restore import MongoRestoreSpec, RestoreRecord

__all__ = [
    "ClusterSpec",
    "ClusterStatus",
    "MongoBackupSpec",
    "BackupRecord",
    "BackupCatalog",
    "MongoRestoreSpec",
    "RestoreRecord",
    "ObservedState",
]
