"""Backup storage destinations.

A destination is declared once under ``spec.backup.storages`` and referenced
by name from backup tasks, PITR and restore requests. The backup agent only
sees the flattened descriptor built by :func:`destination_descriptor`.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class StorageType(str, Enum):
    """Backup storage backend types."""

    FILESYSTEM = "filesystem"
    S3 = "s3"
    AZURE_BLOB = "azure"
    GCS = "gcs"


class S3StorageConfig(BaseModel):
    """AWS S3 (or compatible) storage configuration."""

    bucket: str = Field(..., description="S3 bucket name")
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint_url: Optional[str] = Field(
        default=None, description="Custom S3 endpoint (for MinIO, etc.)"
    )
    credentials_secret: Optional[str] = Field(
        default=None, description="Secret containing AWS credentials"
    )
    prefix: str = Field(default="mongo-backups", description="S3 key prefix for backups")
    storage_class: str = Field(default="STANDARD", description="S3 storage class")

    @field_validator("bucket")
    @classmethod
    def validate_bucket_name(cls, v: str) -> str:
        """Validate S3 bucket name format."""
        if not v or len(v) < 3 or len(v) > 63:
            raise ValueError("Bucket name must be between 3 and 63 characters")
        return v


class AzureBlobConfig(BaseModel):
    """Azure Blob Storage configuration."""

    container: str = Field(..., description="Blob container name")
    storage_account: Optional[str] = Field(default=None, description="Storage account name")
    credentials_secret: Optional[str] = Field(
        default=None, description="Secret containing Azure connection string"
    )
    prefix: str = Field(default="mongo-backups", description="Blob prefix for backups")


class GCSConfig(BaseModel):
    """Google Cloud Storage configuration."""

    bucket: str = Field(..., description="GCS bucket name")
    credentials_secret: Optional[str] = Field(
        default=None, description="Secret containing GCP service account credentials"
    )
    prefix: str = Field(default="mongo-backups", description="GCS object prefix for backups")


class FilesystemConfig(BaseModel):
    """Shared volume mounted into the agent."""

    claim_name: str = Field(..., description="PersistentVolumeClaim holding backups")
    path: str = Field(default="/backups", description="Mount path inside the agent")


class StorageDestination(BaseModel):
    """A named backup destination."""

    type: StorageType = Field(default=StorageType.S3, description="Storage backend")
    s3: Optional[S3StorageConfig] = None
    azure: Optional[AzureBlobConfig] = None
    gcs: Optional[GCSConfig] = None
    filesystem: Optional[FilesystemConfig] = None

    @model_validator(mode="after")
    def validate_backend_config(self) -> "StorageDestination":
        """Require the config block matching the storage type."""
        required = {
            StorageType.S3: self.s3,
            StorageType.AZURE_BLOB: self.azure,
            StorageType.GCS: self.gcs,
            StorageType.FILESYSTEM: self.filesystem,
        }
        if required[self.type] is None:
            field_name = "azure" if self.type == StorageType.AZURE_BLOB else self.type.value
            raise ValueError(f"{field_name} config required when type is {self.type.value}")
        return self

    @property
    def credentials_secret(self) -> Optional[str]:
        """Secret holding the backend credentials, if any."""
        backend = self.s3 or self.azure or self.gcs
        return backend.credentials_secret if backend else None


def destination_descriptor(name: str, destination: StorageDestination) -> dict[str, Any]:
    """
    Flatten a destination into the descriptor handed to the backup agent.

    Args:
        name: Storage name as declared in the cluster spec
        destination: Storage destination

    Returns:
        JSON-serialisable descriptor
    """
    descriptor: dict[str, Any] = {"name": name, "type": destination.type.value}

    if destination.type == StorageType.S3 and destination.s3:
        descriptor.update(
            {
                "bucket": destination.s3.bucket,
                "region": destination.s3.region,
                "prefix": destination.s3.prefix,
                "storageClass": destination.s3.storage_class,
            }
        )
        if destination.s3.endpoint_url:
            descriptor["endpointUrl"] = destination.s3.endpoint_url
    elif destination.type == StorageType.AZURE_BLOB and destination.azure:
        descriptor.update(
            {
                "container": destination.azure.container,
                "prefix": destination.azure.prefix,
            }
        )
        if destination.azure.storage_account:
            descriptor["account"] = destination.azure.storage_account
    elif destination.type == StorageType.GCS and destination.gcs:
        descriptor.update({"bucket": destination.gcs.bucket, "prefix": destination.gcs.prefix})
    elif destination.type == StorageType.FILESYSTEM and destination.filesystem:
        descriptor.update({"path": destination.filesystem.path})

    return descriptor
