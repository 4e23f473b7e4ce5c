"""Platform, database and backup-agent adapters."""

from mongo_operator.utils.k8s_client import K8sClient
from mongo_operator.utils.validators import validate_resource_name, validate_storage_size

__all__ = ["K8sClient", "validate_resource_name", "validate_storage_size"]
