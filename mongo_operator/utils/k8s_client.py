"""Kubernetes API client wrapper with async support."""

import asyncio
import base64
import logging
from typing import Any, Callable, Optional

import tenacity as tc
import urllib3
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from mongo_operator.errors import StaleResourceError, TransientInfraError

logger = logging.getLogger(__name__)

GROUP = "mongo.dbops.io"
VERSION = "v1alpha1"
RETRYABLE_STATUS = {0, 429, 500, 502, 503, 504}

_config_loaded = False


def load_kube_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig."""
    global _config_loaded
    if _config_loaded:
        return
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig from file")
    _config_loaded = True


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ApiException):
        return exc.status in RETRYABLE_STATUS
    return isinstance(exc, (urllib3.exceptions.HTTPError, OSError))


def _on_backoff(retry_state: tc.RetryCallState) -> None:
    """Log a warning on each retry."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    fn = retry_state.args[0] if retry_state.args else None
    name = getattr(fn, "__name__", "call")
    logger.warning(f"Kubernetes API {name} failed (attempt {retry_state.attempt_number}): {exc}")


@tc.retry(
    stop=tc.stop_after_attempt(3),
    wait=tc.wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=tc.retry_if_exception(_is_retryable),
    before_sleep=_on_backoff,
    reraise=True,
)
async def _call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return await asyncio.to_thread(fn, *args, **kwargs)


def _translate(e: Exception, action: str) -> TransientInfraError:
    """Map a failed API call onto the operator error taxonomy."""
    if isinstance(e, ApiException) and e.status == 409:
        return StaleResourceError(f"{action}: conflict ({e.reason})")
    if isinstance(e, ApiException):
        if e.status not in RETRYABLE_STATUS:
            logger.error(f"{action} rejected with {e.status}: {e.reason}")
        return TransientInfraError(f"{action} failed with {e.status}: {e.reason}")
    return TransientInfraError(f"{action} failed: {e}")


def _encode(data: dict[str, str]) -> dict[str, str]:
    return {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}


def decode_secret_data(secret: Any) -> dict[str, str]:
    """Plaintext view of a V1Secret's data."""
    return {k: base64.b64decode(v).decode() for k, v in (secret.data or {}).items()}


class K8sClient:
    """
    Wrapper around Kubernetes Python client with helper methods.

    Every call runs the blocking client in a worker thread, is retried on
    5xx/429/transport errors and surfaces failures as
    ``TransientInfraError``. Conditional writes map 409 onto
    ``StaleResourceError``; reads map 404 onto None.
    """

    def __init__(self, namespace: str = "default", load_config: bool = True):
        """
        Initialize Kubernetes client.

        Args:
            namespace: Default namespace for operations
            load_config: Load kube config (disabled in tests)
        """
        self.namespace = namespace
        self._core_v1: Optional[client.CoreV1Api] = None
        self._apps_v1: Optional[client.AppsV1Api] = None
        self._batch_v1: Optional[client.BatchV1Api] = None
        self._custom_objects: Optional[client.CustomObjectsApi] = None

        if load_config:
            load_kube_config()

    @property
    def core_v1(self) -> client.CoreV1Api:
        """Get CoreV1Api client."""
        if self._core_v1 is None:
            self._core_v1 = client.CoreV1Api()
        return self._core_v1

    @property
    def apps_v1(self) -> client.AppsV1Api:
        """Get AppsV1Api client."""
        if self._apps_v1 is None:
            self._apps_v1 = client.AppsV1Api()
        return self._apps_v1

    @property
    def batch_v1(self) -> client.BatchV1Api:
        """Get BatchV1Api client."""
        if self._batch_v1 is None:
            self._batch_v1 = client.BatchV1Api()
        return self._batch_v1

    @property
    def custom_objects(self) -> client.CustomObjectsApi:
        """Get CustomObjectsApi client."""
        if self._custom_objects is None:
            self._custom_objects = client.CustomObjectsApi()
        return self._custom_objects

    async def _read(self, action: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await _call(fn, *args, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e, action) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise _translate(e, action) from e

    async def _write(
        self,
        action: str,
        fn: Callable[..., Any],
        *args: Any,
        exists_ok: bool = False,
        missing_ok: bool = False,
        **kwargs: Any,
    ) -> Any:
        try:
            return await _call(fn, *args, **kwargs)
        except ApiException as e:
            if e.status == 409 and exists_ok:
                return None
            if e.status == 404 and missing_ok:
                return None
            raise _translate(e, action) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise _translate(e, action) from e

    # StatefulSets

    async def list_statefulsets(self, label_selector: str) -> list[client.V1StatefulSet]:
        result = await self._read(
            "list statefulsets",
            self.apps_v1.list_namespaced_stateful_set,
            self.namespace,
            label_selector=label_selector,
        )
        return list(result.items) if result else []

    async def create_statefulset(self, manifest: dict[str, Any]) -> None:
        """Create a StatefulSet; an existing one with the same name is left alone."""
        await self._write(
            f"create statefulset {manifest['metadata']['name']}",
            self.apps_v1.create_namespaced_stateful_set,
            self.namespace,
            manifest,
            exists_ok=True,
        )

    async def replace_statefulset_template(self, name: str, manifest: dict[str, Any]) -> None:
        """Patch annotations and pod template of a StatefulSet from a full manifest."""
        patch = {
            "metadata": {"annotations": manifest["metadata"].get("annotations", {})},
            "spec": {"template": manifest["spec"]["template"]},
        }
        await self.patch_statefulset(name, patch)

    async def patch_statefulset(self, name: str, patch: dict[str, Any]) -> None:
        await self._write(
            f"patch statefulset {name}",
            self.apps_v1.patch_namespaced_stateful_set,
            name,
            self.namespace,
            patch,
        )

    async def delete_statefulset(self, name: str, delete_claims: bool = True) -> None:
        """
        Delete a member StatefulSet.

        Args:
            name: StatefulSet name
            delete_claims: Also delete the member's data volume claim
        """
        await self._write(
            f"delete statefulset {name}",
            self.apps_v1.delete_namespaced_stateful_set,
            name,
            self.namespace,
            propagation_policy="Background",
            missing_ok=True,
        )
        if delete_claims:
            await self._write(
                f"delete pvc data-{name}-0",
                self.core_v1.delete_namespaced_persistent_volume_claim,
                f"data-{name}-0",
                self.namespace,
                missing_ok=True,
            )

    # Services and ConfigMaps

    async def ensure_service(self, manifest: dict[str, Any]) -> None:
        await self._write(
            f"create service {manifest['metadata']['name']}",
            self.core_v1.create_namespaced_service,
            self.namespace,
            manifest,
            exists_ok=True,
        )

    async def get_configmap(self, name: str) -> Optional[client.V1ConfigMap]:
        """
        Get a ConfigMap.

        Args:
            name: ConfigMap name

        Returns:
            ConfigMap object or None if not found
        """
        return await self._read(
            f"read configmap {name}", self.core_v1.read_namespaced_config_map, name, self.namespace
        )

    async def list_configmaps(self, label_selector: str) -> list[client.V1ConfigMap]:
        result = await self._read(
            "list configmaps",
            self.core_v1.list_namespaced_config_map,
            self.namespace,
            label_selector=label_selector,
        )
        return list(result.items) if result else []

    def _configmap_body(
        self,
        name: str,
        data: dict[str, str],
        labels: Optional[dict[str, str]],
        owner: Optional[dict[str, Any]],
        resource_version: Optional[str] = None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": name, "labels": labels or {}}
        if owner:
            metadata["ownerReferences"] = [owner]
        if resource_version:
            metadata["resourceVersion"] = resource_version
        return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": data}

    async def apply_configmap(
        self,
        name: str,
        data: dict[str, str],
        labels: Optional[dict[str, str]] = None,
        owner: Optional[dict[str, Any]] = None,
    ) -> None:
        """Create a ConfigMap or overwrite its data unconditionally."""
        body = self._configmap_body(name, data, labels, owner)
        try:
            await _call(self.core_v1.create_namespaced_config_map, self.namespace, body)
            return
        except ApiException as e:
            if e.status != 409:
                raise _translate(e, f"create configmap {name}") from e
        await self._write(
            f"replace configmap {name}",
            self.core_v1.replace_namespaced_config_map,
            name,
            self.namespace,
            body,
        )

    async def replace_configmap(
        self,
        name: str,
        data: dict[str, str],
        resource_version: Optional[str],
        labels: Optional[dict[str, str]] = None,
        owner: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Conditionally write a ConfigMap.

        Args:
            name: ConfigMap name
            data: Full data to store
            resource_version: Version read earlier, or None to create
            labels: Labels
            owner: Owner reference

        Returns:
            The new resource version

        Raises:
            StaleResourceError: If the ConfigMap changed (or appeared) since it was read
        """
        body = self._configmap_body(name, data, labels, owner, resource_version)
        if resource_version is None:
            result = await self._write(
                f"create configmap {name}",
                self.core_v1.create_namespaced_config_map,
                self.namespace,
                body,
            )
        else:
            result = await self._write(
                f"replace configmap {name}",
                self.core_v1.replace_namespaced_config_map,
                name,
                self.namespace,
                body,
            )
        return result.metadata.resource_version

    async def delete_configmap(self, name: str) -> None:
        await self._write(
            f"delete configmap {name}",
            self.core_v1.delete_namespaced_config_map,
            name,
            self.namespace,
            missing_ok=True,
        )

    # Secrets

    async def get_secret(self, name: str) -> Optional[client.V1Secret]:
        """
        Get a Kubernetes secret.

        Args:
            name: Secret name

        Returns:
            Secret object or None if not found
        """
        return await self._read(
            f"read secret {name}", self.core_v1.read_namespaced_secret, name, self.namespace
        )

    async def write_secret(
        self,
        name: str,
        data: dict[str, str],
        resource_version: Optional[str],
        labels: Optional[dict[str, str]] = None,
    ) -> str:
        """
        Conditionally write a secret's full plaintext data.

        Args:
            name: Secret name
            data: Plaintext values (base64-encoded here)
            resource_version: Version read earlier, or None to create
            labels: Optional labels

        Returns:
            The new resource version

        Raises:
            StaleResourceError: If the secret changed since it was read
        """
        metadata: dict[str, Any] = {"name": name, "labels": labels or {}}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        body = {"apiVersion": "v1", "kind": "Secret", "metadata": metadata, "data": _encode(data)}

        if resource_version is None:
            result = await self._write(
                f"create secret {name}", self.core_v1.create_namespaced_secret, self.namespace, body
            )
        else:
            result = await self._write(
                f"replace secret {name}",
                self.core_v1.replace_namespaced_secret,
                name,
                self.namespace,
                body,
            )
        return result.metadata.resource_version

    # Jobs

    async def create_job(self, manifest: dict[str, Any]) -> None:
        await self._write(
            f"create job {manifest['metadata']['name']}",
            self.batch_v1.create_namespaced_job,
            self.namespace,
            manifest,
            exists_ok=True,
        )

    async def get_job(self, name: str) -> Optional[client.V1Job]:
        return await self._read(
            f"read job {name}", self.batch_v1.read_namespaced_job, name, self.namespace
        )

    async def list_jobs(self, label_selector: str) -> list[client.V1Job]:
        result = await self._read(
            "list jobs",
            self.batch_v1.list_namespaced_job,
            self.namespace,
            label_selector=label_selector,
        )
        return list(result.items) if result else []

    async def delete_job(self, name: str) -> None:
        await self._write(
            f"delete job {name}",
            self.batch_v1.delete_namespaced_job,
            name,
            self.namespace,
            propagation_policy="Background",
            missing_ok=True,
        )

    # Custom resources

    async def get_custom_object(self, plural: str, name: str) -> Optional[dict[str, Any]]:
        return await self._read(
            f"read {plural}/{name}",
            self.custom_objects.get_namespaced_custom_object,
            GROUP,
            VERSION,
            self.namespace,
            plural,
            name,
        )

    async def list_custom_objects(self, plural: str) -> list[dict[str, Any]]:
        result = await self._read(
            f"list {plural}",
            self.custom_objects.list_namespaced_custom_object,
            GROUP,
            VERSION,
            self.namespace,
            plural,
        )
        return list(result.get("items", [])) if result else []

    async def replace_status(
        self,
        plural: str,
        kind: str,
        name: str,
        status: dict[str, Any],
        resource_version: Optional[str],
    ) -> Optional[str]:
        """
        Conditionally replace the status sub-resource of a custom object.

        Returns:
            The new resource version

        Raises:
            StaleResourceError: If the object changed since ``resource_version``
        """
        metadata: dict[str, Any] = {"name": name, "namespace": self.namespace}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        body = {
            "apiVersion": f"{GROUP}/{VERSION}",
            "kind": kind,
            "metadata": metadata,
            "status": status,
        }
        result = await self._write(
            f"replace {plural}/{name} status",
            self.custom_objects.replace_namespaced_custom_object_status,
            GROUP,
            VERSION,
            self.namespace,
            plural,
            name,
            body,
        )
        return (result or {}).get("metadata", {}).get("resourceVersion")

    async def patch_status(self, plural: str, name: str, status: dict[str, Any]) -> None:
        """Merge-patch the status of a custom object (projections only)."""
        await self._write(
            f"patch {plural}/{name} status",
            self.custom_objects.patch_namespaced_custom_object_status,
            GROUP,
            VERSION,
            self.namespace,
            plural,
            name,
            {"status": status},
            missing_ok=True,
        )
