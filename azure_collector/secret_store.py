"""Read credential secrets and cluster identities from the management cluster.

The collector never writes anything back; every call here is a plain read
against the Kubernetes API. ``SecretStore`` is the seam the resolver depends
on, ``KubernetesSecretStore`` is the production implementation backed by the
official ``kubernetes`` client.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol

from kubernetes import client, config
from kubernetes.client import ApiClient
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from .entities import ClusterIdentity, ClusterIdentityObject, ObjectRef, SecretRecord
from .errors import InvalidValueError, NotFoundError

logger = logging.getLogger(__name__)

CAPZ_GROUP = "infrastructure.cluster.x-k8s.io"
CAPZ_VERSION = "v1beta1"
AZURE_CLUSTER_PLURAL = "azureclusters"
AZURE_CLUSTER_IDENTITY_PLURAL = "azureclusteridentities"
ORGANIZATION_LABEL = "giantswarm.io/organization"
LIST_PAGE_SIZE = 200


class SecretStore(Protocol):
    def get_secret(self, namespace: str, name: str) -> SecretRecord:
        ...

    def list_secrets(self, namespace: str, labels: Mapping[str, str]) -> List[SecretRecord]:
        ...

    def get_cluster_identity_object(self, namespace: str, name: str) -> ClusterIdentityObject:
        ...

    def list_clusters(self) -> List[ClusterIdentity]:
        ...


def label_selector(labels: Mapping[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def _decode_data(data: Optional[Mapping[str, str]], ref: ObjectRef) -> Dict[str, str]:
    decoded: Dict[str, str] = {}
    for key, value in (data or {}).items():
        try:
            decoded[key] = base64.b64decode(value, validate=True).decode("utf-8") if value else ""
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise InvalidValueError(key, str(ref)) from exc
    return decoded


def _secret_record(secret: Any) -> SecretRecord:
    metadata = secret.metadata
    return SecretRecord(
        namespace=metadata.namespace,
        name=metadata.name,
        labels=dict(metadata.labels or {}),
        data=_decode_data(secret.data, ObjectRef(metadata.namespace, metadata.name)),
    )


def cluster_identity_from_object(obj: Mapping[str, Any]) -> ClusterIdentity:
    """Build a ``ClusterIdentity`` from an ``AzureCluster`` custom object."""

    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    namespace = metadata.get("namespace", "")
    identity_ref: Optional[ObjectRef] = None
    raw_ref = spec.get("identityRef")
    if raw_ref and raw_ref.get("name"):
        identity_ref = ObjectRef(raw_ref.get("namespace") or namespace, raw_ref["name"])
    return ClusterIdentity(
        name=metadata.get("name", ""),
        namespace=namespace,
        organization=(metadata.get("labels") or {}).get(ORGANIZATION_LABEL, ""),
        subscription_id=spec.get("subscriptionID", ""),
        identity_ref=identity_ref,
    )


def load_kubernetes_api_client(kubeconfig_path: Optional[str] = None) -> ApiClient:
    """Prefer in-cluster configuration and fall back to a kubeconfig file."""

    if kubeconfig_path:
        return config.new_client_from_config(config_file=kubeconfig_path)
    try:
        config.load_incluster_config()
        logger.debug("Using in-cluster Kubernetes configuration")
        return ApiClient()
    except ConfigException:
        logger.debug("In-cluster configuration unavailable, loading kubeconfig")
    return config.new_client_from_config()


class KubernetesSecretStore:
    """``SecretStore`` backed by the Kubernetes API.

    ``request_timeout`` is passed as ``_request_timeout`` to every call so a
    stalled API server cannot hold a worker past the scrape deadline.
    """

    def __init__(self, api_client: ApiClient, request_timeout: Optional[float] = None) -> None:
        self.core = client.CoreV1Api(api_client)
        self.custom_objects = client.CustomObjectsApi(api_client)
        self.request_timeout = request_timeout

    def _call_kwargs(self, **kwargs: Any) -> Dict[str, Any]:
        if self.request_timeout is not None:
            kwargs["_request_timeout"] = self.request_timeout
        return kwargs

    def get_secret(self, namespace: str, name: str) -> SecretRecord:
        try:
            secret = self.core.read_namespaced_secret(name=name, namespace=namespace, **self._call_kwargs())
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError(f"secret {namespace}/{name} not found") from exc
            raise
        return _secret_record(secret)

    def list_secrets(self, namespace: str, labels: Mapping[str, str]) -> List[SecretRecord]:
        secrets: List[SecretRecord] = []
        cont: Optional[str] = None
        while True:
            kwargs = self._call_kwargs(label_selector=label_selector(labels), limit=LIST_PAGE_SIZE)
            if cont:
                kwargs["_continue"] = cont
            resp = self.core.list_namespaced_secret(namespace, **kwargs)
            secrets.extend(_secret_record(item) for item in resp.items or [])
            cont = resp.metadata._continue
            if not cont:
                break
        return secrets

    def get_cluster_identity_object(self, namespace: str, name: str) -> ClusterIdentityObject:
        try:
            obj = self.custom_objects.get_namespaced_custom_object(
                CAPZ_GROUP, CAPZ_VERSION, namespace, AZURE_CLUSTER_IDENTITY_PLURAL, name, **self._call_kwargs()
            )
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError(f"identity {namespace}/{name} not found") from exc
            raise
        spec = obj.get("spec") or {}
        secret_ref = spec.get("clientSecret") or {}
        return ClusterIdentityObject(
            tenant_id=spec.get("tenantID", ""),
            client_id=spec.get("clientID", ""),
            client_secret_ref=ObjectRef(secret_ref.get("namespace") or namespace, secret_ref.get("name", "")),
        )

    def list_clusters(self) -> List[ClusterIdentity]:
        clusters: List[ClusterIdentity] = []
        cont: Optional[str] = None
        while True:
            kwargs = self._call_kwargs(limit=LIST_PAGE_SIZE)
            if cont:
                kwargs["_continue"] = cont
            resp = self.custom_objects.list_cluster_custom_object(
                CAPZ_GROUP, CAPZ_VERSION, AZURE_CLUSTER_PLURAL, **kwargs
            )
            clusters.extend(cluster_identity_from_object(item) for item in resp.get("items") or [])
            cont = (resp.get("metadata") or {}).get("continue")
            if not cont:
                break
        logger.debug("Found %s clusters", len(clusters))
        return clusters


__all__ = [
    "KubernetesSecretStore",
    "SecretStore",
    "cluster_identity_from_object",
    "label_selector",
    "load_kubernetes_api_client",
]
