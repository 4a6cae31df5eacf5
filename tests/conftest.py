"""Shared pytest fixtures and in-memory fakes for the Azure collector."""

from __future__ import annotations

import base64
import json
import threading
import time
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from prometheus_client import CollectorRegistry

from azure_collector.clientset import ClientSet, ClientSetFactory
from azure_collector.credentials import (
    APP_LABEL,
    APP_LABEL_VALUE,
    CLIENT_ID_KEY,
    CLIENT_SECRET_KEY,
    ORGANIZATION_LABEL,
    PARTNER_ID_KEY,
    SUBSCRIPTION_ID_KEY,
    TENANT_ID_KEY,
)
from azure_collector.entities import (
    ClientSetConfig,
    ClusterIdentity,
    ClusterIdentityObject,
    ObjectRef,
    SecretRecord,
)
from azure_collector.errors import NotFoundError
from azure_collector.metrics import MetricSet

GS_TENANT_ID = "gs-tenant"


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def legacy_secret(
    namespace: str,
    name: str,
    subscription_id: str = "sub-1",
    organization: str = "acme",
    client_id: str = "client-1",
    tenant_id: str = "tenant-1",
    partner_id: Optional[str] = None,
    extra_labels: Optional[Mapping[str, str]] = None,
) -> SecretRecord:
    data = {
        CLIENT_ID_KEY: client_id,
        CLIENT_SECRET_KEY: "s3cr3t",
        SUBSCRIPTION_ID_KEY: subscription_id,
        TENANT_ID_KEY: tenant_id,
    }
    if partner_id is not None:
        data[PARTNER_ID_KEY] = partner_id
    labels = {APP_LABEL: APP_LABEL_VALUE, ORGANIZATION_LABEL: organization}
    labels.update(extra_labels or {})
    return SecretRecord(namespace=namespace, name=name, labels=labels, data=data)


class FakeSecretStore:
    """In-memory ``SecretStore`` that records every lookup."""

    def __init__(self) -> None:
        self.secrets: Dict[Tuple[str, str], SecretRecord] = {}
        self.identities: Dict[Tuple[str, str], ClusterIdentityObject] = {}
        self.clusters: List[ClusterIdentity] = []
        self.calls: List[Tuple[str, ...]] = []
        self.list_errors: Dict[str, Exception] = {}
        self.identity_errors: Dict[Tuple[str, str], Exception] = {}
        self.list_clusters_delay = 0.0

    def add_secret(self, secret: SecretRecord) -> SecretRecord:
        self.secrets[(secret.namespace, secret.name)] = secret
        return secret

    def add_identity(self, namespace: str, name: str, identity: ClusterIdentityObject) -> None:
        self.identities[(namespace, name)] = identity

    def get_secret(self, namespace: str, name: str) -> SecretRecord:
        self.calls.append(("get_secret", namespace, name))
        try:
            return self.secrets[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"secret {namespace}/{name} not found") from None

    def list_secrets(self, namespace: str, labels: Mapping[str, str]) -> List[SecretRecord]:
        self.calls.append(("list_secrets", namespace))
        if namespace in self.list_errors:
            raise self.list_errors[namespace]
        return [
            secret
            for (secret_namespace, _), secret in sorted(self.secrets.items())
            if secret_namespace == namespace
            and all(secret.labels.get(key) == value for key, value in labels.items())
        ]

    def get_cluster_identity_object(self, namespace: str, name: str) -> ClusterIdentityObject:
        self.calls.append(("get_identity", namespace, name))
        if (namespace, name) in self.identity_errors:
            raise self.identity_errors[(namespace, name)]
        try:
            return self.identities[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"identity {namespace}/{name} not found") from None

    def list_clusters(self) -> List[ClusterIdentity]:
        self.calls.append(("list_clusters",))
        if self.list_clusters_delay:
            time.sleep(self.list_clusters_delay)
        return list(self.clusters)


class FakeResponse:
    """Just enough of an azure-core ``HttpResponse`` for pollers and errors."""

    def __init__(self, status_code: int = 200, headers: Optional[Mapping[str, Any]] = None, body: str = "") -> None:
        self.status_code = status_code
        self.reason = {200: "OK", 404: "Not Found", 429: "Too Many Requests"}.get(status_code, "Error")
        self.headers = dict(headers or {})
        self.body = body
        self.content_type = "application/json"

    def text(self, encoding: Optional[str] = None) -> str:
        return self.body


def throttling_body(*messages: Mapping[str, Any]) -> str:
    return json.dumps({"error": {"details": [{"message": json.dumps(message)} for message in messages]}})


def fake_request(
    pages: Iterable[Iterable[Any]] = (),
    headers: Optional[Mapping[str, Any]] = None,
    status_code: int = 200,
    body: str = "",
):
    """Build a ``request(client_set, **kwargs)`` callable that mimics an SDK pager."""

    def request(client_set: Any, **kwargs: Any):
        hook = kwargs["raw_response_hook"]
        if status_code != 200:
            response = FakeResponse(status_code, headers, body)
            hook(SimpleNamespace(http_response=response))
            if status_code == 404:
                raise ResourceNotFoundError(message="not found", response=response)
            raise HttpResponseError(message="request failed", response=response)

        def pager():
            for page in pages:
                hook(SimpleNamespace(http_response=FakeResponse(200, headers)))
                yield from page

        return pager()

    return request


def fake_compute(vmss_request=None, usage_request=None) -> MagicMock:
    compute = MagicMock()
    if vmss_request is not None:
        compute.virtual_machine_scale_set_vms.list.side_effect = lambda rg, vmss, **kw: vmss_request(None, **kw)
    if usage_request is not None:
        compute.usage.list.side_effect = lambda location, **kw: usage_request(None, **kw)
    return compute


class FakeClientSetFactory(ClientSetFactory):
    """Factory that builds mock client sets and counts builds per subscription."""

    def __init__(self, compute_by_subscription: Optional[Dict[str, MagicMock]] = None) -> None:
        super().__init__(GS_TENANT_ID, verify_token=False)
        self.compute_by_subscription = compute_by_subscription or {}
        self.resource_by_subscription: Dict[str, MagicMock] = {}
        self.graph_by_subscription: Dict[str, Any] = {}
        self.failing_clients: Dict[str, Exception] = {}
        self.build_delays: Dict[str, float] = {}
        self.builds: List[ClientSetConfig] = []
        self._lock = threading.Lock()

    def build_from_config(self, config: ClientSetConfig) -> ClientSet:
        with self._lock:
            self.builds.append(config)
        if config.client_id in self.build_delays:
            time.sleep(self.build_delays[config.client_id])
        if config.client_id in self.failing_clients:
            raise self.failing_clients[config.client_id]
        return ClientSet(
            config=config,
            credential=MagicMock(),
            compute=self.compute_by_subscription.get(config.subscription_id, MagicMock()),
            resource=self.resource_by_subscription.get(config.subscription_id, MagicMock()),
            graph=self.graph_by_subscription.get(config.subscription_id),
        )


@pytest.fixture
def store() -> FakeSecretStore:
    return FakeSecretStore()


@pytest.fixture
def factory() -> FakeClientSetFactory:
    return FakeClientSetFactory()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metric_set(registry: CollectorRegistry) -> MetricSet:
    return MetricSet(registry)


def cluster(
    name: str,
    namespace: str = "org-acme",
    organization: str = "acme",
    subscription_id: str = "",
    identity_ref: Optional[ObjectRef] = None,
) -> ClusterIdentity:
    return ClusterIdentity(
        name=name,
        namespace=namespace,
        organization=organization,
        subscription_id=subscription_id,
        identity_ref=identity_ref,
    )
