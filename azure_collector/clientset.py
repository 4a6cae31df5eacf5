"""Authenticated Azure client bundles, one per subscription.

A ``ClientSet`` is built from exactly one ``ClientSetConfig``. Every client in
it carries its own ``NoThrottleRetryPolicy``, so HTTP 429 responses reach the
caller on the first occurrence instead of being retried by the transport.
Nothing process-wide is modified to achieve that.

``ClientSetCache`` collapses all credentials that target the same
subscription into one client set for the duration of a scrape.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.core.pipeline.policies import RetryPolicy
from azure.identity import ClientSecretCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.core.policies import AuxiliaryAuthenticationPolicy
from azure.mgmt.resource import ResourceManagementClient

from .entities import ClientSetConfig, ClusterIdentity, Credential
from .errors import HTTP_TOO_MANY_REQUESTS, AuthorizationError, InvalidConfigError
from .graph import ApplicationsClient

logger = logging.getLogger(__name__)

ARM_SCOPE = "https://management.azure.com/.default"
# Used for credentials that are not enrolled in the Azure partner program.
DEFAULT_PARTNER_ID = "37f13270-5c7a-56ff-9211-8426baaeaabd"

AUTH_FAILURE_REASONS: Sequence[Tuple[str, str]] = (
    ("AADSTS7000222", "expired"),
    ("AADSTS7000215", "invalid"),
    ("AADSTS700016", "invalid"),
    ("AADSTS7000112", "forbidden"),
    ("AADSTS50105", "forbidden"),
    ("AADSTS53003", "forbidden"),
)

CredentialFactory = Callable[[str, str, str, Sequence[str]], TokenCredential]


class NoThrottleRetryPolicy(RetryPolicy):
    """Retry policy that hands every 429 straight back to the caller."""

    def is_retry(self, settings, response) -> bool:  # type: ignore[override]
        if response.http_response.status_code == HTTP_TOO_MANY_REQUESTS:
            return False
        return super().is_retry(settings, response)


def build_client_set_config(credential: Credential, gs_tenant_id: str) -> ClientSetConfig:
    for name in ("client_id", "client_secret", "subscription_id", "tenant_id"):
        if not getattr(credential, name):
            raise InvalidConfigError(f"credential {name} must not be empty")

    auxiliary_tenants: Tuple[str, ...] = (gs_tenant_id,)
    if credential.single_tenant or credential.tenant_id == gs_tenant_id:
        # Resources live in a subscription of the credential's own tenant.
        auxiliary_tenants = ()

    return ClientSetConfig(
        client_id=credential.client_id,
        client_secret=credential.client_secret,
        subscription_id=credential.subscription_id,
        tenant_id=credential.tenant_id,
        gs_tenant_id=gs_tenant_id,
        partner_id_tag=f"pid-{credential.partner_id or DEFAULT_PARTNER_ID}",
        auxiliary_tenants=auxiliary_tenants,
    )


def classify_auth_failure(exc: BaseException) -> str:
    message = str(exc)
    for code, reason in AUTH_FAILURE_REASONS:
        if code in message:
            return reason
    if getattr(exc, "status_code", None) in (401, 403):
        return "forbidden"
    return "unknown"


def client_secret_credential(
    tenant_id: str, client_id: str, client_secret: str, additionally_allowed_tenants: Sequence[str]
) -> TokenCredential:
    return ClientSecretCredential(
        tenant_id,
        client_id,
        client_secret,
        additionally_allowed_tenants=list(additionally_allowed_tenants),
    )


@dataclass
class ClientSet:
    """Azure management clients scoped to one subscription."""

    config: ClientSetConfig
    credential: TokenCredential
    compute: ComputeManagementClient
    resource: ResourceManagementClient
    graph: Optional[ApplicationsClient] = None

    def close(self) -> None:
        for closable in (self.compute, self.resource, self.graph, self.credential):
            close = getattr(closable, "close", None)
            if close is not None:
                close()


class ClientSetFactory:
    """Turn resolved credentials into authenticated client sets."""

    def __init__(
        self,
        gs_tenant_id: str,
        credential_factory: CredentialFactory = client_secret_credential,
        verify_token: bool = True,
        request_timeout: Optional[float] = None,
        with_graph: bool = True,
    ) -> None:
        if not gs_tenant_id:
            raise InvalidConfigError("gs_tenant_id must not be empty")
        self.gs_tenant_id = gs_tenant_id
        self.credential_factory = credential_factory
        self.verify_token = verify_token
        self.request_timeout = request_timeout
        self.with_graph = with_graph

    def config_for(self, credential: Credential) -> ClientSetConfig:
        return build_client_set_config(credential, self.gs_tenant_id)

    def build(self, credential: Credential) -> Tuple[ClientSetConfig, ClientSet]:
        config = self.config_for(credential)
        return config, self.build_from_config(config)

    def build_from_config(self, config: ClientSetConfig) -> ClientSet:
        token_credential = self.credential_factory(
            config.tenant_id, config.client_id, config.client_secret, config.auxiliary_tenants
        )
        if self.verify_token:
            try:
                token_credential.get_token(ARM_SCOPE)
            except AzureError as exc:
                raise AuthorizationError(classify_auth_failure(exc), config, str(exc)) from exc

        kwargs: Dict[str, Any] = {"user_agent": config.partner_id_tag}
        if self.request_timeout is not None:
            kwargs["connection_timeout"] = self.request_timeout
            kwargs["read_timeout"] = self.request_timeout
        if config.auxiliary_tenants:
            auxiliary = [
                self.credential_factory(tenant, config.client_id, config.client_secret, ())
                for tenant in config.auxiliary_tenants
            ]
            kwargs["per_call_policies"] = [AuxiliaryAuthenticationPolicy(auxiliary, ARM_SCOPE)]

        graph: Optional[ApplicationsClient] = None
        if self.with_graph:
            # The application object lives in the credential's home tenant.
            graph = ApplicationsClient(
                token_credential,
                retry_policy=NoThrottleRetryPolicy(),
                user_agent=config.partner_id_tag,
                timeout=self.request_timeout,
            )

        return ClientSet(
            config=config,
            credential=token_credential,
            compute=ComputeManagementClient(
                token_credential, config.subscription_id, retry_policy=NoThrottleRetryPolicy(), **kwargs
            ),
            resource=ResourceManagementClient(
                token_credential, config.subscription_id, retry_policy=NoThrottleRetryPolicy(), **kwargs
            ),
            graph=graph,
        )


@dataclass
class CacheEntry:
    """The cluster whose credential first claimed a subscription."""

    identity: Optional[ClusterIdentity]
    config: ClientSetConfig
    client_set: ClientSet


@dataclass
class ClientSetCache:
    """Deduplicate client sets by subscription, first seen wins."""

    factory: ClientSetFactory
    failures: List[AuthorizationError] = field(default_factory=list)
    _entries: Dict[str, CacheEntry] = field(default_factory=dict)
    _pending: Dict[str, threading.Event] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def add(self, identity: Optional[ClusterIdentity], credential: Credential) -> Optional[CacheEntry]:
        """Return the entry serving the credential's subscription.

        Clients are only built when no entry exists yet. A concurrent caller
        for the same subscription waits for the first build and reuses it.
        Returns ``None`` when the credential failed to authorize.
        """

        config = self.factory.config_for(credential)
        key = config.dedup_key
        while True:
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None:
                    logger.debug("Subscription %s already cached, skipping cluster %s", key, identity)
                    return entry
                waiter = self._pending.get(key)
                if waiter is None:
                    done = threading.Event()
                    self._pending[key] = done
                    break
            waiter.wait()

        try:
            client_set = self.factory.build_from_config(config)
            entry = CacheEntry(identity=identity, config=config, client_set=client_set)
            with self._lock:
                self._entries[key] = entry
        except AuthorizationError as exc:
            logger.warning(
                "Skipping credential clientid=%s subscriptionid=%s tenantid=%s: %s",
                config.client_id,
                config.subscription_id,
                config.tenant_id,
                exc.reason,
            )
            with self._lock:
                self.failures.append(exc)
            return None
        finally:
            # Entry is stored before waiters are released.
            with self._lock:
                self._pending.pop(key, None)
            done.set()
        return entry

    def entries(self) -> Dict[str, CacheEntry]:
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        for entry in self.entries().values():
            entry.client_set.close()


__all__ = [
    "ARM_SCOPE",
    "CacheEntry",
    "ClientSet",
    "ClientSetCache",
    "ClientSetFactory",
    "DEFAULT_PARTNER_ID",
    "NoThrottleRetryPolicy",
    "build_client_set_config",
    "classify_auth_failure",
]
