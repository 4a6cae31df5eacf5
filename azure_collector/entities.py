"""Value objects shared by credential resolution, client building and polling."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


@dataclass(frozen=True, slots=True)
class ObjectRef:
    """Namespaced reference to a Kubernetes object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, slots=True)
class ClusterIdentity:
    """Identity metadata of one tenant cluster."""

    name: str
    namespace: str
    organization: str = ""
    subscription_id: str = ""
    identity_ref: Optional[ObjectRef] = None

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, slots=True)
class SecretRecord:
    """A credential secret with its values already decoded."""

    namespace: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    data: Dict[str, str] = field(default_factory=dict)

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self.namespace, self.name)


@dataclass(frozen=True, slots=True)
class ClusterIdentityObject:
    """Structured identity resource referenced by a cluster."""

    tenant_id: str
    client_id: str
    client_secret_ref: ObjectRef


@dataclass(frozen=True, slots=True)
class Credential:
    """Access credential for one Azure account, loaded fresh every scrape."""

    client_id: str
    client_secret: str = field(repr=False)
    tenant_id: str
    subscription_id: str
    partner_id: str = ""
    single_tenant: bool = False


@dataclass(frozen=True, slots=True)
class ClientSetConfig:
    """Everything needed to build a client set for one subscription."""

    client_id: str
    client_secret: str = field(repr=False)
    subscription_id: str
    tenant_id: str
    gs_tenant_id: str
    partner_id_tag: str
    auxiliary_tenants: Tuple[str, ...] = ()

    @property
    def dedup_key(self) -> str:
        return self.subscription_id


@dataclass(frozen=True, slots=True)
class PasswordCredentialInfo:
    """One client secret of an application, as reported by Microsoft Graph."""

    application_id: str
    application_name: str
    key_id: str
    expires_at: float


@dataclass(frozen=True, slots=True)
class RateLimitSample:
    """Remaining or measured call budget for one throttling policy."""

    policy_name: str
    remaining_count: float


__all__ = [
    "ClientSetConfig",
    "ClusterIdentity",
    "ClusterIdentityObject",
    "Credential",
    "ObjectRef",
    "PasswordCredentialInfo",
    "RateLimitSample",
    "SecretRecord",
]
