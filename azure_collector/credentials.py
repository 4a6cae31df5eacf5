"""Find the Azure credential that applies to a cluster.

Resolution is a fixed pipeline of strategies sharing one signature,
``(identity) -> Credential | None``. ``None`` means "not found here, try the
next one"; an exception aborts resolution for that cluster. Strategies run in
this order:

1. the structured identity referenced by the cluster,
2. a credential secret labelled with the organization in the cluster namespace,
3. the same label match in the default credential namespace,
4. the well-known default secret.
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional, Tuple

from .entities import ClusterIdentity, Credential, SecretRecord
from .errors import (
    CredentialsNotFoundError,
    MissingIdentityRefError,
    MissingValueError,
    NotFoundError,
    TooManyCredentialsError,
)
from .secret_store import SecretStore

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "azure.azureoperator.clientid"
CLIENT_SECRET_KEY = "azure.azureoperator.clientsecret"
SUBSCRIPTION_ID_KEY = "azure.azureoperator.subscriptionid"
TENANT_ID_KEY = "azure.azureoperator.tenantid"
PARTNER_ID_KEY = "azure.azureoperator.partnerid"
IDENTITY_SECRET_KEY = "clientSecret"

APP_LABEL = "app"
APP_LABEL_VALUE = "credentiald"
ORGANIZATION_LABEL = "giantswarm.io/organization"
SINGLE_TENANT_LABEL = "giantswarm.io/single-tenant-service-principal"

DEFAULT_CREDENTIAL_NAMESPACE = "giantswarm"
DEFAULT_CREDENTIAL_NAME = "credential-default"

Strategy = Callable[[ClusterIdentity], Optional[Credential]]


def value_from_secret(secret: SecretRecord, key: str) -> str:
    try:
        return secret.data[key]
    except KeyError:
        raise MissingValueError(key, str(secret.ref)) from None


def credential_from_secret(secret: SecretRecord) -> Credential:
    """Decode a legacy credential secret."""

    return Credential(
        client_id=value_from_secret(secret, CLIENT_ID_KEY),
        client_secret=value_from_secret(secret, CLIENT_SECRET_KEY),
        subscription_id=value_from_secret(secret, SUBSCRIPTION_ID_KEY),
        tenant_id=value_from_secret(secret, TENANT_ID_KEY),
        partner_id=secret.data.get(PARTNER_ID_KEY, ""),
        single_tenant=SINGLE_TENANT_LABEL in secret.labels,
    )


def organization_labels(identity: ClusterIdentity) -> Mapping[str, str]:
    return {APP_LABEL: APP_LABEL_VALUE, ORGANIZATION_LABEL: identity.organization}


class CredentialResolver:
    """Resolve one credential per cluster through an ordered fallback chain."""

    def __init__(
        self,
        store: SecretStore,
        default_namespace: str = DEFAULT_CREDENTIAL_NAMESPACE,
        default_name: str = DEFAULT_CREDENTIAL_NAME,
    ) -> None:
        self.store = store
        self.default_namespace = default_namespace
        self.default_name = default_name
        self.strategies: Tuple[Tuple[str, Strategy], ...] = (
            ("structured-identity", self.from_structured_identity),
            ("organization-namespace", self.from_organization_namespace),
            ("default-namespace", self.from_default_namespace),
            ("default-secret", self.from_default_secret),
        )

    def resolve(self, identity: ClusterIdentity) -> Credential:
        for name, strategy in self.strategies:
            credential = strategy(identity)
            if credential is not None:
                logger.debug("Resolved credential for cluster %s via %s", identity, name)
                return credential
        raise CredentialsNotFoundError(f"no credential found for cluster {identity}")

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------
    def from_structured_identity(self, identity: ClusterIdentity) -> Optional[Credential]:
        try:
            return self._structured_identity(identity)
        except (MissingIdentityRefError, NotFoundError) as exc:
            logger.debug("Structured identity unusable for cluster %s: %s", identity, exc)
            return None

    def _structured_identity(self, identity: ClusterIdentity) -> Credential:
        ref = identity.identity_ref
        if ref is None:
            raise MissingIdentityRefError(f"identityRef is not set on cluster {identity}")
        identity_object = self.store.get_cluster_identity_object(ref.namespace, ref.name)
        secret_ref = identity_object.client_secret_ref
        secret = self.store.get_secret(secret_ref.namespace, secret_ref.name)
        return Credential(
            client_id=identity_object.client_id,
            client_secret=value_from_secret(secret, IDENTITY_SECRET_KEY),
            tenant_id=identity_object.tenant_id,
            subscription_id=identity.subscription_id,
            single_tenant=SINGLE_TENANT_LABEL in secret.labels,
        )

    def from_organization_namespace(self, identity: ClusterIdentity) -> Optional[Credential]:
        return self._from_labelled_secret(identity, identity.namespace)

    def from_default_namespace(self, identity: ClusterIdentity) -> Optional[Credential]:
        return self._from_labelled_secret(identity, self.default_namespace)

    def from_default_secret(self, identity: ClusterIdentity) -> Optional[Credential]:
        try:
            secret = self.store.get_secret(self.default_namespace, self.default_name)
        except NotFoundError:
            return None
        return credential_from_secret(secret)

    def _from_labelled_secret(self, identity: ClusterIdentity, namespace: str) -> Optional[Credential]:
        secrets = self.store.list_secrets(namespace, organization_labels(identity))
        # Only one credential secret per organization is supported.
        if len(secrets) > 1:
            names = ", ".join(sorted(str(secret.ref) for secret in secrets))
            raise TooManyCredentialsError(
                f"found {len(secrets)} credential secrets for organization "
                f"{identity.organization!r} in namespace {namespace}: {names}"
            )
        if not secrets:
            return None
        return credential_from_secret(secrets[0])


__all__ = [
    "CredentialResolver",
    "credential_from_secret",
    "organization_labels",
    "value_from_secret",
]
