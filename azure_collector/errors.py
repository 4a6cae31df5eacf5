"""Exceptions raised while resolving credentials and talking to Azure."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

if TYPE_CHECKING:
    from .entities import ClientSetConfig

HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429


class CollectorError(Exception):
    """Base class for all collector errors."""


class InvalidConfigError(CollectorError):
    """A required constructor or startup input is missing."""


class NotFoundError(CollectorError):
    """A Kubernetes object does not exist."""


class MissingIdentityRefError(CollectorError):
    """The cluster does not reference a structured identity."""


class CredentialsNotFoundError(CollectorError):
    """No credential secret matched a lookup."""


class TooManyCredentialsError(CollectorError):
    """More than one credential secret matched an organization."""


class MissingValueError(CollectorError):
    """A credential secret lacks a required key."""

    def __init__(self, key: str, secret: str) -> None:
        self.key = key
        super().__init__(f"secret {secret} has no value for key {key!r}")


class InvalidValueError(CollectorError):
    """A secret value cannot be decoded."""

    def __init__(self, key: str, secret: str) -> None:
        self.key = key
        super().__init__(f"secret {secret} has an undecodable value for key {key!r}")


class AuthorizationError(CollectorError):
    """Token acquisition failed for a resolved credential."""

    def __init__(self, reason: str, config: "ClientSetConfig", message: str = "") -> None:
        self.reason = reason
        self.config = config
        super().__init__(
            f"authorization failed ({reason}) for client {config.client_id} "
            f"in tenant {config.tenant_id}: {message}"
        )


class ScrapeTimeoutError(CollectorError):
    """The scrape did not finish before its deadline."""


def status_code(exc: Optional[BaseException]) -> Optional[int]:
    if isinstance(exc, HttpResponseError):
        return exc.status_code
    return None


def is_not_found(exc: Optional[BaseException]) -> bool:
    if isinstance(exc, (NotFoundError, ResourceNotFoundError)):
        return True
    return status_code(exc) == HTTP_NOT_FOUND


def is_throttling_error(exc: Optional[BaseException]) -> bool:
    return status_code(exc) == HTTP_TOO_MANY_REQUESTS


__all__ = [
    "AuthorizationError",
    "CollectorError",
    "CredentialsNotFoundError",
    "InvalidConfigError",
    "InvalidValueError",
    "MissingIdentityRefError",
    "MissingValueError",
    "NotFoundError",
    "ScrapeTimeoutError",
    "TooManyCredentialsError",
    "is_not_found",
    "is_throttling_error",
    "status_code",
]
