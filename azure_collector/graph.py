"""Microsoft Graph lookups of the password credentials of an application.

Only the ``applications`` collection is read, filtered by ``appId``. The
service principal needs ``Application.Read.All`` (or ownership of its own
application) for the lookup to succeed.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from .entities import PasswordCredentialInfo

logger = logging.getLogger(__name__)

GRAPH_ENDPOINT = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

_FRACTION = re.compile(r"\.(\d+)")


def parse_graph_datetime(value: str) -> float:
    """Return the POSIX timestamp of a Graph ``DateTimeOffset`` string.

    Graph emits anywhere between zero and seven fractional digits and a ``Z``
    suffix, neither of which ``datetime.fromisoformat`` accepts before 3.11.
    """

    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    value = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), value, count=1)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def password_credentials(application: Mapping[str, Any]) -> List[PasswordCredentialInfo]:
    infos: List[PasswordCredentialInfo] = []
    for credential in application.get("passwordCredentials") or []:
        end = credential.get("endDateTime")
        if not end:
            continue
        try:
            expires_at = parse_graph_datetime(end)
        except ValueError:
            logger.warning("Unexpected endDateTime %r on application %s", end, application.get("appId"))
            continue
        infos.append(
            PasswordCredentialInfo(
                application_id=application.get("appId") or "",
                application_name=application.get("displayName") or "",
                key_id=credential.get("keyId") or "",
                expires_at=expires_at,
            )
        )
    return infos


class ApplicationsClient:
    """Read-only client for the Graph ``applications`` collection."""

    def __init__(
        self,
        credential: TokenCredential,
        retry_policy: Optional[RetryPolicy] = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._client = PipelineClient(
            GRAPH_ENDPOINT,
            policies=[
                HeadersPolicy(),
                UserAgentPolicy(user_agent=user_agent),
                retry_policy or RetryPolicy(),
                BearerTokenCredentialPolicy(credential, GRAPH_SCOPE),
            ],
        )
        self._request_kwargs: Dict[str, Any] = {}
        if timeout is not None:
            self._request_kwargs = {"connection_timeout": timeout, "read_timeout": timeout}

    def list_password_credentials(self, client_id: str) -> List[PasswordCredentialInfo]:
        escaped = client_id.replace("'", "''")
        url: Optional[str] = f"{GRAPH_ENDPOINT}/applications"
        params: Optional[Dict[str, str]] = {
            "$filter": quote(f"appId eq '{escaped}'"),
            "$select": "appId,displayName,passwordCredentials",
        }
        infos: List[PasswordCredentialInfo] = []
        while url:
            response = self._client.send_request(HttpRequest("GET", url, params=params), **self._request_kwargs)
            response.raise_for_status()
            payload = response.json()
            for application in payload.get("value") or []:
                infos.extend(password_credentials(application))
            # The next link already carries the query.
            url = payload.get("@odata.nextLink")
            params = None
        return infos

    def close(self) -> None:
        self._client.close()


__all__ = [
    "ApplicationsClient",
    "GRAPH_ENDPOINT",
    "GRAPH_SCOPE",
    "parse_graph_datetime",
    "password_credentials",
]
