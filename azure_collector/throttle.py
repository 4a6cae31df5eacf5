"""Throttling-safe polling of paginated Azure API calls.

A 429 from Azure is data, not a transient failure. When it happens the
poller keeps the response, reads the remaining call budget from the rate-limit
headers and, when the body carries them, the call counts Azure measured for
each throttling policy. Retries on 429 are disabled at the client level, see
``clientset.NoThrottleRetryPolicy``.

Note that an API request can be subjected to multiple throttling policies.
Here is a sample header for a delete virtual machine scale set request::

    x-ms-ratelimit-remaining-resource: Microsoft.Compute/DeleteVMScaleSet3Min;107,Microsoft.Compute/VmssQueuedVMOperations;4720
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, List, Mapping, Optional, TypeVar, Union

from azure.core.exceptions import AzureError, HttpResponseError

from .entities import RateLimitSample
from .errors import is_not_found, is_throttling_error

logger = logging.getLogger(__name__)

REMAINING_RESOURCE_HEADER = "x-ms-ratelimit-remaining-resource"
REMAINING_READS_HEADER = "x-ms-ratelimit-remaining-subscription-reads"
REMAINING_WRITES_HEADER = "x-ms-ratelimit-remaining-subscription-writes"

# Plain decimal numbers only: no underscores, no inf/nan, no hex.
NUMBER = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")

T = TypeVar("T")

Request = Callable[..., Iterable[T]]


@dataclass(slots=True)
class HeaderParseResult:
    samples: List[RateLimitSample] = field(default_factory=list)
    errors: int = 0


def parse_number(value: str) -> Optional[float]:
    value = value.strip()
    if not NUMBER.fullmatch(value):
        return None
    return float(value)


def parse_rate_limit_header(value: str) -> HeaderParseResult:
    """Parse ``policy;count`` pairs joined by commas.

    Malformed pairs are counted and skipped; the rest of the header is kept.
    """

    result = HeaderParseResult()
    for token in value.split(","):
        name, separator, count = token.strip().partition(";")
        name, count = name.strip(), count.strip()
        if not separator or not name or not count:
            logger.warning(
                "Unexpected limit in header. Expected something like "
                "'Microsoft.Compute/DeleteVMScaleSet3Min;107', got %r",
                token,
            )
            result.errors += 1
            continue
        remaining = parse_number(count)
        if remaining is None:
            logger.warning("Unexpected value in limit. Expected a number, got %r", count)
            result.errors += 1
            continue
        result.samples.append(RateLimitSample(policy_name=name, remaining_count=remaining))
    return result


def header_values(headers: Optional[Mapping[str, Any]], name: str) -> List[str]:
    if headers is None:
        return []
    value = headers.get(name)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


def remaining_from_header(headers: Optional[Mapping[str, Any]], name: str) -> Optional[float]:
    """Read a single numeric budget such as the remaining subscription reads."""

    values = header_values(headers, name)
    if not values:
        return None
    return parse_number(values[0])


def parse_measured_calls(body: Union[str, bytes, None]) -> List[RateLimitSample]:
    """Best-effort read of the call counts Azure reports in a 429 body.

    The body looks like ``{"error": {"details": [{"message": "<json>"}]}}`` and
    every message is itself JSON, e.g.
    ``{"operationGroup": "HighCostGetVMScaleSet30Min", "measuredRequestCount": 3277}``.
    Anything unexpected yields no sample for that part.
    """

    if not body:
        return []
    try:
        payload = json.loads(body)
        details = payload["error"]["details"]
    except (ValueError, TypeError, KeyError):
        return []
    if not isinstance(details, list):
        return []

    samples: List[RateLimitSample] = []
    for detail in details:
        try:
            message = json.loads(detail["message"])
            samples.append(
                RateLimitSample(
                    policy_name=str(message["operationGroup"]),
                    remaining_count=float(message["measuredRequestCount"]),
                )
            )
        except (ValueError, TypeError, KeyError):
            continue
    return samples


def _response_text(response: Any) -> Optional[str]:
    if response is None:
        return None
    try:
        return response.text()
    except (AzureError, ValueError):
        return None


@dataclass
class PollResult(Generic[T]):
    """Outcome of one throttle-aware poll."""

    records: List[T] = field(default_factory=list)
    remaining: List[RateLimitSample] = field(default_factory=list)
    measured: List[RateLimitSample] = field(default_factory=list)
    parse_errors: int = 0
    throttled: bool = False
    not_found: bool = False
    header_found: bool = False
    headers: Optional[Mapping[str, Any]] = None


class ThrottleAwarePoller:
    """Run a paginated call, absorbing throttling and not-found responses.

    ``request`` is called as ``request(client_set, **kwargs)`` and must pass
    ``kwargs`` on to the SDK operation so the poller can observe every page's
    raw response. Errors other than 404 and 429 propagate. With
    ``header_name=None`` only the raw headers are kept on the result.
    """

    def __init__(self, header_name: Optional[str] = REMAINING_RESOURCE_HEADER) -> None:
        self.header_name = header_name

    def poll(self, client_set: Any, request: Request[T]) -> PollResult[T]:
        responses: List[Any] = []

        def _capture(pipeline_response: Any) -> None:
            responses.append(pipeline_response.http_response)

        result: PollResult[T] = PollResult()
        try:
            for record in request(client_set, raw_response_hook=_capture):
                result.records.append(record)
        except HttpResponseError as exc:
            if is_throttling_error(exc):
                logger.info("Throttled by Azure: %s", exc.reason)
                result.throttled = True
                result.measured = parse_measured_calls(_response_text(exc.response))
            elif is_not_found(exc):
                result.not_found = True
            else:
                raise
            if exc.response is not None and not responses:
                responses.append(exc.response)
            result.records = []

        if responses:
            self._read_headers(responses[-1].headers, result)
        return result

    def _read_headers(self, headers: Optional[Mapping[str, Any]], result: PollResult[T]) -> None:
        result.headers = headers
        if self.header_name is None:
            return
        values = header_values(headers, self.header_name)
        result.header_found = bool(values)
        for value in values:
            parsed = parse_rate_limit_header(value)
            result.remaining.extend(parsed.samples)
            result.parse_errors += parsed.errors


__all__ = [
    "HeaderParseResult",
    "PollResult",
    "REMAINING_READS_HEADER",
    "REMAINING_RESOURCE_HEADER",
    "REMAINING_WRITES_HEADER",
    "ThrottleAwarePoller",
    "header_values",
    "parse_measured_calls",
    "parse_number",
    "parse_rate_limit_header",
    "remaining_from_header",
]
