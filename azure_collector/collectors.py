"""Per-scrape orchestration and the collectors that poll Azure.

Every Prometheus scrape rebuilds its whole state: clusters are listed,
credentials resolved, client sets built and deduplicated by subscription,
and each resource collector polls once per subscription. Families are only
handed to Prometheus after everything finished before the deadline, otherwise
the scrape is discarded.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple, TypeVar

from azure.core.exceptions import AzureError
from azure.mgmt.resource.resources.models import ResourceGroup
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .clientset import CacheEntry, ClientSet, ClientSetCache, ClientSetFactory
from .credentials import DEFAULT_CREDENTIAL_NAMESPACE, CredentialResolver
from .entities import ClusterIdentity, Credential, PasswordCredentialInfo
from .errors import (
    AuthorizationError,
    CredentialsNotFoundError,
    InvalidConfigError,
    InvalidValueError,
    MissingValueError,
    ScrapeTimeoutError,
    TooManyCredentialsError,
)
from .metrics import (
    MetricSet,
    check_failed_family,
    expiration_family,
    rate_limit_reads_family,
    rate_limit_writes_family,
    usage_current_family,
    usage_limit_family,
    vmss_instance_list_family,
    vmss_measured_family,
)
from .secret_store import SecretStore
from .throttle import (
    REMAINING_READS_HEADER,
    REMAINING_WRITES_HEADER,
    PollResult,
    ThrottleAwarePoller,
    remaining_from_header,
)

logger = logging.getLogger(__name__)

RESOURCE_GROUP_NAME_PREFIX = "azure-collector-empty-rg-for-metrics"
RESOURCE_GROUP_OWNER = "azure-collector"
# Listing the VMs of a scale set that does not exist still returns the
# rate-limit headers of the VMSS API.
NONEXISTENT_VMSS_NAME = "notfound"

T = TypeVar("T")
R = TypeVar("R")

RESOLUTION_FAILURE_REASONS: Sequence[Tuple[type, str]] = (
    (TooManyCredentialsError, "too_many_credentials"),
    (CredentialsNotFoundError, "not_found"),
    (MissingValueError, "missing_value"),
    (InvalidValueError, "invalid_value"),
    (InvalidConfigError, "invalid_credential"),
)


def resource_group_name(location: str) -> str:
    return f"{RESOURCE_GROUP_NAME_PREFIX}-{location}"


def resolution_failure_reason(exc: BaseException) -> str:
    for exc_type, reason in RESOLUTION_FAILURE_REASONS:
        if isinstance(exc, exc_type):
            return reason
    return "lookup_failed"


def fan_out(fn: Callable[[T], R], items: Iterable[T], deadline: float, max_workers: int) -> List[R]:
    """Run ``fn`` over ``items`` on worker threads and join before ``deadline``.

    Raises ``ScrapeTimeoutError`` when any worker is still running at the
    deadline. Pending work is cancelled and running workers are abandoned.
    """

    pending_items = list(items)
    if not pending_items:
        return []
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(pending_items))),
        thread_name_prefix="azure-collector",
    )
    try:
        futures = [executor.submit(fn, item) for item in pending_items]
        _, not_done = wait(futures, timeout=max(deadline - time.monotonic(), 0.0))
        if not_done:
            raise ScrapeTimeoutError(f"{len(not_done)} of {len(futures)} tasks still running at the deadline")
        return [future.result() for future in futures]
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


@dataclass
class ScrapeContext:
    """State shared by all collectors during one scrape."""

    cache: ClientSetCache
    deadline: float
    clusters: List[ClusterIdentity] = field(default_factory=list)
    resolution_failures: List[Tuple[ClusterIdentity, Exception]] = field(default_factory=list)

    @property
    def entries(self) -> Dict[str, CacheEntry]:
        return self.cache.entries()

    @property
    def auth_failures(self) -> List[AuthorizationError]:
        return list(self.cache.failures)


class Scrape:
    """Discover clusters and build one client set per subscription."""

    def __init__(
        self,
        store: SecretStore,
        factory: ClientSetFactory,
        metrics: MetricSet,
        host_credential: Optional[Credential] = None,
        max_workers: int = 16,
        default_namespace: str = DEFAULT_CREDENTIAL_NAMESPACE,
    ) -> None:
        self.store = store
        self.factory = factory
        self.metrics = metrics
        self.host_credential = host_credential
        self.max_workers = max_workers
        self.resolver = CredentialResolver(store, default_namespace=default_namespace)

    def build_context(self, cache: ClientSetCache, deadline: float) -> ScrapeContext:
        # Discovery runs on a worker so a stalled API server cannot outlive the deadline.
        clusters = fan_out(lambda _: self.store.list_clusters(), [None], deadline, 1)[0]
        context = ScrapeContext(cache=cache, deadline=deadline, clusters=clusters)
        if not context.clusters:
            logger.info("No clusters found, collecting without tenant credentials")

        resolved: List[Tuple[ClusterIdentity, Credential]] = []
        for identity, outcome in fan_out(self._resolve, context.clusters, deadline, self.max_workers):
            if isinstance(outcome, Exception):
                context.resolution_failures.append((identity, outcome))
            else:
                resolved.append((identity, outcome))

        fan_out(lambda pair: self._add(cache, pair), resolved, deadline, self.max_workers)
        if self.host_credential is not None:
            # The installation may run with a credential no cluster uses.
            # Tenant clusters keep precedence for a shared subscription.
            fan_out(lambda pair: self._add(cache, pair), [(None, self.host_credential)], deadline, 1)

        for identity, exc in context.resolution_failures:
            self.metrics.credential_resolution_errors.labels(reason=resolution_failure_reason(exc)).inc()
        logger.debug(
            "Scrape context: %s clusters, %s subscriptions, %s resolution failures, %s auth failures",
            len(context.clusters),
            len(cache),
            len(context.resolution_failures),
            len(cache.failures),
        )
        return context

    def _resolve(self, identity: ClusterIdentity) -> Tuple[ClusterIdentity, object]:
        try:
            return identity, self.resolver.resolve(identity)
        except Exception as exc:
            # Failures stay scoped to their cluster.
            logger.warning("Unable to resolve credential for cluster %s: %s", identity, exc)
            return identity, exc

    def _add(
        self, cache: ClientSetCache, pair: Tuple[Optional[ClusterIdentity], Credential]
    ) -> Optional[CacheEntry]:
        identity, credential = pair
        try:
            return cache.add(identity, credential)
        except InvalidConfigError as exc:
            logger.warning("Invalid credential for cluster %s: %s", identity, exc)
            if identity is not None:
                self.metrics.credential_resolution_errors.labels(reason="invalid_credential").inc()
            return None


class ResourceCollector(Protocol):
    name: str

    def describe(self) -> List[Metric]:
        ...

    def collect(self, context: ScrapeContext) -> List[Metric]:
        ...


def _log_skip(entry: CacheEntry, exc: BaseException) -> None:
    config = entry.config
    logger.warning(
        "Error calling azure API, skipping clientid=%s subscriptionid=%s tenantid=%s: %s",
        config.client_id,
        config.subscription_id,
        config.tenant_id,
        exc,
    )


class VMSSRateLimitCollector:
    """Remaining VMSS API budget per throttling policy and subscription."""

    name = "vmss_rate_limit"

    def __init__(self, metrics: MetricSet, location: str, max_workers: int = 16) -> None:
        self.metrics = metrics
        self.resource_group = resource_group_name(location)
        self.max_workers = max_workers
        self.poller = ThrottleAwarePoller()

    def describe(self) -> List[Metric]:
        return [vmss_instance_list_family(), vmss_measured_family()]

    def _list_vms(self, client_set: ClientSet, **kwargs):
        return client_set.compute.virtual_machine_scale_set_vms.list(
            self.resource_group, NONEXISTENT_VMSS_NAME, **kwargs
        )

    def _poll(self, entry: CacheEntry) -> Tuple[CacheEntry, Optional[PollResult]]:
        try:
            return entry, self.poller.poll(entry.client_set, self._list_vms)
        except AzureError as exc:
            _log_skip(entry, exc)
            return entry, None

    def collect(self, context: ScrapeContext) -> List[Metric]:
        instance_list = vmss_instance_list_family()
        measured = vmss_measured_family()
        for entry, result in fan_out(self._poll, context.entries.values(), context.deadline, self.max_workers):
            if result is None:
                continue
            labels = [entry.config.subscription_id, entry.config.client_id]
            for sample in result.measured:
                measured.add_metric(labels + [sample.policy_name], sample.remaining_count)
            if not result.header_found:
                logger.warning(
                    "Header %r not found, skipping clientid=%s subscriptionid=%s",
                    self.poller.header_name,
                    entry.config.client_id,
                    entry.config.subscription_id,
                )
                self.metrics.vmss_instance_list_parsing_errors.inc()
                continue
            if result.parse_errors:
                self.metrics.vmss_instance_list_parsing_errors.inc(result.parse_errors)
            for sample in result.remaining:
                instance_list.add_metric(labels + [sample.policy_name], sample.remaining_count)
        return [instance_list, measured]


class RateLimitCollector:
    """Remaining subscription-level write and read budgets.

    The write is an idempotent create-or-update of the empty resource group
    every other check targets, so it also makes sure that group exists.
    """

    name = "rate_limit"

    def __init__(self, metrics: MetricSet, location: str, max_workers: int = 16) -> None:
        self.metrics = metrics
        self.location = location
        self.resource_group = resource_group_name(location)
        self.max_workers = max_workers
        self.poller = ThrottleAwarePoller(header_name=None)

    def describe(self) -> List[Metric]:
        return [rate_limit_writes_family(), rate_limit_reads_family()]

    def _put_group(self, client_set: ClientSet, **kwargs):
        group = ResourceGroup(
            location=self.location,
            managed_by=RESOURCE_GROUP_OWNER,
            tags={"collector": RESOURCE_GROUP_OWNER},
        )
        return [client_set.resource.resource_groups.create_or_update(self.resource_group, group, **kwargs)]

    def _get_group(self, client_set: ClientSet, **kwargs):
        # A missing group still answers with the subscription read budget.
        return [client_set.resource.resource_groups.get(self.resource_group, **kwargs)]

    def _call(self, entry: CacheEntry, request) -> Optional[PollResult]:
        try:
            return self.poller.poll(entry.client_set, request)
        except AzureError as exc:
            _log_skip(entry, exc)
            return None

    def _poll(self, entry: CacheEntry) -> Tuple[CacheEntry, Optional[PollResult], Optional[PollResult]]:
        writes = self._call(entry, self._put_group)
        return entry, writes, self._call(entry, self._get_group)

    def _remaining(self, entry: CacheEntry, result: Optional[PollResult], header: str, errors) -> Optional[float]:
        if result is None:
            return None
        remaining = remaining_from_header(result.headers, header)
        if remaining is None:
            logger.warning("Unable to parse %r for subscriptionid=%s", header, entry.config.subscription_id)
            errors.inc()
        return remaining

    def collect(self, context: ScrapeContext) -> List[Metric]:
        writes = rate_limit_writes_family()
        reads = rate_limit_reads_family()
        polled = fan_out(self._poll, context.entries.values(), context.deadline, self.max_workers)
        for entry, write_result, read_result in polled:
            labels = [entry.config.subscription_id, entry.config.client_id]
            checks = (
                (writes, write_result, REMAINING_WRITES_HEADER, self.metrics.writes_parsing_errors),
                (reads, read_result, REMAINING_READS_HEADER, self.metrics.reads_parsing_errors),
            )
            for family, result, header, errors in checks:
                remaining = self._remaining(entry, result, header, errors)
                if remaining is not None:
                    family.add_metric(labels, remaining)
        return [writes, reads]


class UsageCollector:
    """Compute quota usage and limits per subscription."""

    name = "usage"

    def __init__(self, metrics: MetricSet, location: str, max_workers: int = 16) -> None:
        self.metrics = metrics
        self.location = location
        self.max_workers = max_workers
        self.poller = ThrottleAwarePoller(header_name=None)

    def describe(self) -> List[Metric]:
        return [usage_current_family(), usage_limit_family()]

    def _list_usage(self, client_set: ClientSet, **kwargs):
        return client_set.compute.usage.list(self.location, **kwargs)

    def _poll(self, entry: CacheEntry) -> Tuple[CacheEntry, Optional[PollResult]]:
        try:
            return entry, self.poller.poll(entry.client_set, self._list_usage)
        except AzureError as exc:
            _log_skip(entry, exc)
            self.metrics.usage_scrape_errors.inc()
            return entry, None

    def collect(self, context: ScrapeContext) -> List[Metric]:
        current = usage_current_family()
        limit = usage_limit_family()
        for entry, result in fan_out(self._poll, context.entries.values(), context.deadline, self.max_workers):
            if result is None:
                continue
            subscription_id = entry.config.subscription_id
            if result.throttled:
                logger.info("Usage listing throttled for subscriptionid=%s", subscription_id)
            for usage in result.records:
                name = usage.name.localized_value
                current.add_metric([name, subscription_id], float(usage.current_value))
                limit.add_metric([name, subscription_id], float(usage.limit))
        return [current, limit]


class CredentialCheckCollector:
    """Secret expiry of every authorized service principal, and the ones that failed.

    Expiry comes from the password credentials of the principal's application
    in Microsoft Graph. A failed lookup is reported like a failed token.
    """

    name = "credential_check"

    def __init__(self, check_expiration: bool = True, max_workers: int = 16) -> None:
        self.check_expiration = check_expiration
        self.max_workers = max_workers

    def describe(self) -> List[Metric]:
        return [expiration_family(), check_failed_family()]

    def _lookup(self, entry: CacheEntry) -> Tuple[CacheEntry, Optional[List[PasswordCredentialInfo]]]:
        graph = entry.client_set.graph
        if graph is None:
            return entry, []
        try:
            return entry, graph.list_password_credentials(entry.config.client_id)
        except AzureError as exc:
            _log_skip(entry, exc)
            return entry, None

    def collect(self, context: ScrapeContext) -> List[Metric]:
        expiration = expiration_family()
        failed = check_failed_family()
        seen = set()

        def report(config, reason: str) -> None:
            labels = (config.client_id, config.subscription_id, config.tenant_id, reason)
            if labels not in seen:
                seen.add(labels)
                failed.add_metric(list(labels), 1.0)

        for failure in context.auth_failures:
            report(failure.config, failure.reason)

        if self.check_expiration:
            lookups = fan_out(self._lookup, context.entries.values(), context.deadline, self.max_workers)
            for entry, infos in lookups:
                config = entry.config
                if infos is None:
                    report(config, "application_lookup_failed")
                    continue
                for info in infos:
                    expiration.add_metric(
                        [
                            config.client_id,
                            config.subscription_id,
                            config.tenant_id,
                            info.application_id,
                            info.application_name,
                            info.key_id,
                        ],
                        info.expires_at,
                    )
        return [expiration, failed]


class AzureCollector(Collector):
    """Prometheus collector running one full scrape per ``collect`` call."""

    def __init__(
        self,
        scrape: Scrape,
        collectors: Sequence[ResourceCollector],
        metrics: MetricSet,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.scrape = scrape
        self.collectors = list(collectors)
        self.metrics = metrics
        self.timeout_seconds = timeout_seconds

    def describe(self) -> Iterator[Metric]:
        for collector in self.collectors:
            yield from collector.describe()

    def collect(self) -> Iterator[Metric]:
        deadline = time.monotonic() + self.timeout_seconds
        cache = ClientSetCache(self.scrape.factory)
        families: List[Metric] = []
        try:
            families = self._run(cache, deadline)
        except ScrapeTimeoutError as exc:
            logger.warning("Discarding scrape after %.1fs: %s", self.timeout_seconds, exc)
            self.metrics.scrape_timeouts.inc()
            families = []
        except Exception:
            logger.exception("Failed to scrape Azure")
            self.metrics.scrape_errors.inc()
            families = []
        finally:
            cache.close()
        yield from families

    def _run(self, cache: ClientSetCache, deadline: float) -> List[Metric]:
        families: List[Metric] = []
        start = time.monotonic()
        context = self.scrape.build_context(cache, deadline)
        self.metrics.scrape_duration_seconds.labels(collector="discovery").inc(time.monotonic() - start)
        for collector in self.collectors:
            start = time.monotonic()
            families.extend(collector.collect(context))
            self.metrics.scrape_duration_seconds.labels(collector=collector.name).inc(time.monotonic() - start)
        return families


__all__ = [
    "AzureCollector",
    "CredentialCheckCollector",
    "RateLimitCollector",
    "ResourceCollector",
    "Scrape",
    "ScrapeContext",
    "UsageCollector",
    "VMSSRateLimitCollector",
    "fan_out",
    "resource_group_name",
]
