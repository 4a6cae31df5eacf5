"""Prometheus metric registrations for the Azure collector."""

from __future__ import annotations

from typing import List, Sequence

from prometheus_client import CollectorRegistry, Counter
from prometheus_client.core import GaugeMetricFamily

METRICS_NAMESPACE = "azure_operator"

RATE_LIMIT_LABELS = ("subscription", "clientid")
VMSS_RATE_LIMIT_LABELS = ("subscription", "clientid", "countername")
USAGE_LABELS = ("name", "subscription")
CHECK_FAILED_LABELS = ("client_id", "subscription_id", "tenant_id", "reason")
EXPIRATION_LABELS = (
    "client_id",
    "subscription_id",
    "tenant_id",
    "application_id",
    "application_name",
    "secret_key_id",
)


def gauge(name: str, documentation: str, labels: Sequence[str]) -> GaugeMetricFamily:
    return GaugeMetricFamily(f"{METRICS_NAMESPACE}_{name}", documentation, labels=list(labels))


def vmss_instance_list_family() -> GaugeMetricFamily:
    return gauge(
        "rate_limit_vmss_instance_list",
        "Remaining number of VMSS VM list operations.",
        VMSS_RATE_LIMIT_LABELS,
    )


def vmss_measured_family() -> GaugeMetricFamily:
    return gauge(
        "rate_limit_vmss_measured",
        "Number of calls we are making as returned by the Azure APIs during a 429 incident.",
        VMSS_RATE_LIMIT_LABELS,
    )


def rate_limit_writes_family() -> GaugeMetricFamily:
    return gauge("rate_limit_writes", "Remaining number of writes allowed.", RATE_LIMIT_LABELS)


def rate_limit_reads_family() -> GaugeMetricFamily:
    return gauge("rate_limit_reads", "Remaining number of reads allowed.", RATE_LIMIT_LABELS)


def usage_current_family() -> GaugeMetricFamily:
    return gauge("usage_current", "Current usage of specific Quotas as defined by Azure.", USAGE_LABELS)


def usage_limit_family() -> GaugeMetricFamily:
    return gauge("usage_limit", "Usage limit of specific Quotas as defined by Azure.", USAGE_LABELS)


def expiration_family() -> GaugeMetricFamily:
    return gauge(
        "service_principal_token_expiration",
        "Expiration date for Azure Access Tokens.",
        EXPIRATION_LABELS,
    )


def check_failed_family() -> GaugeMetricFamily:
    return gauge(
        "service_principal_token_check_failed",
        "Unable to acquire a token for the service principal.",
        CHECK_FAILED_LABELS,
    )


class MetricSet:
    """Wrapper object holding the counters that live across scrapes.

    The counters are created unregistered. ``register`` attaches them to a
    registry; call it after the scrape collector has been registered so the
    counters render with the values of the scrape that just ran.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.vmss_instance_list_parsing_errors = Counter(
            f"{METRICS_NAMESPACE}_rate_limit_vmss_instance_list_parsing_errors",
            "Errors trying to parse the remaining requests from the response header",
            registry=None,
        )
        self.writes_parsing_errors = Counter(
            f"{METRICS_NAMESPACE}_rate_limit_writes_parsing_errors",
            "Errors trying to parse the remaining requests from the response header",
            registry=None,
        )
        self.reads_parsing_errors = Counter(
            f"{METRICS_NAMESPACE}_rate_limit_reads_parsing_errors",
            "Errors trying to parse the remaining requests from the response header",
            registry=None,
        )
        self.usage_scrape_errors = Counter(
            f"{METRICS_NAMESPACE}_usage_scrape_error",
            "Total number of times compute resource usage information scraping returned an error.",
            registry=None,
        )
        self.credential_resolution_errors = Counter(
            f"{METRICS_NAMESPACE}_credential_resolution_errors",
            "Clusters for which no unambiguous credential could be resolved.",
            labelnames=("reason",),
            registry=None,
        )
        self.scrape_duration_seconds = Counter(
            "azure_collector_scrape_duration_seconds",
            "Total time spent scraping the Azure API.",
            labelnames=("collector",),
            registry=None,
        )
        self.scrape_errors = Counter(
            "azure_collector_scrape_errors",
            "Scrapes discarded because of an unexpected error.",
            registry=None,
        )
        self.scrape_timeouts = Counter(
            "azure_collector_scrape_timeouts",
            "Scrapes discarded because they did not finish before the deadline.",
            registry=None,
        )
        if registry is not None:
            self.register(registry)

    def counters(self) -> List[Counter]:
        return [
            self.vmss_instance_list_parsing_errors,
            self.writes_parsing_errors,
            self.reads_parsing_errors,
            self.usage_scrape_errors,
            self.credential_resolution_errors,
            self.scrape_duration_seconds,
            self.scrape_errors,
            self.scrape_timeouts,
        ]

    def register(self, registry: CollectorRegistry) -> None:
        for counter in self.counters():
            registry.register(counter)


__all__ = [
    "METRICS_NAMESPACE",
    "MetricSet",
    "check_failed_family",
    "expiration_family",
    "rate_limit_reads_family",
    "rate_limit_writes_family",
    "usage_current_family",
    "usage_limit_family",
    "vmss_instance_list_family",
    "vmss_measured_family",
]
