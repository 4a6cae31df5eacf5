"""Wire configuration, Kubernetes access and collectors into a Prometheus endpoint."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from prometheus_client import CollectorRegistry, generate_latest, start_http_server

from .clientset import ClientSetFactory
from .collectors import (
    AzureCollector,
    CredentialCheckCollector,
    RateLimitCollector,
    ResourceCollector,
    Scrape,
    UsageCollector,
    VMSSRateLimitCollector,
)
from .config import Config
from .metrics import MetricSet
from .secret_store import KubernetesSecretStore, SecretStore, load_kubernetes_api_client

logger = logging.getLogger(__name__)


class Exporter:
    """Expose Azure rate-limit and quota metrics for every tenant cluster."""

    def __init__(
        self,
        config: Config,
        store: SecretStore,
        factory: Optional[ClientSetFactory] = None,
        registry: CollectorRegistry | None = None,
    ) -> None:
        config.validate()
        self.config = config
        self.registry = registry or CollectorRegistry()
        self.metrics = MetricSet()
        self.factory = factory or ClientSetFactory(
            config.gs_tenant_id,
            request_timeout=config.scrape_timeout_seconds,
            with_graph=config.enable_sp_expiration,
        )
        self.scrape = Scrape(
            store=store,
            factory=self.factory,
            metrics=self.metrics,
            host_credential=config.host_credential(),
            max_workers=config.max_workers,
            default_namespace=config.credential_namespace,
        )
        self.collector = AzureCollector(
            scrape=self.scrape,
            collectors=self._build_collectors(),
            metrics=self.metrics,
            timeout_seconds=config.scrape_timeout_seconds,
        )
        self.registry.register(self.collector)
        # Counters render after the scrape that updates them.
        self.metrics.register(self.registry)

    def _build_collectors(self) -> List[ResourceCollector]:
        config = self.config
        collectors: List[ResourceCollector] = [
            CredentialCheckCollector(check_expiration=config.enable_sp_expiration, max_workers=config.max_workers)
        ]
        # The write check creates the resource group the VMSS check lists.
        if config.enable_rate_limit:
            collectors.append(RateLimitCollector(self.metrics, config.location, config.max_workers))
        if config.enable_vmss_rate_limit:
            collectors.append(VMSSRateLimitCollector(self.metrics, config.location, config.max_workers))
        if config.enable_usage:
            collectors.append(UsageCollector(self.metrics, config.location, config.max_workers))
        return collectors

    def render(self) -> bytes:
        """Run one scrape and return the exposition text."""

        return generate_latest(self.registry)

    def run(self, stop: threading.Event | None = None) -> None:
        logger.info(
            "Starting azure collector in %s (listening on %s:%s)",
            self.config.location,
            self.config.metrics_host,
            self.config.metrics_port,
        )
        start_http_server(self.config.metrics_port, addr=self.config.metrics_host, registry=self.registry)
        (stop or threading.Event()).wait()


def build_exporter(config: Config, store: SecretStore | None = None, factory: ClientSetFactory | None = None) -> Exporter:
    """Helper to construct an exporter with a dedicated CollectorRegistry."""

    if store is None:
        store = KubernetesSecretStore(
            load_kubernetes_api_client(config.kubeconfig_path),
            request_timeout=config.scrape_timeout_seconds,
        )
    return Exporter(config=config, store=store, factory=factory)


def run_from_config(config: Config) -> None:
    """Run the exporter with the provided configuration."""

    build_exporter(config).run()


__all__ = ["Exporter", "build_exporter", "run_from_config"]
