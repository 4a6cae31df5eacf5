"""Application configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .entities import Credential
from .errors import InvalidConfigError


@dataclass(slots=True)
class Config:
    """Runtime configuration parsed from environment variables."""

    gs_tenant_id: str = ""
    location: str = "westeurope"
    metrics_host: str = "0.0.0.0"
    metrics_port: int = 8000
    scrape_timeout_seconds: float = 30.0
    max_workers: int = 16
    kubeconfig_path: Optional[str] = None
    credential_namespace: str = "giantswarm"
    host_client_id: str = ""
    host_client_secret: str = ""
    host_subscription_id: str = ""
    host_tenant_id: str = ""
    host_partner_id: str = ""
    enable_usage: bool = True
    enable_rate_limit: bool = True
    enable_vmss_rate_limit: bool = True
    enable_sp_expiration: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables and defaults."""

        load_dotenv()

        def _get_int(name: str, default: int) -> int:
            value = os.getenv(name)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as exc:
                raise ValueError(f"Invalid integer for {name}: {value}") from exc

        def _get_float(name: str, default: float) -> float:
            value = os.getenv(name)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as exc:
                raise ValueError(f"Invalid float for {name}: {value}") from exc

        def _get_bool(name: str, default: bool) -> bool:
            value = os.getenv(name)
            if value is None:
                return default
            return value.strip().lower() in {"1", "true", "yes", "on"}

        return cls(
            gs_tenant_id=os.getenv("AZURE_GS_TENANT_ID", ""),
            location=os.getenv("AZURE_LOCATION", "westeurope"),
            metrics_host=os.getenv("METRICS_HOST", "0.0.0.0"),
            metrics_port=_get_int("METRICS_PORT", 8000),
            scrape_timeout_seconds=_get_float("SCRAPE_TIMEOUT_SECONDS", 30.0),
            max_workers=_get_int("MAX_WORKERS", 16),
            kubeconfig_path=os.getenv("KUBECONFIG") or None,
            credential_namespace=os.getenv("CREDENTIAL_NAMESPACE", "giantswarm"),
            host_client_id=os.getenv("AZURE_CLIENT_ID", ""),
            host_client_secret=os.getenv("AZURE_CLIENT_SECRET", ""),
            host_subscription_id=os.getenv("AZURE_SUBSCRIPTION_ID", ""),
            host_tenant_id=os.getenv("AZURE_TENANT_ID", ""),
            host_partner_id=os.getenv("AZURE_PARTNER_ID", ""),
            enable_usage=_get_bool("ENABLE_USAGE", True),
            enable_rate_limit=_get_bool("ENABLE_RATE_LIMIT", True),
            enable_vmss_rate_limit=_get_bool("ENABLE_VMSS_RATE_LIMIT", True),
            enable_sp_expiration=_get_bool("ENABLE_SP_EXPIRATION", True),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def validate(self) -> None:
        if not self.gs_tenant_id:
            raise InvalidConfigError("gs_tenant_id must not be empty")
        if not self.location:
            raise InvalidConfigError("location must not be empty")
        if self.scrape_timeout_seconds <= 0:
            raise InvalidConfigError("scrape_timeout_seconds must be positive")
        if self.max_workers < 1:
            raise InvalidConfigError("max_workers must be at least 1")

    def host_credential(self) -> Optional[Credential]:
        """Credential the installation itself runs with, when configured."""

        required = (
            self.host_client_id,
            self.host_client_secret,
            self.host_subscription_id,
            self.host_tenant_id,
        )
        if not all(required):
            return None
        return Credential(
            client_id=self.host_client_id,
            client_secret=self.host_client_secret,
            tenant_id=self.host_tenant_id,
            subscription_id=self.host_subscription_id,
            partner_id=self.host_partner_id,
        )


__all__ = ["Config"]
