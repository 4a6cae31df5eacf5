import pytest

from azure_collector.config import Config
from azure_collector.errors import InvalidConfigError

ENV_VARS = (
    "AZURE_GS_TENANT_ID",
    "AZURE_LOCATION",
    "METRICS_HOST",
    "METRICS_PORT",
    "SCRAPE_TIMEOUT_SECONDS",
    "MAX_WORKERS",
    "KUBECONFIG",
    "CREDENTIAL_NAMESPACE",
    "AZURE_CLIENT_ID",
    "AZURE_CLIENT_SECRET",
    "AZURE_SUBSCRIPTION_ID",
    "AZURE_TENANT_ID",
    "AZURE_PARTNER_ID",
    "ENABLE_USAGE",
    "ENABLE_RATE_LIMIT",
    "ENABLE_VMSS_RATE_LIMIT",
    "ENABLE_SP_EXPIRATION",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestFromEnv:
    def test_defaults(self):
        config = Config.from_env()

        assert config.gs_tenant_id == ""
        assert config.location == "westeurope"
        assert config.metrics_port == 8000
        assert config.scrape_timeout_seconds == 30.0
        assert config.credential_namespace == "giantswarm"
        assert config.kubeconfig_path is None
        assert config.enable_usage and config.enable_rate_limit and config.enable_vmss_rate_limit
        assert config.enable_sp_expiration

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("AZURE_GS_TENANT_ID", "gs")
        monkeypatch.setenv("AZURE_LOCATION", "germanywestcentral")
        monkeypatch.setenv("METRICS_PORT", "9100")
        monkeypatch.setenv("SCRAPE_TIMEOUT_SECONDS", "12.5")
        monkeypatch.setenv("MAX_WORKERS", "4")
        monkeypatch.setenv("ENABLE_USAGE", "false")
        monkeypatch.setenv("ENABLE_SP_EXPIRATION", "0")
        monkeypatch.setenv("KUBECONFIG", "/tmp/kubeconfig")

        config = Config.from_env()

        assert config.gs_tenant_id == "gs"
        assert config.location == "germanywestcentral"
        assert config.metrics_port == 9100
        assert config.scrape_timeout_seconds == 12.5
        assert config.max_workers == 4
        assert config.enable_usage is False
        assert config.enable_sp_expiration is False
        assert config.kubeconfig_path == "/tmp/kubeconfig"

    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv("METRICS_PORT", "eighty")

        with pytest.raises(ValueError):
            Config.from_env()


class TestValidate:
    def test_valid(self):
        Config(gs_tenant_id="gs").validate()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"gs_tenant_id": ""},
            {"location": ""},
            {"scrape_timeout_seconds": 0},
            {"max_workers": 0},
        ],
    )
    def test_invalid(self, overrides):
        values = {"gs_tenant_id": "gs"}
        values.update(overrides)

        with pytest.raises(InvalidConfigError):
            Config(**values).validate()


class TestHostCredential:
    def test_incomplete_host_credential_is_ignored(self):
        assert Config(gs_tenant_id="gs", host_client_id="id").host_credential() is None

    def test_complete_host_credential(self):
        config = Config(
            gs_tenant_id="gs",
            host_client_id="id",
            host_client_secret="secret",
            host_subscription_id="sub",
            host_tenant_id="tenant",
            host_partner_id="partner",
        )

        credential = config.host_credential()

        assert credential.client_id == "id"
        assert credential.subscription_id == "sub"
        assert credential.partner_id == "partner"
