"""
Tests for configuration loading.

These tests verify:
- YAML loading and validation errors
- ${var} interpolation in resource properties
- Settings from IACSYNC_* environment variables
- Trigger branch matching
"""

from pathlib import Path

import pytest

from conftest import make_config
from iacsync.config.loader import Settings, load_infra_config
from iacsync.errors import ConfigError


CONFIG_YAML = """
environment: staging
location: northeurope
name_prefix: acme
backend:
  storage_account: tfstateacme
trigger_branches: [main, release]
variables:
  address_space: ["10.2.0.0/16"]
  sku: Standard_LRS
resources:
  - type: azurerm_storage_account
    name: logs
    properties:
      name: "${name_prefix}logs${environment}"
      sku: "${sku}"
      address_space: "${address_space}"
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "iacsync.yaml"
    path.write_text(CONFIG_YAML)
    return path


class TestLoadInfraConfig:
    """Reading iacsync.yaml."""

    def test_load(self, config_file):
        config = load_infra_config(config_file)

        assert config.environment == "staging"
        assert config.state_ref.env_key == "tfstateacme/tfstate/staging.tfstate"
        assert config.trigger_branches == ["main", "release"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_infra_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("environment: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_infra_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_infra_config(path)

    def test_schema_error(self, tmp_path):
        path = tmp_path / "noenv.yaml"
        path.write_text("location: westeurope\n")
        with pytest.raises(ConfigError, match="Invalid config"):
            load_infra_config(path)

    def test_undefined_variable_caught_at_load(self, tmp_path):
        path = tmp_path / "undef.yaml"
        path.write_text(
            "environment: dev\n"
            "resources:\n"
            "  - type: t\n"
            "    name: n\n"
            "    properties: {name: '${missing}'}\n"
        )
        with pytest.raises(ConfigError, match="undefined variable"):
            load_infra_config(path)

    def test_duplicate_address(self, tmp_path):
        path = tmp_path / "dup.yaml"
        path.write_text(
            "environment: dev\n"
            "resources:\n"
            "  - {type: t, name: n}\n"
            "  - {type: t, name: n}\n"
        )
        with pytest.raises(ConfigError, match="duplicate resource address"):
            load_infra_config(path)


class TestInterpolation:
    def test_string_and_typed_substitution(self, config_file):
        resource = load_infra_config(config_file).resolved_resources()[0]

        assert resource.properties["name"] == "acmelogsstaging"
        assert resource.properties["sku"] == "Standard_LRS"
        # A whole-value reference keeps the list type
        assert resource.properties["address_space"] == ["10.2.0.0/16"]

    def test_nested_values(self):
        config = make_config(
            resources=[
                {
                    "type": "azurerm_subnet",
                    "name": "app",
                    "properties": {"tags": {"env": "${environment}"}, "ranges": ["${location}-a"]},
                }
            ]
        )
        props = config.resolved_resources()[0].properties
        assert props == {"tags": {"env": "dev"}, "ranges": ["westeurope-a"]}

    def test_declared_variable_overrides_builtin(self):
        config = make_config(variables={"location": "eastus"})
        assert config.all_variables()["location"] == "eastus"

    def test_explicit_state_key(self):
        config = make_config(backend={"storage_account": "acct", "container": "states", "key": "custom.tfstate"})
        assert str(config.state_ref) == "acct/states/custom.tfstate"


class TestTriggers:
    @pytest.mark.parametrize(
        "branch,expected",
        [
            ("main", True),
            ("refs/heads/main", True),
            ("refs/heads/feature/x", False),
            ("develop", False),
        ],
    )
    def test_triggers_on(self, branch, expected):
        assert make_config().triggers_on(branch) is expected


class TestSettings:
    """IACSYNC_* environment variables."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in (
            "IACSYNC_CONFIG",
            "IACSYNC_BACKEND",
            "IACSYNC_STATE_DIR",
            "IACSYNC_LOCK_TIMEOUT",
            "IACSYNC_LOCK_POLL",
            "IACSYNC_PROVISIONER",
            "IACSYNC_ARTIFACT_TTL_HOURS",
            "AZURE_STORAGE_CONNECTION_STRING",
        ):
            monkeypatch.delenv(name, raising=False)

    def test_defaults_relative_to_root(self, tmp_path):
        settings = Settings.from_env(tmp_path)

        assert settings.config_path == tmp_path / "iacsync.yaml"
        assert settings.backend == "local"
        assert settings.state_dir == tmp_path / ".iacsync" / "state"
        assert settings.lock_timeout_seconds == 0.0
        assert settings.provisioner == "builtin"

    def test_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IACSYNC_BACKEND", "AzureRM")
        monkeypatch.setenv("IACSYNC_LOCK_TIMEOUT", "30")
        monkeypatch.setenv("IACSYNC_STATE_DIR", "/var/lib/iacsync")
        monkeypatch.setenv("AZURE_STORAGE_CONNECTION_STRING", "UseDevelopmentStorage=true")

        settings = Settings.from_env(tmp_path)

        assert settings.backend == "azurerm"
        assert settings.lock_timeout_seconds == 30.0
        assert settings.state_dir == Path("/var/lib/iacsync")
        assert settings.storage_connection_string == "UseDevelopmentStorage=true"

    def test_unknown_backend(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IACSYNC_BACKEND", "s3")
        with pytest.raises(ConfigError, match="Unknown backend"):
            Settings.from_env(tmp_path)

    def test_unknown_provisioner(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IACSYNC_PROVISIONER", "pulumi")
        with pytest.raises(ConfigError, match="Unknown provisioner"):
            Settings.from_env(tmp_path)

    def test_non_numeric_timeout(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IACSYNC_LOCK_TIMEOUT", "soon")
        with pytest.raises(ConfigError, match="must be a number"):
            Settings.from_env(tmp_path)

    def test_negative_timeout(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IACSYNC_LOCK_TIMEOUT", "-1")
        with pytest.raises(ConfigError, match="negative"):
            Settings.from_env(tmp_path)

    @pytest.mark.parametrize("poll", ["0", "-0.5"])
    def test_poll_interval_must_be_positive(self, tmp_path, monkeypatch, poll):
        monkeypatch.setenv("IACSYNC_LOCK_POLL", poll)
        with pytest.raises(ConfigError, match="poll interval"):
            Settings.from_env(tmp_path)
