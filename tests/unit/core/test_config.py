"""Tests for Settings and server-definition loading.

Verifies that:
- Settings loads typed defaults and MCP_REGISTRY_ prefixed overrides
- Server definitions load from YAML and from the MCP_REGISTRY_SERVERS JSON array
- Invalid or duplicate definitions are rejected
- Production mode doubles timeouts and raises retry budgets
"""

import json

import pytest

from mcp_registry.core.config import (
    PRODUCTION_MAX_RETRIES,
    Settings,
    apply_environment_overrides,
    load_server_configs,
)
from mcp_registry.models.schemas import RetryPolicy, ServerConfig


class TestSettingsDefaults:
    def test_service_name_default(self):
        assert Settings().SERVICE_NAME == "mcp-registry"

    def test_protocol_version_default(self):
        assert Settings().PROTOCOL_VERSION == "1.0.0"

    def test_default_timeout(self):
        assert Settings().DEFAULT_TIMEOUT == 30.0

    def test_breaker_defaults(self):
        settings = Settings()
        assert settings.CIRCUIT_BREAKER_THRESHOLD == 5
        assert settings.CIRCUIT_BREAKER_RESET_SECONDS == 60.0

    def test_auto_connect_and_health_enabled(self):
        settings = Settings()
        assert settings.ENABLE_AUTO_CONNECT is True
        assert settings.ENABLE_HEALTH_CHECK is True
        assert settings.HEALTH_CHECK_INTERVAL == 60.0

    def test_not_production_by_default(self):
        assert Settings().is_production is False


class TestSettingsEnvOverrides:
    def test_timeout_override_from_env(self, monkeypatch):
        monkeypatch.setenv("MCP_REGISTRY_DEFAULT_TIMEOUT", "12.5")
        assert Settings().DEFAULT_TIMEOUT == 12.5

    def test_auto_connect_override_from_env(self, monkeypatch):
        monkeypatch.setenv("MCP_REGISTRY_ENABLE_AUTO_CONNECT", "false")
        assert Settings().ENABLE_AUTO_CONNECT is False

    def test_environment_override_from_env(self, monkeypatch):
        monkeypatch.setenv("MCP_REGISTRY_ENVIRONMENT", "Production")
        assert Settings().is_production is True


# ── Server definitions ─────────────────────────────────────────────────


@pytest.fixture
def yaml_file(tmp_path):
    def write(text: str):
        path = tmp_path / "servers.yaml"
        path.write_text(text)
        return path

    return write


class TestLoadFromYaml:
    def test_loads_servers(self, yaml_file):
        path = yaml_file(
            """
servers:
  - name: filesystem
    command: npx
    args: ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]
    timeout: 15
    retryPolicy:
      maxRetries: 2
      initialDelay: 0.5
  - name: git
    command: uvx
    args: [mcp-server-git]
    autoConnect: false
"""
        )
        configs = load_server_configs(Settings(SERVERS_CONFIG_PATH=str(path)))

        assert [c.name for c in configs] == ["filesystem", "git"]
        fs, git = configs
        assert fs.timeout == 15.0
        assert fs.retry_policy == RetryPolicy(max_retries=2, initial_delay=0.5)
        assert git.auto_connect is False
        assert git.retry_policy is None

    def test_empty_servers_list(self, yaml_file):
        path = yaml_file("servers: []\n")
        assert load_server_configs(Settings(SERVERS_CONFIG_PATH=str(path))) == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_server_configs(Settings(SERVERS_CONFIG_PATH=str(tmp_path / "nope.yaml")))

    def test_missing_servers_key(self, yaml_file):
        path = yaml_file("tools: []\n")
        with pytest.raises(ValueError, match="servers"):
            load_server_configs(Settings(SERVERS_CONFIG_PATH=str(path)))

    def test_invalid_yaml(self, yaml_file):
        path = yaml_file("servers: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_server_configs(Settings(SERVERS_CONFIG_PATH=str(path)))

    def test_missing_command(self, yaml_file):
        path = yaml_file("servers:\n  - name: broken\n")
        with pytest.raises(ValueError, match="missing 'command'"):
            load_server_configs(Settings(SERVERS_CONFIG_PATH=str(path)))

    def test_duplicate_names(self, yaml_file):
        path = yaml_file("servers:\n  - {name: a, command: x}\n  - {name: a, command: y}\n")
        with pytest.raises(ValueError, match="Duplicate server name 'a'"):
            load_server_configs(Settings(SERVERS_CONFIG_PATH=str(path)))

    def test_invalid_field_type(self, yaml_file):
        path = yaml_file("servers:\n  - {name: a, command: x, timeout: soon}\n")
        with pytest.raises(ValueError, match="Invalid server 'a'"):
            load_server_configs(Settings(SERVERS_CONFIG_PATH=str(path)))


class TestLoadFromEnv:
    def test_loads_json_array(self, monkeypatch):
        monkeypatch.setenv("MCP_REGISTRY_SERVERS", json.dumps([{"name": "echo", "command": "echo-server"}]))
        configs = load_server_configs(Settings())
        assert [c.name for c in configs] == ["echo"]

    def test_appended_after_yaml(self, yaml_file):
        path = yaml_file("servers:\n  - {name: a, command: x}\n")
        settings = Settings(SERVERS_CONFIG_PATH=str(path), SERVERS='[{"name": "b", "command": "y"}]')
        assert [c.name for c in load_server_configs(settings)] == ["a", "b"]

    def test_duplicate_across_sources(self, yaml_file):
        path = yaml_file("servers:\n  - {name: a, command: x}\n")
        settings = Settings(SERVERS_CONFIG_PATH=str(path), SERVERS='[{"name": "a", "command": "y"}]')
        with pytest.raises(ValueError, match="Duplicate"):
            load_server_configs(settings)

    def test_malformed_json_is_ignored(self, caplog):
        configs = load_server_configs(Settings(SERVERS="[not json"))
        assert configs == []
        assert "Failed to parse MCP_REGISTRY_SERVERS" in caplog.text

    def test_non_array_is_ignored(self, caplog):
        assert load_server_configs(Settings(SERVERS='{"name": "a"}')) == []
        assert "must be a JSON array" in caplog.text

    def test_nothing_configured(self):
        assert load_server_configs(Settings()) == []


class TestEnvironmentOverrides:
    def test_development_unchanged(self):
        config = ServerConfig(name="a", command="x", timeout=5.0)
        assert apply_environment_overrides(config, Settings()) is config

    def test_production_doubles_timeout(self):
        config = ServerConfig(name="a", command="x", timeout=5.0)
        result = apply_environment_overrides(config, Settings(ENVIRONMENT="production"))
        assert result.timeout == 10.0

    def test_production_doubles_default_timeout(self):
        config = ServerConfig(name="a", command="x")
        settings = Settings(ENVIRONMENT="production", DEFAULT_TIMEOUT=30.0)
        assert apply_environment_overrides(config, settings).timeout == 60.0

    def test_production_raises_retry_budget(self):
        config = ServerConfig(name="a", command="x", retry_policy=RetryPolicy(max_retries=1, initial_delay=0.5))
        result = apply_environment_overrides(config, Settings(ENVIRONMENT="production"))
        assert result.retry_policy.max_retries == PRODUCTION_MAX_RETRIES
        assert result.retry_policy.initial_delay == 0.5

    def test_production_leaves_missing_policy_alone(self):
        config = ServerConfig(name="a", command="x")
        result = apply_environment_overrides(config, Settings(ENVIRONMENT="production"))
        assert result.retry_policy is None

    def test_loader_applies_overrides(self, monkeypatch):
        monkeypatch.setenv("MCP_REGISTRY_SERVERS", '[{"name": "a", "command": "x", "timeout": 4}]')
        configs = load_server_configs(Settings(ENVIRONMENT="production"))
        assert configs[0].timeout == 8.0
