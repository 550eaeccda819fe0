"""Settings and server-definition loading for the capability-server registry.

All settings are loaded from environment variables with the MCP_REGISTRY_
prefix.  Server definitions come from an optional YAML file
(``SERVERS_CONFIG_PATH``) plus an optional JSON array in ``MCP_REGISTRY_SERVERS``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings

from mcp_registry.models.schemas import ServerConfig

logger = logging.getLogger(__name__)

PRODUCTION_MAX_RETRIES = 5


class Settings(BaseSettings):
    """Registry configuration.

    All fields can be overridden by environment variables prefixed with
    ``MCP_REGISTRY_``.  For example, ``MCP_REGISTRY_DEFAULT_TIMEOUT=10``
    overrides the per-request default timeout.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "mcp-registry"
    SERVICE_VERSION: str = "0.1.0"
    PROTOCOL_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"

    # ── Global defaults ─────────────────────────────────────────────
    DEFAULT_TIMEOUT: float = 30.0  # Seconds per request
    ENABLE_AUTO_CONNECT: bool = True
    ENABLE_HEALTH_CHECK: bool = True
    HEALTH_CHECK_INTERVAL: float = 60.0  # Seconds between health ticks

    # ── Resilience ──────────────────────────────────────────────────
    CIRCUIT_BREAKER_THRESHOLD: int = 5  # Failures before OPEN
    CIRCUIT_BREAKER_RESET_SECONDS: float = 60.0  # Seconds before HALF_OPEN probe

    # ── Server definitions ──────────────────────────────────────────
    SERVERS_CONFIG_PATH: str = ""  # YAML with a top-level ``servers:`` list
    SERVERS: str = ""  # JSON array appended to the YAML list

    model_config = {
        "env_prefix": "MCP_REGISTRY_",
    }

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


# ── Loading ─────────────────────────────────────────────────────────────


def _read_yaml_servers(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        raise FileNotFoundError(f"Server config not found: {path}")

    raw = path.read_text(encoding="utf-8")
    try:
        data: Any = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict) or "servers" not in data:
        raise ValueError(f"YAML must contain a top-level 'servers' key in {path}")

    servers = data["servers"] or []
    if not isinstance(servers, list):
        raise ValueError(f"'servers' must be a list in {path}")
    return servers


def _read_env_servers(raw: str) -> list[dict[str, Any]]:
    if not raw.strip():
        return []
    try:
        servers = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse MCP_REGISTRY_SERVERS: %s", exc)
        return []
    if not isinstance(servers, list):
        logger.error("MCP_REGISTRY_SERVERS must be a JSON array, got %s", type(servers).__name__)
        return []
    return servers


def _build_config(item: Any, source: str) -> ServerConfig:
    if not isinstance(item, dict):
        raise ValueError(f"Server entry must be a mapping in {source}")
    if not item.get("name"):
        raise ValueError(f"Server entry missing 'name' in {source}")
    if not item.get("command"):
        raise ValueError(f"Server '{item['name']}' missing 'command' in {source}")
    try:
        return ServerConfig.model_validate(item)
    except ValidationError as exc:
        raise ValueError(f"Invalid server '{item['name']}' in {source}: {exc}") from exc


def apply_environment_overrides(config: ServerConfig, settings: Settings) -> ServerConfig:
    """Double timeouts and raise retry budgets when running in production."""
    if not settings.is_production:
        return config

    update: dict[str, Any] = {"timeout": (config.timeout or settings.DEFAULT_TIMEOUT) * 2}
    if config.retry_policy is not None:
        update["retry_policy"] = config.retry_policy.model_copy(update={"max_retries": PRODUCTION_MAX_RETRIES})
    return config.model_copy(update=update)


def load_server_configs(settings: Settings) -> list[ServerConfig]:
    """Build the validated list of server definitions from *settings*.

    Raises:
        FileNotFoundError: If ``SERVERS_CONFIG_PATH`` points at a missing file.
        ValueError: If an entry is invalid or a server name is duplicated.
    """
    entries: list[tuple[Any, str]] = []
    if settings.SERVERS_CONFIG_PATH:
        path = Path(settings.SERVERS_CONFIG_PATH)
        entries.extend((item, str(path)) for item in _read_yaml_servers(path))
    entries.extend((item, "MCP_REGISTRY_SERVERS") for item in _read_env_servers(settings.SERVERS))

    configs: list[ServerConfig] = []
    seen: set[str] = set()
    for item, source in entries:
        config = _build_config(item, source)
        if config.name in seen:
            raise ValueError(f"Duplicate server name '{config.name}' in {source}")
        seen.add(config.name)
        configs.append(apply_environment_overrides(config, settings))
    return configs
