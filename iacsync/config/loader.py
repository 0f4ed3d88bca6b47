"""
Config Loader — Infrastructure YAML and runtime settings.

Two sources:
1. iacsync.yaml: what the environment should contain (checked into the repo)
2. IACSYNC_* environment variables: where and how the pipeline runs
   (set by the pipeline definition or a local .env file)

Secrets are never read from the YAML file. Backend credentials come from
the environment (AZURE_STORAGE_CONNECTION_STRING or the Azure identity
chain) and mirror tokens from MIRROR_* variables.

## Usage

    settings = Settings.from_env()
    config = load_infra_config(settings.config_path)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from .models import InfraConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "IACSYNC_"

BACKEND_KINDS = ("local", "memory", "azurerm")
PROVISIONER_KINDS = ("builtin", "terraform")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return its contents."""
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def load_infra_config(path: Path) -> InfraConfig:
    """
    Load and validate the infrastructure config file.

    Raises:
        ConfigError: If the file is missing, unparseable or invalid
    """
    data = load_yaml(Path(path))
    try:
        config = InfraConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}:\n{e}") from e

    # Surface undefined variables at load time rather than mid-plan
    config.resolved_resources()

    logger.debug(
        f"Config loaded: env={config.environment}, resources={len(config.resources)}"
    )
    return config


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


@dataclass
class Settings:
    """Runtime settings for one pipeline invocation."""

    config_path: Path = Path("iacsync.yaml")

    # State backend
    backend: str = "local"
    state_dir: Path = Path(".iacsync/state")
    lock_timeout_seconds: float = 0.0
    lock_poll_seconds: float = 1.0
    storage_connection_string: Optional[str] = None
    storage_account_url: Optional[str] = None

    # Plan artifacts
    artifact_dir: Path = Path(".iacsync/artifacts")
    artifact_ttl_hours: float = 24.0

    # Run ledger
    ledger_path: Path = Path(".iacsync/ledger.ndjson")

    # Provisioner
    provisioner: str = "builtin"
    terraform_bin: str = "terraform"
    terraform_dir: Path = Path(".")

    def __post_init__(self) -> None:
        if self.backend not in BACKEND_KINDS:
            raise ConfigError(
                f"Unknown backend '{self.backend}' (expected one of {', '.join(BACKEND_KINDS)})"
            )
        if self.provisioner not in PROVISIONER_KINDS:
            raise ConfigError(
                f"Unknown provisioner '{self.provisioner}' "
                f"(expected one of {', '.join(PROVISIONER_KINDS)})"
            )
        if self.lock_timeout_seconds < 0:
            raise ConfigError("Lock timeout cannot be negative")
        if self.lock_poll_seconds <= 0:
            raise ConfigError("Lock poll interval must be positive")

    @classmethod
    def from_env(cls, root: Optional[Path] = None) -> "Settings":
        """Build settings from IACSYNC_* variables, relative to ``root``."""
        root = Path(root) if root else Path.cwd()

        def path(name: str, default: str) -> Path:
            value = Path(os.environ.get(f"{ENV_PREFIX}{name}", default))
            return value if value.is_absolute() else root / value

        return cls(
            config_path=path("CONFIG", "iacsync.yaml"),
            backend=os.environ.get(f"{ENV_PREFIX}BACKEND", "local").lower(),
            state_dir=path("STATE_DIR", ".iacsync/state"),
            lock_timeout_seconds=_env_float(f"{ENV_PREFIX}LOCK_TIMEOUT", 0.0),
            lock_poll_seconds=_env_float(f"{ENV_PREFIX}LOCK_POLL", 1.0),
            storage_connection_string=os.environ.get("AZURE_STORAGE_CONNECTION_STRING"),
            storage_account_url=os.environ.get(f"{ENV_PREFIX}STORAGE_ACCOUNT_URL"),
            artifact_dir=path("ARTIFACT_DIR", ".iacsync/artifacts"),
            artifact_ttl_hours=_env_float(f"{ENV_PREFIX}ARTIFACT_TTL_HOURS", 24.0),
            ledger_path=path("LEDGER", ".iacsync/ledger.ndjson"),
            provisioner=os.environ.get(f"{ENV_PREFIX}PROVISIONER", "builtin").lower(),
            terraform_bin=os.environ.get(f"{ENV_PREFIX}TERRAFORM_BIN", "terraform"),
            terraform_dir=path("TERRAFORM_DIR", "."),
        )
