"""
Infrastructure Config Models — Pydantic schemas for iacsync.yaml.

The config file declares:
- the environment and where its remote state lives
- simple key/value variables (location, naming, address spaces)
- the resources the environment should contain
- which branches trigger a pipeline run
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..errors import ConfigError
from ..models.state import RemoteStateRef


_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class BackendSection(BaseModel):
    """Remote state location for this environment."""

    storage_account: str = "local"
    container: str = "tfstate"
    key: Optional[str] = None


class ResourceSpec(BaseModel):
    """A resource the environment should contain."""

    type: str
    name: str
    properties: Dict[str, Any] = Field(default_factory=dict)

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


class InfraConfig(BaseModel):
    """The iacsync.yaml schema."""

    version: int = 1
    environment: str
    location: str = "westeurope"
    name_prefix: str = ""
    backend: BackendSection = Field(default_factory=BackendSection)
    trigger_branches: List[str] = Field(default_factory=lambda: ["main"])
    variables: Dict[str, Any] = Field(default_factory=dict)
    resources: List[ResourceSpec] = Field(default_factory=list)

    @field_validator("resources")
    @classmethod
    def _unique_addresses(cls, resources: List[ResourceSpec]) -> List[ResourceSpec]:
        seen = set()
        for resource in resources:
            if resource.address in seen:
                raise ValueError(f"duplicate resource address: {resource.address}")
            seen.add(resource.address)
        return resources

    @property
    def state_ref(self) -> RemoteStateRef:
        return RemoteStateRef(
            location=self.backend.storage_account,
            container=self.backend.container,
            key=self.backend.key or f"{self.environment}.tfstate",
        )

    def all_variables(self) -> Dict[str, Any]:
        """Declared variables plus the built-in environment values."""
        merged: Dict[str, Any] = {
            "environment": self.environment,
            "location": self.location,
            "name_prefix": self.name_prefix,
        }
        merged.update(self.variables)
        return merged

    def resolved_resources(self) -> List[ResourceSpec]:
        """Resources with every ``${var}`` reference substituted."""
        variables = self.all_variables()
        return [
            ResourceSpec(
                type=r.type,
                name=r.name,
                properties=_interpolate(r.properties, variables, r.address),
            )
            for r in self.resources
        ]

    def triggers_on(self, branch: str) -> bool:
        """Check whether a push to ``branch`` should run the pipeline."""
        name = branch.removeprefix("refs/heads/")
        return name in self.trigger_branches


def _interpolate(value: Any, variables: Dict[str, Any], where: str) -> Any:
    if isinstance(value, dict):
        return {k: _interpolate(v, variables, where) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate(v, variables, where) for v in value]
    if not isinstance(value, str):
        return value

    # A bare reference keeps the variable's type (lists of address spaces)
    whole = _VAR_PATTERN.fullmatch(value)
    if whole:
        return _lookup(whole.group(1), variables, where)

    return _VAR_PATTERN.sub(lambda m: str(_lookup(m.group(1), variables, where)), value)


def _lookup(name: str, variables: Dict[str, Any], where: str) -> Any:
    if name not in variables:
        raise ConfigError(f"{where}: undefined variable '${{{name}}}'")
    return variables[name]
