"""
Built-in Provisioner — Declarative diff of config resources against state.

Planning compares each declared resource with its recorded properties:

    declared, not recorded     → create
    declared, properties differ → update
    declared, identical        → no-op
    recorded, not declared     → delete

The payload is the canonical JSON of that change list. Applying replays
it onto the state's resource inventory. No cloud API is called; this is
the inventory model used for dry runs and for pipelines whose resources
are realized elsewhere.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List

from ..config.models import InfraConfig
from ..errors import ProvisionerError
from ..models.artifact import PlanArtifact, ResourceChange
from ..models.state import InfraState, ResourceRecord
from .base import PlanOutput, Provisioner

logger = logging.getLogger(__name__)


def canonical_json(data) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


class BuiltinProvisioner(Provisioner):
    """Inventory-only provisioner."""

    @property
    def name(self) -> str:
        return "builtin"

    def plan(self, config: InfraConfig, state: InfraState) -> PlanOutput:
        desired = {r.address: r for r in config.resolved_resources()}
        current = state.resources
        changes: List[ResourceChange] = []

        for address in sorted(desired):
            spec = desired[address]
            record = current.get(address)
            if record is None:
                changes.append(ResourceChange(address=address, action="create", after=spec.properties))
            elif record.properties != spec.properties:
                changes.append(
                    ResourceChange(
                        address=address,
                        action="update",
                        before=record.properties,
                        after=spec.properties,
                    )
                )
            else:
                changes.append(
                    ResourceChange(
                        address=address,
                        action="no-op",
                        before=record.properties,
                        after=spec.properties,
                    )
                )

        for address in sorted(set(current) - set(desired)):
            changes.append(
                ResourceChange(address=address, action="delete", before=current[address].properties)
            )

        payload = canonical_json({"changes": [c.model_dump() for c in changes]})
        return PlanOutput(changes=changes, payload=payload)

    def apply(
        self,
        artifact: PlanArtifact,
        payload: bytes,
        state: InfraState,
        config: InfraConfig,
    ) -> InfraState:
        try:
            raw_changes = json.loads(payload)["changes"]
            changes = [ResourceChange(**c) for c in raw_changes]
        except (ValueError, KeyError, TypeError) as e:
            raise ProvisionerError(f"Unreadable plan payload for {artifact.artifact_id}: {e}") from e

        resources: Dict[str, ResourceRecord] = {
            address: record.model_copy(deep=True) for address, record in state.resources.items()
        }

        for change in changes:
            rtype, _, rname = change.address.partition(".")
            if change.action == "create":
                resources[change.address] = ResourceRecord(
                    type=rtype,
                    name=rname,
                    properties=change.after or {},
                    id=self._resource_id(config, rtype, rname),
                )
            elif change.action == "update":
                existing = resources.get(change.address)
                if existing is None:
                    raise ProvisionerError(f"Cannot update {change.address}: not in state")
                existing.properties = change.after or {}
            elif change.action == "delete":
                if resources.pop(change.address, None) is None:
                    raise ProvisionerError(f"Cannot delete {change.address}: not in state")
            else:
                continue
            logger.info(f"{change.action:6} {change.address}")

        outputs = {address: record.id for address, record in sorted(resources.items())}
        return state.model_copy(update={"resources": resources, "outputs": outputs})

    @staticmethod
    def _resource_id(config: InfraConfig, rtype: str, rname: str) -> str:
        return f"/environments/{config.environment}/{rtype}/{rname}"
