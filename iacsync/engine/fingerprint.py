"""
Config Fingerprint — Identity of "what a plan was computed from".

Two configs with the same fingerprint produce the same plan against the
same state. Any change to variables, resources, the state reference or
the provisioner's own inputs (terraform files) changes it.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict

from ..config.models import InfraConfig
from ..provisioners.base import Provisioner


def fingerprint_payload(config: InfraConfig, provisioner: Provisioner) -> Dict[str, Any]:
    return {
        "env_key": config.state_ref.env_key,
        "environment": config.environment,
        "variables": config.all_variables(),
        "resources": [r.model_dump() for r in config.resolved_resources()],
        "provisioner": provisioner.name,
        "provisioner_inputs": provisioner.fingerprint_inputs(config),
    }


def config_fingerprint(config: InfraConfig, provisioner: Provisioner) -> str:
    """SHA-256 of the canonical JSON of everything the plan depends on."""
    canonical = json.dumps(
        fingerprint_payload(config, provisioner),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()
