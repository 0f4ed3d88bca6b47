"""
Provisioners — Turn desired config into planned changes and new state.
"""

from __future__ import annotations

from ..config.loader import Settings
from .base import PlanOutput, Provisioner
from .builtin import BuiltinProvisioner
from .terraform import TerraformProvisioner


def get_provisioner(settings: Settings) -> Provisioner:
    """Build the provisioner named by ``settings.provisioner``."""
    if settings.provisioner == "terraform":
        return TerraformProvisioner(settings.terraform_dir, terraform_bin=settings.terraform_bin)
    return BuiltinProvisioner()


__all__ = [
    "BuiltinProvisioner",
    "PlanOutput",
    "Provisioner",
    "TerraformProvisioner",
    "get_provisioner",
]
