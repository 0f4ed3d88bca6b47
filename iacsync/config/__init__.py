"""
Configuration — Infrastructure YAML and IACSYNC_* runtime settings.
"""

from .loader import Settings, load_infra_config
from .models import InfraConfig, ResourceSpec

__all__ = ["InfraConfig", "ResourceSpec", "Settings", "load_infra_config"]
