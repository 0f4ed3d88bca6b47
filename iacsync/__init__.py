"""
iacsync — Infrastructure plan/apply pipeline and repository mirroring.
"""

__version__ = "0.4.0"
