"""
Self-healing module for tenantvault.

Schema drift detection and repair, run at startup and on structural fault.
"""

from tenantvault.healing.monitor import SelfHealingMonitor

__all__ = [
    "SelfHealingMonitor",
]
