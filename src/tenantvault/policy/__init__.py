"""
Access policy module for tenantvault.

Tenant/role scoping applied to every read and write the engine performs.
"""

from tenantvault.policy.access import AccessDecision, AccessFilter

__all__ = [
    "AccessDecision",
    "AccessFilter",
]
