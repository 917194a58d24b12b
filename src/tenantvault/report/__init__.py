"""
Reporting module for tenantvault.

Human-readable (Rich) and machine-readable (JSON) renderings of health
reports, restore reports and the audit trail, used by the CLI.

Example:
    from tenantvault.report import health_to_dict, render_health

    render_health(console, report)
    print(dumps(health_to_dict(report)))
"""

from tenantvault.report.console import (
    render_audit,
    render_health,
    render_restore,
    render_verification,
)
from tenantvault.report.json import (
    audit_to_list,
    dumps,
    health_to_dict,
    restore_to_dict,
    verification_to_dict,
)

__all__ = [
    "audit_to_list",
    "dumps",
    "health_to_dict",
    "render_audit",
    "render_health",
    "render_restore",
    "render_verification",
    "restore_to_dict",
    "verification_to_dict",
]
