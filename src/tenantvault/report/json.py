"""
JSON report builders for tenantvault.

Turns health reports, restore reports and audit entries into plain
dictionaries for the CLI's --json output.

Design Principles:
    - Consistent schema: Same keys on every run
    - Human-readable keys: Descriptive snake_case names
    - ISO timestamps: Standard datetime format
"""

import json
from datetime import UTC, datetime
from typing import Any

from tenantvault.schema import AuditEntry, ChainVerification, HealthReport, RestoreReport

REPORT_VERSION = "1.0"


def health_to_dict(report: HealthReport) -> dict[str, Any]:
    """Build the JSON form of a health report."""
    return {
        "report_version": REPORT_VERSION,
        "generated_at": datetime.now(UTC).isoformat(),
        "state": report.state.value,
        "healthy": report.healthy,
        "schema_version": report.schema_version,
        "missing_collections": report.missing_collections,
        "missing_indexes": report.missing_indexes,
        "repaired": report.repaired,
        "transitions": [s.value for s in report.transitions],
        "record_counts": report.record_counts,
        "audit_entries": report.audit_entries,
        "storage": report.storage.model_dump(),
        "checked_at": report.checked_at.isoformat(),
    }


def restore_to_dict(report: RestoreReport) -> dict[str, Any]:
    """Build the JSON form of a restore report."""
    return {
        "restored": report.restored,
        "skipped": report.skipped,
        "failed": report.failed,
        "collections": {
            name: stats.model_dump() for name, stats in report.collections.items()
        },
    }


def audit_to_list(entries: list[AuditEntry]) -> list[dict[str, Any]]:
    """Build the JSON form of audit entries, oldest first."""
    return [entry.model_dump(mode="json") for entry in entries]


def verification_to_dict(result: ChainVerification) -> dict[str, Any]:
    return result.model_dump()


def dumps(data: Any, indent: int = 2) -> str:
    """Serialize report data to a JSON string."""
    return json.dumps(data, indent=indent, default=_json_serializer)


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for non-standard types."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
