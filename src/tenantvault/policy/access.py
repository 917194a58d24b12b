"""
Access Filter for tenantvault.

The access filter is the tenant boundary of the store. Every read path in
the engine passes records through it before they leave the engine, and
every write is checked against it before anything is persisted.

Design Principles:
    - Pure: No I/O and no ambient state; identity is always a parameter
    - Deterministic: Same identity and record always give the same answer
    - Existence-hiding: Callers see "not visible", never "forbidden"

Rules:
    root-admin     sees every record
    tenant-owner   sees records whose tenant field equals its tenant
    tenant-member  same scope as tenant-owner; finer read/write permissions
                   are the business layer's concern
"""

from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field

from tenantvault.schema import Identity, Role


class AccessDecision(BaseModel):
    """
    Result of checking a write against the tenant boundary.

    Attributes:
        allowed: Whether the write may proceed
        reason: Human-readable explanation of the decision
        rule: Which rule produced the decision
        fields: The fields to persist (tenant filled in where it was missing)
    """

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str
    rule: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def allow(
        cls,
        reason: str,
        rule: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> "AccessDecision":
        """Create an ALLOW decision."""
        return cls(allowed=True, reason=reason, rule=rule, fields=fields or {})

    @classmethod
    def deny(cls, reason: str, rule: str | None = None) -> "AccessDecision":
        """Create a DENY decision."""
        return cls(allowed=False, reason=reason, rule=rule)


class AccessFilter:
    """
    Tenant/role scoping for records.

    Usage:
        access = AccessFilter(tenant_field="tenantId")
        if access.is_visible(identity, record):
            ...
        visible = access.filter_visible(identity, records)

    Attributes:
        tenant_field: Record field holding the tenant id
    """

    def __init__(self, tenant_field: str = "tenantId") -> None:
        self.tenant_field = tenant_field

    def is_visible(self, identity: Identity, record: dict[str, Any]) -> bool:
        """Whether a record may be shown to an identity."""
        if identity.role == Role.ROOT_ADMIN:
            return True
        if identity.role in (Role.TENANT_OWNER, Role.TENANT_MEMBER):
            return record.get(self.tenant_field) == identity.tenant_id
        # Unknown roles see nothing
        return False

    def filter_visible(
        self,
        identity: Identity,
        records: Iterable[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Keep only the records an identity may see, preserving order."""
        return [r for r in records if self.is_visible(identity, r)]

    def check_write(self, identity: Identity, fields: dict[str, Any]) -> AccessDecision:
        """
        Check a field set about to be written on behalf of an identity.

        Non-root callers may only write into their own tenant. A missing
        tenant field is filled with the caller's tenant so the record stays
        visible to its author.

        Args:
            identity: The caller
            fields: The full field set after any merge

        Returns:
            AccessDecision carrying the (possibly completed) fields
        """
        if identity.is_root:
            return AccessDecision.allow(
                "root-admin may write any tenant",
                rule="root_admin",
                fields=dict(fields),
            )

        tenant = fields.get(self.tenant_field)
        if tenant is None:
            completed = dict(fields)
            completed[self.tenant_field] = identity.tenant_id
            return AccessDecision.allow(
                f"{self.tenant_field} defaulted to caller tenant",
                rule="tenant_default",
                fields=completed,
            )

        if tenant != identity.tenant_id:
            return AccessDecision.deny(
                f"{identity.role.value} of tenant {identity.tenant_id!r} "
                f"cannot write records of tenant {tenant!r}",
                rule="tenant_scope",
            )

        return AccessDecision.allow(
            "record belongs to caller tenant",
            rule="tenant_scope",
            fields=dict(fields),
        )
