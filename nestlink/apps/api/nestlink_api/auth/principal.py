"""Authenticated principal.

A signed-in user maps to exactly one principal. Lookups can match several
role tables at once (a client owner may also be listed as a tenant); the
highest-priority match wins:

    admin > client > clientMember > tenant
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class _PrincipalBase(BaseModel):
    user_id: str
    record: dict[str, Any]


class AdminPrincipal(_PrincipalBase):
    kind: Literal["admin"] = "admin"


class ClientPrincipal(_PrincipalBase):
    kind: Literal["client"] = "client"

    @property
    def client_id(self) -> str:
        return str(self.record["id"])


class ClientMemberPrincipal(_PrincipalBase):
    kind: Literal["clientMember"] = "clientMember"

    @property
    def client_id(self) -> Optional[str]:
        value = self.record.get("client_id")
        return str(value) if value else None


class TenantPrincipal(_PrincipalBase):
    kind: Literal["tenant"] = "tenant"

    @property
    def client_id(self) -> Optional[str]:
        value = self.record.get("client_id")
        return str(value) if value else None


Principal = Annotated[
    Union[AdminPrincipal, ClientPrincipal, ClientMemberPrincipal, TenantPrincipal],
    Field(discriminator="kind"),
]

PRINCIPAL_KINDS: tuple[str, ...] = ("admin", "client", "clientMember", "tenant")

_BY_KIND = {
    "admin": AdminPrincipal,
    "client": ClientPrincipal,
    "clientMember": ClientMemberPrincipal,
    "tenant": TenantPrincipal,
}


def resolve_principal(user_id: str, matches: dict[str, Optional[dict[str, Any]]]) -> Optional[Principal]:
    """Pick the highest-priority role record.

    Args:
        user_id: Supabase auth user id
        matches: kind -> matching row (or None) for each role table

    Returns:
        The principal, or None when no role table knows the user
    """
    for kind in PRINCIPAL_KINDS:
        record = matches.get(kind)
        if record:
            return _BY_KIND[kind](user_id=user_id, record=record)
    return None


def viewer_payload(
    principal: Optional[Principal],
    user_data: Optional[dict[str, Any]],
    error: Optional[str] = None,
) -> dict[str, Any]:
    """Shape returned by GET /api/viewer: one role key set, the rest null."""
    payload: dict[str, Any] = {kind: None for kind in PRINCIPAL_KINDS}
    if principal is not None:
        payload[principal.kind] = principal.record
    payload["userData"] = user_data
    if error:
        payload["error"] = error
    return payload
