"""Authenticated principals and tenant scope resolution.

A principal is either an ``OwnerPrincipal`` (the tenant owner) or an
``OperatorPrincipal`` employed by exactly one owner. Every tenant-scoped row
carries the owning owner's id; the scope of a request is derived here and
nowhere else.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, assert_never

from app.domain.permissions import PrincipalRole, parse_role

if TYPE_CHECKING:
    from app.domain.models import User


@dataclass(frozen=True)
class OwnerPrincipal:
    id: str
    email: str

    @property
    def role(self) -> PrincipalRole:
        return PrincipalRole.OWNER


@dataclass(frozen=True)
class OperatorPrincipal:
    id: str
    email: str
    employer_id: str | None

    @property
    def role(self) -> PrincipalRole:
        return PrincipalRole.OPERATOR


Principal = OwnerPrincipal | OperatorPrincipal


def resolve_tenant_scope(principal: Principal) -> str | None:
    """Return the owning-owner id that scopes every query for ``principal``.

    ``None`` means the principal can see nothing (an operator whose employer
    link is missing).
    """
    match principal:
        case OwnerPrincipal():
            return principal.id
        case OperatorPrincipal():
            return principal.employer_id or None
        case _:
            assert_never(principal)


def principal_from_user(user: User) -> Principal | None:
    role = parse_role(user.role)
    if role is None:
        return None
    match role:
        case PrincipalRole.OWNER:
            return OwnerPrincipal(id=user.id, email=user.email)
        case PrincipalRole.OPERATOR:
            return OperatorPrincipal(id=user.id, email=user.email, employer_id=user.employer_id)
        case _:
            assert_never(role)
