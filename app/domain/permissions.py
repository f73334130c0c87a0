from __future__ import annotations

from enum import StrEnum


class PrincipalRole(StrEnum):
    OWNER = "Owner"
    OPERATOR = "Operator"


OWNER_ONLY: frozenset[PrincipalRole] = frozenset({PrincipalRole.OWNER})
OPERATOR_ONLY: frozenset[PrincipalRole] = frozenset({PrincipalRole.OPERATOR})
OWNER_OR_OPERATOR: frozenset[PrincipalRole] = frozenset({PrincipalRole.OWNER, PrincipalRole.OPERATOR})


def parse_role(value: object) -> PrincipalRole | None:
    if isinstance(value, PrincipalRole):
        return value
    if not isinstance(value, str):
        return None
    try:
        return PrincipalRole(value)
    except ValueError:
        return None
