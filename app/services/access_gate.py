"""Tenant-scoped authorization checks shared by every resource service.

Every query against a tenant-scoped table must be conjoined with
``tenant_predicate`` (or ``task_visibility`` for tasks). Operators that fail an
assignment check get ``NotFoundError`` so that task existence does not leak.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, assert_never

from sqlalchemy import and_, false
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import col

from app.domain.errors import ForbiddenError, NotFoundError, UnauthenticatedError
from app.domain.models import Task
from app.domain.permissions import PrincipalRole
from app.domain.principal import OperatorPrincipal, OwnerPrincipal, Principal, resolve_tenant_scope


def require_role(principal: Principal | None, allowed_roles: Iterable[PrincipalRole]) -> Principal:
    if principal is None:
        raise UnauthenticatedError("authentication required")
    allowed = frozenset(allowed_roles)
    if principal.role not in allowed:
        required = ", ".join(sorted(role.value for role in allowed))
        raise ForbiddenError(f"access denied: required role(s) {required}, current role {principal.role.value}")
    return principal


def scope_filter(principal: Principal) -> str | None:
    return resolve_tenant_scope(principal)


def tenant_predicate(column: Any, principal: Principal) -> ColumnElement[bool]:
    scope = scope_filter(principal)
    if scope is None:
        return false()
    return col(column) == scope


def task_visibility(principal: Principal) -> ColumnElement[bool]:
    clauses: list[ColumnElement[bool]] = [
        tenant_predicate(Task.tenant_id, principal),
        col(Task.is_active).is_(True),
    ]
    match principal:
        case OwnerPrincipal():
            pass
        case OperatorPrincipal():
            clauses.append(col(Task.assigned_operator_id) == principal.id)
        case _:
            assert_never(principal)
    return and_(*clauses)


def require_assignment(principal: Principal, task: Task) -> Task:
    scope = scope_filter(principal)
    if scope is None or task.tenant_id != scope:
        raise NotFoundError("task not found")
    match principal:
        case OwnerPrincipal():
            return task
        case OperatorPrincipal():
            if task.assigned_operator_id != principal.id:
                raise NotFoundError("task not found or not assigned to you")
            return task
        case _:
            assert_never(principal)
