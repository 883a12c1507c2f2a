from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum

from fastapi import Depends

from app import audit
from app.core.auth import get_permissions
from app.metrics import observe_authz_denied
from app.platform.security.context import Permissions
from app.platform.security.errors import ForbiddenError
from app.platform.security.roles import PageId, Role, capability_for


logger = logging.getLogger("app.security")


class Decision(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True, slots=True)
class GuardResult:
    decision: Decision
    guard: str
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


_ALLOW_PAGE = GuardResult(Decision.ALLOW, "page")
_ALLOW_ROLE = GuardResult(Decision.ALLOW, "role")


def requires_page(permissions: Permissions, page: PageId) -> GuardResult:
    """Allow only if the page is both granted to the principal and a default of its role.

    The role's capability entry bounds the descriptor's page list, so a
    widened ``allowedPages`` claim never opens a page the role lacks.
    """

    if page not in permissions.allowed_pages or page not in capability_for(permissions.role).pages:
        return GuardResult(Decision.DENY, "page", "Forbidden")
    return _ALLOW_PAGE


def forbid_role(permissions: Permissions, roles: Iterable[Role]) -> GuardResult:
    if permissions.role in set(roles):
        return GuardResult(Decision.DENY, "forbid_role", "Forbidden")
    return _ALLOW_ROLE


def require_role(permissions: Permissions, roles: Iterable[Role]) -> GuardResult:
    if permissions.role not in set(roles):
        return GuardResult(Decision.DENY, "require_role", "Forbidden")
    return _ALLOW_ROLE


def enforce(permissions: Permissions, *results: GuardResult, resource: str = "api") -> None:
    """Raise ``ForbiddenError`` on the first deny, after recording it."""

    for result in results:
        if result.allowed:
            continue
        observe_authz_denied(guard=result.guard, role=permissions.role.value)
        logger.warning(
            "authz.denied",
            extra={"principal": permissions.email, "role": permissions.role.value, "reason": result.guard},
        )
        audit.record(
            actor=permissions.email,
            entity_type="security.guard",
            entity_id=resource,
            action=f"deny.{result.guard}",
            details={"role": permissions.role.value},
        )
        raise ForbiddenError(result.reason or "Forbidden")


def page_guard(
    page: PageId,
    *,
    forbid: Iterable[Role] = (),
    allow_roles: Iterable[Role] | None = None,
) -> Callable[[Permissions], Permissions]:
    """FastAPI dependency: page access plus blanket role denials, evaluated before any I/O."""

    forbidden = frozenset(forbid)
    allowed_roles = frozenset(allow_roles) if allow_roles is not None else None

    def checker(permissions: Permissions = Depends(get_permissions)) -> Permissions:
        results = [forbid_role(permissions, forbidden), requires_page(permissions, page)]
        if allowed_roles is not None:
            results.append(require_role(permissions, allowed_roles))
        enforce(permissions, *results, resource=f"page:{int(page)}")
        return permissions

    return checker


def role_guard(roles: Iterable[Role]) -> Callable[[Permissions], Permissions]:
    allowed_roles = frozenset(roles)

    def checker(permissions: Permissions = Depends(get_permissions)) -> Permissions:
        enforce(permissions, require_role(permissions, allowed_roles), resource="role")
        return permissions

    return checker
