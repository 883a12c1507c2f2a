from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from app.platform.security.context import Permissions
from app.platform.security.errors import SessionInvalid
from app.platform.security.roles import FilterField, PageId, capability_for, parse_role


# Claim names accepted for each personal filter, in lookup order. The issuer
# embeds either the explicit filter or the raw identity it was derived from.
_FILTER_CLAIMS: dict[FilterField, tuple[str, ...]] = {
    FilterField.SGA: ("sgaFilter", "sga_filter", "name"),
    FilterField.SGM: ("sgmFilter", "sgm_filter", "name"),
    FilterField.RECRUITER: ("recruiterFilter", "recruiter_filter", "externalAgency", "external_agency"),
}


def resolve_permissions(descriptor: Mapping[str, Any] | None) -> Permissions:
    """Map a verified session descriptor onto a :class:`Permissions` value.

    Pure and synchronous: no storage or network access. The descriptor's
    signature has already been checked by the caller.

    Raises:
        SessionInvalid: the descriptor is missing, has no email, names an
            unknown role, or lacks the personal filter its role requires.
    """

    if not isinstance(descriptor, Mapping):
        raise SessionInvalid("missing session descriptor")

    email = descriptor.get("email")
    if not isinstance(email, str) or not email.strip():
        raise SessionInvalid("session descriptor has no email")

    role = parse_role(descriptor.get("role"))
    if role is None:
        raise SessionInvalid("session descriptor has an unknown role")

    capability = capability_for(role)
    filters: dict[str, str | None] = {field.value: None for field in FilterField}
    if capability.filter_field is not None:
        value = _first_claim(descriptor, _FILTER_CLAIMS[capability.filter_field])
        if value is None:
            raise SessionInvalid(f"role '{role.value}' requires {capability.filter_field.value}")
        filters[capability.filter_field.value] = value

    user_id = descriptor.get("user_id", descriptor.get("sub"))

    return Permissions(
        role=role,
        email=email.strip().lower(),
        allowed_pages=_resolve_pages(descriptor.get("allowedPages"), capability.pages),
        sga_filter=filters[FilterField.SGA.value],
        sgm_filter=filters[FilterField.SGM.value],
        recruiter_filter=filters[FilterField.RECRUITER.value],
        can_export=capability.can_export,
        can_manage_users=capability.can_manage_users,
        can_manage_requests=capability.can_manage_requests,
        user_id=str(user_id) if user_id is not None else None,
    )


def _first_claim(descriptor: Mapping[str, Any], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = descriptor.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _resolve_pages(raw: Any, defaults: frozenset[PageId]) -> frozenset[PageId]:
    if raw is None:
        return defaults
    if not isinstance(raw, list | tuple | set | frozenset):
        raise SessionInvalid("allowedPages must be a list")

    pages: set[PageId] = set()
    for item in raw:
        try:
            pages.add(PageId(int(item)))
        except (TypeError, ValueError):
            continue
    return frozenset(pages)
