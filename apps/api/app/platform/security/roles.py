from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum, StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    SGM = "sgm"
    SGA = "sga"
    REVOPS_ADMIN = "revops_admin"
    RECRUITER = "recruiter"
    CAPITAL_PARTNER = "capital_partner"
    VIEWER = "viewer"


class PageId(IntEnum):
    FUNNEL_PERFORMANCE = 1
    OPEN_PIPELINE = 3
    SETTINGS = 7
    SGA_HUB = 8
    SGA_MANAGEMENT = 9
    EXPLORE = 10
    SGA_ACTIVITY = 11
    RECRUITER_HUB = 12
    DASHBOARD_REQUESTS = 13
    CAPITAL_PARTNER_HUB = 16


class FilterField(StrEnum):
    SGA = "sga_filter"
    SGM = "sgm_filter"
    RECRUITER = "recruiter_filter"


@dataclass(frozen=True, slots=True)
class RoleCapability:
    role: Role
    pages: frozenset[PageId]
    filter_field: FilterField | None = None
    can_export: bool = False
    can_manage_users: bool = False
    can_manage_requests: bool = False
    blanket_denied: bool = False


_ALL_INTERNAL_PAGES = frozenset(
    {
        PageId.FUNNEL_PERFORMANCE,
        PageId.OPEN_PIPELINE,
        PageId.SETTINGS,
        PageId.SGA_HUB,
        PageId.SGA_MANAGEMENT,
        PageId.EXPLORE,
        PageId.SGA_ACTIVITY,
        PageId.RECRUITER_HUB,
        PageId.DASHBOARD_REQUESTS,
    }
)

# Single source of truth for role defaults. Every guard reads from here.
ROLE_CAPABILITIES: dict[Role, RoleCapability] = {
    Role.REVOPS_ADMIN: RoleCapability(
        role=Role.REVOPS_ADMIN,
        pages=_ALL_INTERNAL_PAGES | {PageId.CAPITAL_PARTNER_HUB},
        can_export=True,
        can_manage_users=True,
        can_manage_requests=True,
    ),
    Role.ADMIN: RoleCapability(
        role=Role.ADMIN,
        pages=_ALL_INTERNAL_PAGES | {PageId.CAPITAL_PARTNER_HUB},
        can_export=True,
        can_manage_users=True,
    ),
    Role.MANAGER: RoleCapability(
        role=Role.MANAGER,
        pages=_ALL_INTERNAL_PAGES,
        can_export=True,
    ),
    Role.SGM: RoleCapability(
        role=Role.SGM,
        pages=frozenset(
            {PageId.FUNNEL_PERFORMANCE, PageId.OPEN_PIPELINE, PageId.SETTINGS, PageId.EXPLORE, PageId.DASHBOARD_REQUESTS}
        ),
        filter_field=FilterField.SGM,
        can_export=True,
    ),
    Role.SGA: RoleCapability(
        role=Role.SGA,
        pages=frozenset(
            {
                PageId.FUNNEL_PERFORMANCE,
                PageId.OPEN_PIPELINE,
                PageId.SETTINGS,
                PageId.SGA_HUB,
                PageId.EXPLORE,
                PageId.SGA_ACTIVITY,
                PageId.DASHBOARD_REQUESTS,
            }
        ),
        filter_field=FilterField.SGA,
        can_export=True,
    ),
    Role.VIEWER: RoleCapability(
        role=Role.VIEWER,
        pages=frozenset(
            {PageId.FUNNEL_PERFORMANCE, PageId.OPEN_PIPELINE, PageId.SETTINGS, PageId.EXPLORE, PageId.DASHBOARD_REQUESTS}
        ),
    ),
    Role.RECRUITER: RoleCapability(
        role=Role.RECRUITER,
        pages=frozenset({PageId.SETTINGS, PageId.RECRUITER_HUB}),
        filter_field=FilterField.RECRUITER,
        can_export=True,
        blanket_denied=True,
    ),
    Role.CAPITAL_PARTNER: RoleCapability(
        role=Role.CAPITAL_PARTNER,
        pages=frozenset({PageId.SETTINGS, PageId.CAPITAL_PARTNER_HUB}),
        blanket_denied=True,
    ),
}

BLANKET_DENIED_ROLES: frozenset[Role] = frozenset(
    capability.role for capability in ROLE_CAPABILITIES.values() if capability.blanket_denied
)


def capability_for(role: Role) -> RoleCapability:
    return ROLE_CAPABILITIES[role]


def parse_role(value: object) -> Role | None:
    if not isinstance(value, str):
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None
