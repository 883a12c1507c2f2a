from __future__ import annotations

from dataclasses import dataclass

from app.platform.security.roles import PageId, Role


@dataclass(frozen=True, slots=True)
class Permissions:
    """Capability set of one authenticated principal, rebuilt on every request."""

    role: Role
    email: str
    allowed_pages: frozenset[PageId]
    sga_filter: str | None = None
    sgm_filter: str | None = None
    recruiter_filter: str | None = None
    can_export: bool = False
    can_manage_users: bool = False
    can_manage_requests: bool = False
    user_id: str | None = None

    @property
    def is_capital_partner(self) -> bool:
        return self.role == Role.CAPITAL_PARTNER

    @property
    def is_admin(self) -> bool:
        return self.role in {Role.ADMIN, Role.REVOPS_ADMIN}

    def to_payload(self) -> dict[str, object]:
        return {
            "role": self.role.value,
            "email": self.email,
            "allowed_pages": sorted(int(page) for page in self.allowed_pages),
            "sga_filter": self.sga_filter,
            "sgm_filter": self.sgm_filter,
            "recruiter_filter": self.recruiter_filter,
            "can_export": self.can_export,
            "can_manage_users": self.can_manage_users,
            "can_manage_requests": self.can_manage_requests,
            "user_id": self.user_id,
        }
