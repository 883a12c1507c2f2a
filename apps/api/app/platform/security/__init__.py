from app.platform.security.anonymize import (
    IDENTITY_FIELD_DENYLIST,
    AdvisorAlias,
    AnonymizationMap,
    AnonymizingProjector,
)
from app.platform.security.context import Permissions
from app.platform.security.errors import AnonymizationLeakError, AuthorizationError, ForbiddenError, SessionInvalid
from app.platform.security.principal import resolve_permissions
from app.platform.security.roles import BLANKET_DENIED_ROLES, ROLE_CAPABILITIES, PageId, Role, capability_for

__all__ = [
    "IDENTITY_FIELD_DENYLIST",
    "AdvisorAlias",
    "AnonymizationMap",
    "AnonymizingProjector",
    "Permissions",
    "AnonymizationLeakError",
    "AuthorizationError",
    "ForbiddenError",
    "SessionInvalid",
    "resolve_permissions",
    "BLANKET_DENIED_ROLES",
    "ROLE_CAPABILITIES",
    "PageId",
    "Role",
    "capability_for",
]
