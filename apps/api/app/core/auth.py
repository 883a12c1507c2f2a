from typing import Any

from fastapi import Depends
from jose import JWTError, jwt
from starlette.requests import Request

from app.context import set_principal_email
from app.core.config import get_settings
from app.platform.security.context import Permissions
from app.platform.security.errors import SessionInvalid
from app.platform.security.principal import resolve_permissions


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1).strip() if auth_header.startswith("Bearer ") else ""


def decode_session_descriptor(token: str) -> dict[str, Any]:
    if not token:
        raise SessionInvalid("missing bearer token")

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise SessionInvalid("invalid session token") from exc
    if not isinstance(payload, dict):
        raise SessionInvalid("malformed session token")
    return payload


async def get_session_descriptor(request: Request) -> dict[str, Any]:
    return decode_session_descriptor(_bearer_token(request))


async def get_permissions(
    request: Request,
    descriptor: dict[str, Any] = Depends(get_session_descriptor),
) -> Permissions:
    permissions = resolve_permissions(descriptor)
    request.state.permissions = permissions
    set_principal_email(permissions.email)
    return permissions
