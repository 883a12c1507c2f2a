from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
principal_email_var: ContextVar[str | None] = ContextVar("principal_email", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_principal_email(value: str | None) -> Token[str | None]:
    return principal_email_var.set(value)


def get_principal_email() -> str | None:
    return principal_email_var.get()
