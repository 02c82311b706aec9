"""Request-scoped token context.

The authentication middleware binds a ``TokenContext`` for the duration of one
request; tool handlers read the GitLab credential from here instead of having
it threaded through every call.

Each asyncio task runs with its own copy of the context, so concurrent
requests never observe each other's credential, including across awaits.
Reading the context outside a request is a programming error and raises
``TokenContextError``.
"""

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager

from gitlab_mcp.sdk.models import SdkBaseModel


class TokenContext(SdkBaseModel):
    """Provider credential and identity for the current request. Never persisted."""

    provider_token: str
    provider_user_id: str
    provider_username: str
    session_id: str


class TokenContextError(RuntimeError):
    """Raised when the token context is read outside an authenticated request."""


token_context_var = contextvars.ContextVar[TokenContext | None]("token_context", default=None)


def get_optional_token_context() -> TokenContext | None:
    """Return the current token context, or None outside an authenticated request."""
    return token_context_var.get()


def get_token_context() -> TokenContext:
    """Return the current token context.

    Raises:
        TokenContextError: If called outside an authenticated request scope
    """
    context = token_context_var.get()
    if context is None:
        raise TokenContextError(
            "No token context available; this must be called within an authenticated request"
        )
    return context


def set_token_context(
    context: TokenContext | None,
) -> "contextvars.Token[TokenContext | None]":
    """
    Set the token context for the current execution context.

    Returns:
        A token that can be used to reset the context

    Example:
        >>> token = set_token_context(ctx)
        >>> try:
        ...     pass
        ... finally:
        ...     reset_token_context(token)
    """
    return token_context_var.set(context)


def reset_token_context(token: "contextvars.Token[TokenContext | None]") -> None:
    """Restore the context that was active before the matching ``set_token_context``."""
    token_context_var.reset(token)


@contextmanager
def token_context_scope(context: TokenContext) -> Iterator[TokenContext]:
    """Bind ``context`` for the body of a ``with`` block.

    Nested scopes restore the enclosing context on exit, including when the
    body raises.
    """
    token = set_token_context(context)
    try:
        yield context
    finally:
        reset_token_context(token)


def get_provider_token() -> str:
    return get_token_context().provider_token


def get_provider_user_id() -> str:
    return get_token_context().provider_user_id


def get_provider_username() -> str:
    return get_token_context().provider_username


def get_session_id() -> str:
    return get_token_context().session_id


__all__ = [
    "TokenContext",
    "TokenContextError",
    "get_optional_token_context",
    "get_provider_token",
    "get_provider_user_id",
    "get_provider_username",
    "get_session_id",
    "get_token_context",
    "reset_token_context",
    "set_token_context",
    "token_context_scope",
    "token_context_var",
]
