"""
snipgate.core.context — Request-scoped context binding.

The host builds a RequestContext per request; the gateway binds it here so the
condition evaluator can read it without threading it through every call.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from snipgate.utils.types import RequestContext

_current_request: ContextVar[Optional[RequestContext]] = ContextVar(
    "snipgate_current_request", default=None
)


def get_current_context() -> RequestContext:
    """Context of the request being processed, or an anonymous default."""
    ctx = _current_request.get()
    return ctx if ctx is not None else RequestContext()


def current_request_id() -> str:
    """Request id of the bound context, "" outside a request."""
    ctx = _current_request.get()
    return ctx.request_id if ctx is not None else ""


def bind_context(context: RequestContext):
    """Bind `context` for the current task/thread. Returns a reset token."""
    return _current_request.set(context)


def unbind_context(token) -> None:
    _current_request.reset(token)


@contextmanager
def request_context(context: RequestContext) -> Iterator[RequestContext]:
    token = bind_context(context)
    try:
        yield context
    finally:
        unbind_context(token)
