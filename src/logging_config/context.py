"""Operation Context.

Contextvar-backed binding of the approval request, acting principal and
engine operation to every log record emitted while an operation runs.
"""

from contextvars import ContextVar
from typing import Any, Optional


_approval_request_id_var: ContextVar[str] = ContextVar("approval_request_id", default="")
_actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")
_operation_var: ContextVar[str] = ContextVar("operation", default="")
_extra_context_var: ContextVar[Optional[dict]] = ContextVar("extra_context", default=None)


def get_approval_request_id() -> str:
    return _approval_request_id_var.get()


def get_actor_id() -> str:
    return _actor_id_var.get()


def get_operation() -> str:
    return _operation_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all bound context values as a dictionary for log records."""
    ctx = {}
    request_id = _approval_request_id_var.get()
    if request_id:
        ctx["approval_request_id"] = request_id
    actor_id = _actor_id_var.get()
    if actor_id:
        ctx["actor_id"] = actor_id
    operation = _operation_var.get()
    if operation:
        ctx["operation"] = operation
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


class LogContext:
    """Context manager binding operation context to log records.

    Nested contexts restore the outer values on exit.

    Example:
        with LogContext(operation="decide", approval_request_id=rid, actor_id=uid):
            logger.info("recording decision")
    """

    def __init__(
        self,
        operation: str = "",
        approval_request_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        **extra: Any,
    ):
        self.operation = operation
        self.approval_request_id = approval_request_id or ""
        self.actor_id = actor_id or ""
        self.extra = extra
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        merged = {**(_extra_context_var.get() or {}), **self.extra}
        self._tokens = [
            (_operation_var, _operation_var.set(self.operation)),
            (_approval_request_id_var, _approval_request_id_var.set(self.approval_request_id)),
            (_actor_id_var, _actor_id_var.set(self.actor_id)),
            (_extra_context_var, _extra_context_var.set(merged)),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    def bind(self, **kwargs: Any) -> None:
        """Add key-value pairs to the active context."""
        if "approval_request_id" in kwargs:
            _approval_request_id_var.set(kwargs.pop("approval_request_id") or "")
        current = _extra_context_var.get() or {}
        _extra_context_var.set({**current, **kwargs})
        self.extra.update(kwargs)
