from __future__ import annotations

from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from contextvars import ContextVar

CONTEXT_FIELDS = ("run_id", "batch_id", "verification_id", "txid", "currency")

_VARS: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"depositwatch_{name}", default=None) for name in CONTEXT_FIELDS
}


def get_logging_context() -> dict[str, str | None]:
    return {name: var.get() for name, var in _VARS.items() if var.get() is not None}


@contextmanager
def _bound(name: str, value: str) -> Iterator[None]:
    token = _VARS[name].set(value)
    try:
        yield
    finally:
        _VARS[name].reset(token)


@contextmanager
def with_logging_context(**context: str | int | None) -> Iterator[None]:
    """Bind correlation fields for the block; unknown names and None values are ignored."""
    with ExitStack() as stack:
        for name, value in context.items():
            if name in _VARS and value is not None:
                stack.enter_context(_bound(name, str(value)))
        yield


@contextmanager
def with_batch_context(batch_id: str, run_id: str | None = None) -> Iterator[None]:
    with with_logging_context(batch_id=batch_id, run_id=run_id):
        yield
