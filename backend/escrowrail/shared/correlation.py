"""Correlation ID management for tracing a booking across API, webhooks and jobs."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def generate_correlation_id(prefix: str = "corr") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def get_correlation_id() -> str:
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    correlation_id_var.set(cid)


@contextmanager
def correlation_scope(prefix: str):
    """Bind a fresh correlation id for one background unit of work (a sweep tick, an outbox pass)."""
    token = correlation_id_var.set(generate_correlation_id(prefix))
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)
