"""Poll run correlation for structured logs."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

from src.config.logging_config import bind_context, unbind_context

POLL_RUN_ID_KEY = "poll_run_id"
POLL_VARIANT_KEY = "poll_variant"


@contextmanager
def correlation_scope(
    run_id: str | None = None, *, variant: str | None = None
) -> Iterator[str]:
    """Bind the poll run id (and variant, when given) to every log line in scope."""
    correlation_id = run_id or str(uuid4())
    bound = {POLL_RUN_ID_KEY: correlation_id}
    if variant is not None:
        bound[POLL_VARIANT_KEY] = variant
    bind_context(**bound)
    try:
        yield correlation_id
    finally:
        unbind_context(*bound)


__all__ = ["POLL_RUN_ID_KEY", "POLL_VARIANT_KEY", "correlation_scope"]
