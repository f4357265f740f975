"""HTTP boundary for the pollers.

FastAPI application exposing the three poll triggers, a health check and a
read-only report of stuck pending claims. Scheduling lives outside: cron or
the platform scheduler POSTs to ``/poll/regular`` and ``/poll/catchup``.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

import pytz
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from src.adapters.repository_factory import create_repository
from src.adapters.servicetitan_client import ServiceTitanClient
from src.adapters.webhook_dispatcher import WebhookDispatcher
from src.config.logging_config import get_logger
from src.config.settings import Settings, get_settings
from src.domain.exceptions import ConfigurationError
from src.domain.models import PollVariant
from src.domain.protocols import (
    ChannelSenderProtocol,
    EventSourceProtocol,
    RepositoryProtocol,
)
from src.use_cases.poll_sales import poll_sales_use_case
from src.use_cases.reset_claims import list_stale_pending_claims

logger = get_logger(__name__)

API_VERSION = "1.0.0"


@dataclass
class PollerRuntime:
    """Collaborators shared by every request."""

    settings: Settings
    repository: RepositoryProtocol
    source: EventSourceProtocol
    sender: ChannelSenderProtocol
    sleep: Callable[[float], None] | None = field(default=None)


@lru_cache(maxsize=1)
def get_runtime() -> PollerRuntime:
    """Build the production runtime once per process.

    Raises:
        ConfigurationError: If configuration is malformed
    """
    settings = get_settings()
    return PollerRuntime(
        settings=settings,
        repository=create_repository(settings),
        source=ServiceTitanClient(settings),
        sender=WebhookDispatcher(timeout=settings.dispatch_timeout_seconds),
    )


app = FastAPI(
    title="Sales Celebration Bot",
    description="Detects big sales and tech-generated leads and celebrates them in chat",
    version=API_VERSION,
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("configuration_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


@app.get("/health", tags=["Health"])
def health_check() -> dict[str, Any]:
    """Liveness check."""
    return {"status": "healthy", "version": API_VERSION}


@app.post("/poll/{variant}", tags=["Polling"])
def trigger_poll(
    variant: PollVariant, runtime: PollerRuntime = Depends(get_runtime)
) -> JSONResponse:
    """Run one poll and return its counters.

    The response is 200 for successful and skipped runs, 500 when the feed
    or the store failed and the run was aborted.
    """
    kwargs: dict[str, Any] = {}
    if runtime.sleep is not None:
        kwargs["sleep"] = runtime.sleep

    result = poll_sales_use_case(
        variant,
        source=runtime.source,
        repository=runtime.repository,
        sender=runtime.sender,
        settings=runtime.settings,
        **kwargs,
    )
    return JSONResponse(
        status_code=200 if result.success else 500,
        content=result.to_response(),
    )


@app.get("/claims/stale", tags=["Claims"])
def stale_claims(
    older_than_minutes: int = Query(default=30, ge=1),
    runtime: PollerRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """Pending claims older than the cutoff; they block retries until reset."""
    cutoff = datetime.now(tz=pytz.UTC) - timedelta(minutes=older_than_minutes)
    claims = list_stale_pending_claims(runtime.repository, cutoff)
    return {
        "olderThan": cutoff.isoformat(),
        "count": len(claims),
        "claims": [claim.model_dump(mode="json") for claim in claims],
    }
