"""HTTP routes served by the exporter.

Both endpoints are unauthenticated so that Prometheus and load-balancers
can probe without credentials.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from starlette.responses import Response as StarletteResponse

from jiravars import __version__

router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Liveness probe.

    Returns:
        A JSON object with ``status`` and ``version`` fields.
    """
    return {"status": "ok", "version": __version__}


@router.get("/metrics", tags=["monitoring"])
async def prometheus_metrics(request: Request) -> StarletteResponse:
    """Current state of every gauge family plus the exporter's own metrics.

    Rendering reads the latest published snapshot of each family and is
    independent of the polling cadence.

    Returns:
        Metrics in Prometheus text exposition format.
    """
    body, content_type = request.app.state.registry.render()
    return StarletteResponse(content=body, media_type=content_type)
