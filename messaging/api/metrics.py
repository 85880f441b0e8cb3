"""
Prometheus-style metrics endpoint and request instrumentation.
"""
import time
from typing import Annotated, Callable

from fastapi import APIRouter, Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from messaging.core import metrics as registry
from messaging.core.config import Settings, get_settings

router = APIRouter(tags=["Metrics"])


def _route_template(request: Request) -> str:
    """Matched route path, e.g. /messages/{message_id}, to keep label cardinality low."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        registry.record_request(
            method=request.method,
            path=_route_template(request),
            status_code=response.status_code,
            duration=time.perf_counter() - start_time,
        )
        return response


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Returns metrics in Prometheus exposition format.",
    response_class=Response,
)
async def metrics(settings: Annotated[Settings, Depends(get_settings)]) -> Response:
    return Response(
        content=registry.generate_prometheus_metrics(settings.app_version),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
