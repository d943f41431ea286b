# routes.py
import logging
import time

from fastapi import APIRouter, Request, Response
from fastapi.responses import PlainTextResponse

from metrics import HTTP_DURATION, HTTP_REQUESTS, MetricsRegistry

logger = logging.getLogger(__name__)

router = APIRouter()

# Probes und Scrapes nicht mitzählen, sonst nur Rauschen
IGNORED_PATHS = frozenset({"/ping", "/metrics", "/favicon.ico"})


def get_registry(request: Request) -> MetricsRegistry:
    return request.app.state.registry


@router.get("/ping", response_class=PlainTextResponse)
async def ping():
    return "pong"


@router.get("/metrics")
def metrics(request: Request):
    registry = get_registry(request)
    return Response(content=registry.snapshot(), media_type=registry.content_type)


async def http_metrics_middleware(request: Request, call_next):
    """Zählt Requests und Latenz, außer für IGNORED_PATHS."""
    if request.url.path in IGNORED_PATHS:
        return await call_next(request)

    start = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - start

    # Route-Template statt roher URL, damit die Label-Kardinalität begrenzt bleibt
    route = request.scope.get("route")
    path = getattr(route, "path", "unmatched")
    labels = {"method": request.method, "path": path, "status": str(response.status_code)}
    registry = get_registry(request)
    registry.increment(HTTP_REQUESTS, labels)
    registry.observe(HTTP_DURATION, elapsed, labels)
    return response
