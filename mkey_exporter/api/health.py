"""Health and readiness endpoints.

  /health (liveness):
    Always 200 while the process can answer.  The body says whether the
    last refresh cycle succeeded ("ok") or failed ("degraded"), plus
    counters and timestamps from the refresh loop.  A cache server outage
    is not a reason to restart the exporter, so this never returns 5xx.

  /ready (readiness):
    503 until the first refresh cycle has published, 200 afterwards.
    Before that, /metrics would serve no key series at all.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response

from mkey_exporter.services.refresh import RefreshLoop

router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request) -> dict:
    """Liveness probe + refresh loop status."""
    loop: RefreshLoop = request.app.state.refresh_loop
    status = loop.status

    checks = {"cache": "ok" if status.healthy else "degraded"}
    if status.cycles == 0:
        checks["cache"] = "pending"

    return {
        "status": "ok" if status.healthy else "degraded",
        "checks": checks,
        "refresh": {
            "host": loop.host,
            "cycles": status.cycles,
            "failures": status.failures,
            "last_success": status.last_success,
            "last_failure": status.last_failure,
            "last_error": status.last_error,
            "label_sets": dict(status.label_sets),
        },
    }


@router.get("/ready")
def ready(request: Request) -> Response:
    """Readiness probe: has at least one cycle been published?"""
    loop: RefreshLoop = request.app.state.refresh_loop
    if loop.status.last_success is None:
        return Response(status_code=503)
    return Response(status_code=200)
