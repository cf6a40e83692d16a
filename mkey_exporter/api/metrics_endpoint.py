"""Prometheus metrics endpoint.

Renders the application's registry (key series plus exporter telemetry)
in the text exposition format:

  # HELP mkey_cache_counts Counts of keys matching the configured rules
  # TYPE mkey_cache_counts gauge
  mkey_cache_counts{rule_group="default",user="user1",type="prefix1"} 1.0
  mkey_cache_counts{rule_group="default",user="user2",type="prefix3"} 2.0

The registry is read here and written only by the refresh loop; the key
series collector takes its own lock while rendering.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mkey_exporter.core.metrics import ExporterMetrics

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
def metrics(request: Request) -> Response:
    """Expose all exporter metrics in text exposition format."""
    exporter_metrics: ExporterMetrics = request.app.state.metrics
    return Response(
        content=generate_latest(exporter_metrics.registry),
        media_type=CONTENT_TYPE_LATEST,
    )
