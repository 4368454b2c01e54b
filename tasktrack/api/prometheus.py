"""
Prometheus scrape endpoint
"""

from fastapi import APIRouter, Response

from ..services.prometheus_metrics import prometheus_metrics

router = APIRouter(tags=["Metrics"])


@router.get("/metrics/prometheus", summary="Prometheus metrics")
def scrape() -> Response:
    """Counters of this API process in the Prometheus text format.

    The reporter daemon exposes its own collectors on
    TASKTRACK_REPORTER_METRICS_PORT.
    """
    return Response(content=prometheus_metrics.get_metrics(),
                    media_type=prometheus_metrics.get_content_type())
