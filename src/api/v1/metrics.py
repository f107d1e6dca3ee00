"""
Metrics Endpoint

GET /api/v1/metrics     - Prometheus metrics endpoint
GET /api/v1/cache/stats - Result cache occupancy and hit counters
"""

from fastapi import APIRouter, Depends, Response
from fastapi.concurrency import run_in_threadpool

from src.api.dependencies import get_result_cache
from src.core.cache import IResultCache
from src.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - pipeline_latency_seconds (per stage)
    - transform_jobs_total (per outcome)
    - transform_jobs_dead_lettered_total
    - result_cache_requests_total
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


@router.get("/cache/stats")
async def cache_stats(cache: IResultCache = Depends(get_result_cache)):
    return await run_in_threadpool(cache.stats)
