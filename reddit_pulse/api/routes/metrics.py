"""Aggregate metric read endpoints.

- GET /metrics: Dimensions with a stored snapshot
- GET /metrics/{dimension}: The stored snapshot for one dimension

A dimension that was never computed is reported as 404 NO_DATA rather than
an empty payload, so "no data yet" is distinguishable from real zeros.
"""

from fastapi import APIRouter, Request

from reddit_pulse import storage
from reddit_pulse.aggregation import DIMENSIONS
from reddit_pulse.api.responses import NO_DATA, NOT_FOUND, raise_api_error, wrap_response
from reddit_pulse.backend.utils.logging_config import get_logger

router = APIRouter(prefix="/metrics", tags=["metrics"])
logger = get_logger(__name__)


@router.get("")
async def list_metrics(request: Request):
    """List known dimensions and when each was last computed (null if never)."""
    db = request.app.state.db
    data = []
    for dimension in DIMENSIONS:
        metric = storage.load_aggregate(db, dimension)
        data.append({
            "dimension": dimension,
            "computed_at": metric.computed_at if metric else None,
        })
    return wrap_response(data, total=len(data))


@router.get("/{dimension}")
async def get_metric(request: Request, dimension: str):
    """Get the stored aggregate snapshot for a dimension.

    Path Parameters:
        dimension: "product" or "overview"

    Returns:
        Response envelope with dimension, computed_at and payload
    """
    if dimension not in DIMENSIONS:
        raise_api_error(NOT_FOUND, f"Unknown dimension: {dimension}")

    metric = storage.load_aggregate(request.app.state.db, dimension)
    if metric is None:
        logger.info("metric_not_computed", dimension=dimension)
        raise_api_error(NO_DATA, f"No aggregate computed yet for {dimension}")

    return wrap_response({
        "dimension": metric.dimension,
        "computed_at": metric.computed_at,
        "payload": metric.payload,
    })
