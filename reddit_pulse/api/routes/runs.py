"""Cron trigger endpoints.

This module provides POST endpoints for scheduled pipeline runs:
- POST /cron/run: Run the full pipeline and return the run report
- POST /cron/metrics: Recompute aggregates only

Both require ?secret= to match CRON_SECRET. Only one triggered run executes
at a time; a second request while one is running gets 409.
"""

import dataclasses
import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Request

from reddit_pulse import aggregation
from reddit_pulse.api.models import CronParams
from reddit_pulse.api.responses import (
    CONFIGURATION_ERROR,
    DATABASE_ERROR,
    PIPELINE_ERROR,
    RUN_IN_PROGRESS,
    UNAUTHORIZED,
    raise_api_error,
    wrap_response,
)
from reddit_pulse.backend.utils.errors import ConfigurationError, PersistenceError, PipelineError
from reddit_pulse.backend.utils.logging_config import get_logger
from reddit_pulse.config import PipelineConfig
from reddit_pulse.pipeline import build_clients, run_pipeline

router = APIRouter(prefix="/cron", tags=["cron"])
logger = get_logger(__name__)


def _get_config(request: Request) -> PipelineConfig:
    config = getattr(request.app.state, "config", None)
    return config if config is not None else PipelineConfig.from_env()


def _check_secret(config: PipelineConfig, secret: Optional[str], path: str) -> None:
    """Reject the request unless secret matches CRON_SECRET.

    With no CRON_SECRET configured every trigger request is rejected.
    """
    expected = config.cron_secret
    if not expected or not secret or not hmac.compare_digest(secret, expected):
        logger.warning("cron_unauthorized", path=path, secret_configured=bool(expected))
        raise_api_error(UNAUTHORIZED, "Invalid or missing cron secret")


@router.post("/run")
async def trigger_run(request: Request, params: CronParams = Depends()):
    """Run seed/collect/analyze/extended/aggregate once.

    Query Parameters:
        secret: Must equal CRON_SECRET
        extended: Also run extended analysis (default false)

    Returns:
        Response envelope with the run report (stages, warnings, exit_code).
        A failed fatal stage returns 502 PIPELINE_ERROR.
    """
    config = _get_config(request)
    _check_secret(config, params.secret, "/cron/run")

    if params.extended:
        config = dataclasses.replace(config, extended_analysis=True)

    try:
        config.validate()
    except ConfigurationError as e:
        raise_api_error(CONFIGURATION_ERROR, str(e))

    lock = request.app.state.run_lock
    if lock.locked():
        raise_api_error(RUN_IN_PROGRESS, "A pipeline run is already in progress")

    async with lock:
        logger.info("cron_run_started", extended=config.extended_analysis)
        try:
            clients = await build_clients(config, conn=request.app.state.db)
        except PipelineError as e:
            logger.error("cron_run_setup_failed", error_type=type(e).__name__, error_message=str(e))
            raise_api_error(PIPELINE_ERROR, f"Pipeline could not start: {e}")

        try:
            report = await run_pipeline(config, clients)
        finally:
            await clients.close()

    if report.aborted:
        failed = [s for s in report.stages if s.status == "failed"]
        reason = failed[0].error if failed else "unknown"
        raise_api_error(PIPELINE_ERROR, f"Pipeline aborted: {reason}")

    return wrap_response(report.to_dict())


@router.post("/metrics")
async def trigger_metrics(request: Request, params: CronParams = Depends()):
    """Recompute every aggregate dimension.

    Returns:
        Response envelope with the recomputed dimensions and their timestamps
    """
    config = _get_config(request)
    _check_secret(config, params.secret, "/cron/metrics")

    try:
        metrics = aggregation.run_aggregation(request.app.state.db)
    except PersistenceError as e:
        logger.critical("cron_metrics_failed", error_message=str(e))
        raise_api_error(DATABASE_ERROR, f"Aggregation failed: {e}")

    data = [{"dimension": m.dimension, "computed_at": m.computed_at} for m in metrics]
    logger.info("cron_metrics_complete", dimensions=[m.dimension for m in metrics])
    return wrap_response(data, total=len(data))
