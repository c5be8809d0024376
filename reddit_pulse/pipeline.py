"""Pipeline orchestrator.

Runs the stages in order and applies each stage's failure policy:

    seed (only when reference data is missing)  fatal
    collect                                     fatal
    analyze                                     tolerated
    extended (only when requested)              tolerated
    aggregate                                   tolerated, logged CRITICAL

Every stage call goes through one boundary that catches its exception, logs
it with the stage name and cause, and turns it into a failed StageOutcome.
The run report lives in memory only; nothing about stage success is stored.

Usage:
    reddit-pulse [--extended-analysis] [--force-reanalysis] [--analyze-comments] [--log-dir logs]
"""

import argparse
import asyncio
import signal
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from reddit_pulse import aggregation, collector, taxonomy
from reddit_pulse.ai_batch import Classifier, analyze_unprocessed
from reddit_pulse.ai_client import OpenAIClient
from reddit_pulse.ai_extended import run_extended_analysis
from reddit_pulse.backend.db.connection import init_schema, open_connection
from reddit_pulse.backend.utils.errors import (
    VALID_WARNING_TYPES,
    ConfigurationError,
    PipelineError,
    WarningsCollector,
)
from reddit_pulse.backend.utils.logging_config import setup_logging
from reddit_pulse.config import PipelineConfig
from reddit_pulse.reddit import RedditSource, get_reddit_client

logger = structlog.get_logger()

STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

STAGE_SEED = "seed"
STAGE_COLLECT = "collect"
STAGE_ANALYZE = "analyze"
STAGE_EXTENDED = "extended"
STAGE_AGGREGATE = "aggregate"

STAGE_ORDER = (STAGE_SEED, STAGE_COLLECT, STAGE_ANALYZE, STAGE_EXTENDED, STAGE_AGGREGATE)

# A failure in one of these stops the run and makes the exit code non-zero
FATAL_STAGES = {STAGE_SEED, STAGE_COLLECT}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StageOutcome:
    """Result of one stage in one run."""
    name: str
    status: str = STATUS_SKIPPED
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "detail": self.detail,
        }


@dataclass
class RunReport:
    """In-memory summary of one pipeline run.

    Attributes:
        stages: Outcomes in execution order
        aborted: A fatal stage failed and later stages did not run
        warnings: Non-fatal per-item events collected during the run
    """
    stages: List[StageOutcome] = field(default_factory=list)
    aborted: bool = False
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    def stage(self, name: str) -> Optional[StageOutcome]:
        for outcome in self.stages:
            if outcome.name == name:
                return outcome
        return None

    @property
    def exit_code(self) -> int:
        """0 unless a fatal stage failed."""
        return 1 if self.aborted else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stages": [outcome.to_dict() for outcome in self.stages],
            "aborted": self.aborted,
            "exit_code": self.exit_code,
            "warnings": self.warnings,
        }


@dataclass
class PipelineClients:
    """Explicit client instances for one run.

    Attributes:
        source: Content source (RedditSource or a test double)
        classifier: Classifier for the analysis stage
        conn: SQLite connection shared by every stage
        ai_client: OpenAIClient used by the extended analysis stage
        owns_connection: close() also closes conn
    """
    source: Any
    classifier: Any
    conn: sqlite3.Connection
    ai_client: Any = None
    owns_connection: bool = True

    async def close(self) -> None:
        try:
            close_source = getattr(self.source, "close", None)
            if close_source is not None:
                await close_source()
        finally:
            if self.owns_connection:
                self.conn.close()


async def build_clients(config: PipelineConfig, conn: Optional[sqlite3.Connection] = None) -> PipelineClients:
    """Build every external client from explicit configuration.

    Args:
        config: Validated pipeline configuration
        conn: Existing connection to reuse (the HTTP app passes its own).
            When None a connection to config.db_path is opened and owned.

    Raises:
        ConfigurationError: Credentials are missing
        SourceUnavailableError: The Reddit client could not be created
    """
    owns_connection = conn is None
    if conn is None:
        conn = open_connection(config.db_path)
    init_schema(conn)

    try:
        reddit = await get_reddit_client(config)
        ai_client = OpenAIClient(
            api_key=config.openai_api_key or "",
            model=config.openai_model,
            timeout=config.request_timeout,
        )
    except Exception:
        if owns_connection:
            conn.close()
        raise

    return PipelineClients(
        source=RedditSource(reddit, request_timeout=config.request_timeout),
        classifier=Classifier(ai_client),
        conn=conn,
        ai_client=ai_client,
        owns_connection=owns_connection,
    )


async def _run_stage(name: str, fn: Callable[[], Awaitable[Dict[str, Any]]]) -> StageOutcome:
    """Run one stage, converting any exception into a failed outcome."""
    outcome = StageOutcome(name=name, started_at=_utc_now())
    logger.info("stage_started", stage=name, started_at=outcome.started_at)

    try:
        outcome.detail = await fn() or {}
        outcome.status = STATUS_SUCCEEDED
    except Exception as e:
        outcome.status = STATUS_FAILED
        outcome.error = f"{type(e).__name__}: {e}"
        log = logger.critical if name == STAGE_AGGREGATE else logger.error
        log(
            "stage_failed",
            stage=name,
            fatal=name in FATAL_STAGES,
            error_type=type(e).__name__,
            error_message=str(e),
            started_at=outcome.started_at,
            exc_info=True
        )
    finally:
        outcome.finished_at = _utc_now()

    if outcome.status == STATUS_SUCCEEDED:
        logger.info("stage_finished", stage=name, finished_at=outcome.finished_at, **outcome.detail)
    return outcome


def _skipped(name: str, reason: str) -> StageOutcome:
    logger.info("stage_skipped", stage=name, reason=reason)
    return StageOutcome(name=name, status=STATUS_SKIPPED, detail={"reason": reason})


async def run_pipeline(
    config: PipelineConfig,
    clients: PipelineClients,
    stop_event: Optional[asyncio.Event] = None,
) -> RunReport:
    """Run seed, collect, analyze, extended and aggregate in order.

    Args:
        config: Pipeline configuration
        clients: Source, classifier and connection for this run
        stop_event: When set, the running stage winds down and the remaining
            stages are skipped

    Returns:
        RunReport with one outcome per stage

    Raises:
        ConfigurationError: config is missing required keys (nothing ran)
    """
    config.validate()
    conn = clients.conn
    report = RunReport()
    warnings = WarningsCollector()

    logger.info(
        "pipeline_started",
        subreddit=config.subreddit,
        extended_analysis=config.extended_analysis,
        analyze_comments=config.analyze_comments,
        force_reanalysis=config.force_reanalysis
    )

    async def seed_stage() -> Dict[str, Any]:
        summary = taxonomy.seed(conn)
        return {
            "root_themes": summary.root_themes,
            "subthemes": summary.subthemes,
            "search_terms": summary.search_terms,
        }

    async def collect_stage() -> Dict[str, Any]:
        scope = collector.scope_from_metadata(conn, config)
        summary = await collector.collect(
            clients.source, conn, scope, config, stop_event=stop_event, warnings=warnings
        )
        return summary.to_dict()

    async def analyze_stage() -> Dict[str, Any]:
        summary = await analyze_unprocessed(
            conn, clients.classifier, config, warnings=warnings, stop_event=stop_event
        )
        return summary.to_dict()

    async def extended_stage() -> Dict[str, Any]:
        summary = await run_extended_analysis(conn, clients.ai_client, config, warnings=warnings)
        return summary.to_dict()

    async def aggregate_stage() -> Dict[str, Any]:
        metrics = aggregation.run_aggregation(conn)
        return {"dimensions": [metric.dimension for metric in metrics]}

    stages = [
        (STAGE_SEED, seed_stage),
        (STAGE_COLLECT, collect_stage),
        (STAGE_ANALYZE, analyze_stage),
        (STAGE_EXTENDED, extended_stage),
        (STAGE_AGGREGATE, aggregate_stage),
    ]

    for name, fn in stages:
        if report.aborted:
            report.stages.append(_skipped(name, "aborted"))
            continue
        if stop_event is not None and stop_event.is_set():
            report.stages.append(_skipped(name, "stopped"))
            continue
        if name == STAGE_SEED and taxonomy.has_reference_data(conn):
            report.stages.append(_skipped(name, "reference_data_present"))
            continue
        if name == STAGE_EXTENDED and not config.extended_analysis:
            report.stages.append(_skipped(name, "disabled"))
            continue

        outcome = await _run_stage(name, fn)
        report.stages.append(outcome)
        if outcome.status == STATUS_FAILED and name in FATAL_STAGES:
            report.aborted = True

    report.warnings = warnings.to_list()
    logger.info(
        "pipeline_finished",
        aborted=report.aborted,
        exit_code=report.exit_code,
        warning_count=warnings.count(),
        warnings_by_type={t: warnings.count(t) for t in sorted(VALID_WARNING_TYPES) if warnings.count(t)},
        stages={outcome.name: outcome.status for outcome in report.stages}
    )
    return report


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    def request_stop(sig: signal.Signals) -> None:
        logger.warning("stop_requested", signal=sig.name)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop, sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug("signal_handler_unavailable", signal=sig.name)


async def _run_async(config: PipelineConfig) -> RunReport:
    stop_event = asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), stop_event)

    clients = await build_clients(config)
    try:
        return await run_pipeline(config, clients, stop_event=stop_event)
    finally:
        await clients.close()


def run(config: PipelineConfig) -> RunReport:
    """Build clients, run the pipeline to completion and close the clients.

    SIGINT/SIGTERM set the stop event: in-flight work finishes, remaining
    stages are skipped.
    """
    return asyncio.run(_run_async(config))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Collect, classify and aggregate subreddit discussion"
    )
    parser.add_argument("--extended-analysis", action="store_true",
                        help="Run competitor/feature/cancellation and product-review analysis")
    parser.add_argument("--force-reanalysis", action="store_true",
                        help="Re-classify items that are already processed")
    parser.add_argument("--analyze-comments", action="store_true",
                        help="Classify comments as well as posts")
    parser.add_argument("--log-dir", default="logs",
                        help="Directory for pipeline.log (default: logs)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    setup_logging(log_dir=args.log_dir)

    config = PipelineConfig.from_env()
    if args.extended_analysis:
        config.extended_analysis = True
    if args.force_reanalysis:
        config.force_reanalysis = True
    if args.analyze_comments:
        config.analyze_comments = True

    try:
        config.validate()
    except ConfigurationError as e:
        logger.error("pipeline_not_started", missing_keys=e.missing_keys)
        return 1

    try:
        report = run(config)
    except PipelineError as e:
        logger.error(
            "pipeline_setup_failed",
            error_type=type(e).__name__,
            error_message=str(e)
        )
        return 1

    return report.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
