"""
Tests for the pipeline orchestrator.

Behavioral tests for stage ordering and failure policy: seed and collect are
fatal, analyze, extended and aggregate are tolerated, and the exit code is
non-zero only when a fatal stage failed.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from reddit_pulse import taxonomy
from reddit_pulse.ai_batch import Classifier
from reddit_pulse.backend.utils.errors import (
    ConfigurationError,
    ItemFetchError,
    PersistenceError,
    SourceUnavailableError,
)
from reddit_pulse.pipeline import (
    STAGE_ORDER,
    PipelineClients,
    RunReport,
    StageOutcome,
    main,
    run_pipeline,
)


def _classification_client():
    client = MagicMock()
    client.model = "gpt-4o-mini"
    client.send_chat_completion = AsyncMock(return_value={
        "content": json.dumps({
            "sentiment": "positive",
            "confidence": 0.9,
            "themes": ["Battery Life"],
            "mentions": ["WHOOP 5.0"],
        }),
        "usage": {},
    })
    return client


@pytest.fixture
def make_clients(schema_initialized_db, make_post):
    def _make(source=None, ai_client=None):
        if source is None:
            source = MagicMock()
            source.fetch_top_items = AsyncMock(return_value=[make_post("p1")])
            source.fetch_replies = AsyncMock(return_value=[])
        ai_client = ai_client or _classification_client()
        return PipelineClients(
            source=source,
            classifier=Classifier(ai_client),
            conn=schema_initialized_db,
            ai_client=ai_client,
            owns_connection=False,
        )
    return _make


def _statuses(report):
    return {outcome.name: outcome.status for outcome in report.stages}


class TestRunPipeline:
    """Test run_pipeline() stage sequencing."""

    @pytest.mark.asyncio
    async def test_full_run_on_empty_store(self, pipeline_config, make_clients, schema_initialized_db):
        report = await run_pipeline(pipeline_config, make_clients())

        assert [outcome.name for outcome in report.stages] == list(STAGE_ORDER)
        assert _statuses(report) == {
            "seed": "succeeded",
            "collect": "succeeded",
            "analyze": "succeeded",
            "extended": "skipped",
            "aggregate": "succeeded",
        }
        assert report.stage("extended").detail == {"reason": "disabled"}
        assert report.stage("analyze").detail["succeeded"] == 1
        assert report.exit_code == 0
        assert taxonomy.has_reference_data(schema_initialized_db)

    @pytest.mark.asyncio
    async def test_seed_skipped_when_reference_data_present(self, pipeline_config, make_clients, schema_initialized_db):
        taxonomy.seed(schema_initialized_db)

        report = await run_pipeline(pipeline_config, make_clients())

        assert report.stage("seed").status == "skipped"
        assert report.stage("seed").detail == {"reason": "reference_data_present"}

    @pytest.mark.asyncio
    async def test_collect_failure_is_fatal(self, pipeline_config, make_clients):
        source = MagicMock()
        source.fetch_top_items = AsyncMock(side_effect=SourceUnavailableError("Reddit API unavailable"))

        report = await run_pipeline(pipeline_config, make_clients(source=source))

        assert report.aborted is True
        assert report.exit_code == 1
        assert report.stage("collect").status == "failed"
        assert report.stage("collect").error == "SourceUnavailableError: Reddit API unavailable"
        for name in ("analyze", "extended", "aggregate"):
            assert report.stage(name).status == "skipped"
            assert report.stage(name).detail == {"reason": "aborted"}

    @pytest.mark.asyncio
    async def test_seed_failure_is_fatal(self, pipeline_config, make_clients):
        with patch('reddit_pulse.taxonomy.seed', side_effect=PersistenceError("disk full")):
            report = await run_pipeline(pipeline_config, make_clients())

        assert report.stage("seed").status == "failed"
        assert report.stage("collect").detail == {"reason": "aborted"}
        assert report.exit_code == 1

    @pytest.mark.asyncio
    async def test_analyze_failure_tolerated(self, pipeline_config, make_clients):
        with patch('reddit_pulse.pipeline.analyze_unprocessed',
                   new_callable=AsyncMock, side_effect=PersistenceError("locked")):
            report = await run_pipeline(pipeline_config, make_clients())

        assert report.stage("analyze").status == "failed"
        assert report.stage("aggregate").status == "succeeded"
        assert report.exit_code == 0

    @pytest.mark.asyncio
    async def test_aggregate_failure_tolerated_and_critical(self, pipeline_config, make_clients):
        with patch('reddit_pulse.aggregation.run_aggregation', side_effect=PersistenceError("locked")), \
                patch('reddit_pulse.pipeline.logger') as mock_logger:
            report = await run_pipeline(pipeline_config, make_clients())

        assert report.stage("aggregate").status == "failed"
        assert report.exit_code == 0
        assert mock_logger.critical.call_args[0][0] == "stage_failed"
        assert mock_logger.critical.call_args[1]["stage"] == "aggregate"

    @pytest.mark.asyncio
    async def test_extended_runs_when_enabled(self, pipeline_config, make_clients, schema_initialized_db):
        pipeline_config.extended_analysis = True

        report = await run_pipeline(pipeline_config, make_clients())

        assert report.stage("extended").status == "succeeded"
        assert report.stage("extended").detail["selected"] == 2
        marker = schema_initialized_db.execute(
            "SELECT extended_analysis_at FROM analysis_results"
        ).fetchone()[0]
        assert marker is not None

    @pytest.mark.asyncio
    async def test_item_failures_become_warnings(self, pipeline_config, make_clients, make_post):
        source = MagicMock()
        source.fetch_top_items = AsyncMock(return_value=[make_post("p1")])
        source.fetch_replies = AsyncMock(side_effect=ItemFetchError("timed out"))

        report = await run_pipeline(pipeline_config, make_clients(source=source))

        assert report.exit_code == 0
        assert [w["type"] for w in report.warnings] == ["item_fetch_failed"]

    @pytest.mark.asyncio
    async def test_finished_log_counts_warnings_by_type(self, pipeline_config, make_clients, make_post):
        source = MagicMock()
        source.fetch_top_items = AsyncMock(return_value=[make_post("p1"), make_post("p2")])
        source.fetch_replies = AsyncMock(side_effect=ItemFetchError("timed out"))

        with patch('reddit_pulse.pipeline.logger') as mock_logger:
            await run_pipeline(pipeline_config, make_clients(source=source))

        finished = [c for c in mock_logger.info.call_args_list if c[0][0] == "pipeline_finished"]
        assert finished[0][1]["warning_count"] == 2
        assert finished[0][1]["warnings_by_type"] == {"item_fetch_failed": 2}

    @pytest.mark.asyncio
    async def test_stop_event_skips_remaining_stages(self, pipeline_config, make_clients):
        stop_event = asyncio.Event()
        stop_event.set()

        report = await run_pipeline(pipeline_config, make_clients(), stop_event=stop_event)

        assert all(outcome.detail == {"reason": "stopped"} for outcome in report.stages)
        assert report.exit_code == 0

    @pytest.mark.asyncio
    async def test_invalid_config_runs_nothing(self, pipeline_config, make_clients):
        pipeline_config.openai_api_key = None
        clients = make_clients()

        with pytest.raises(ConfigurationError):
            await run_pipeline(pipeline_config, clients)

        clients.source.fetch_top_items.assert_not_awaited()


class TestRunReport:
    """Test RunReport serialization."""

    def test_to_dict(self):
        report = RunReport(stages=[StageOutcome(name="seed", status="failed", error="X: y")], aborted=True)

        data = report.to_dict()

        assert data["exit_code"] == 1
        assert data["stages"][0]["error"] == "X: y"
        assert data["warnings"] == []


class TestMain:
    """Test the CLI entry point."""

    def test_missing_configuration_exits_1(self):
        from reddit_pulse.config import PipelineConfig

        with patch('reddit_pulse.pipeline.setup_logging'), \
                patch('reddit_pulse.pipeline.PipelineConfig.from_env', return_value=PipelineConfig()), \
                patch('reddit_pulse.pipeline.run') as mock_run:
            assert main([]) == 1

        mock_run.assert_not_called()

    def test_flags_applied_and_exit_code_returned(self, pipeline_config):
        with patch('reddit_pulse.pipeline.setup_logging'), \
                patch('reddit_pulse.pipeline.PipelineConfig.from_env', return_value=pipeline_config), \
                patch('reddit_pulse.pipeline.run', return_value=RunReport(aborted=True)) as mock_run:
            code = main(["--extended-analysis", "--analyze-comments"])

        config = mock_run.call_args[0][0]
        assert code == 1
        assert config.extended_analysis is True
        assert config.analyze_comments is True
        assert config.force_reanalysis is False

    def test_setup_failure_exits_1(self, pipeline_config):
        with patch('reddit_pulse.pipeline.setup_logging'), \
                patch('reddit_pulse.pipeline.PipelineConfig.from_env', return_value=pipeline_config), \
                patch('reddit_pulse.pipeline.run', side_effect=SourceUnavailableError("auth")):
            assert main([]) == 1
