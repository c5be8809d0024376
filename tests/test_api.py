"""
Tests for the HTTP API.

Behavioral tests for the cron triggers (secret check, run report, failure
mapping) and the aggregate read endpoints (NO_DATA vs real snapshots), plus
the standard response and error envelopes.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from reddit_pulse.pipeline import PipelineClients, RunReport, StageOutcome

CRON_SECRET = "s3cret"


@pytest.fixture
def test_client(temp_db_path, tmp_path, monkeypatch):
    """TestClient with lifespan running against a temporary database."""
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("DB_PATH", temp_db_path)
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("REDDIT_CLIENT_ID", "client-id")
    monkeypatch.setenv("REDDIT_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("REDDIT_REFRESH_TOKEN", "refresh-token")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.chdir(tmp_path)

    from reddit_pulse.api.app import app

    with TestClient(app) as client:
        yield client


def _fake_build_clients(make_post):
    source = MagicMock()
    source.fetch_top_items = AsyncMock(return_value=[make_post("p1")])
    source.fetch_replies = AsyncMock(return_value=[])
    source.close = AsyncMock()
    ai_client = MagicMock()
    ai_client.model = "gpt-4o-mini"
    ai_client.send_chat_completion = AsyncMock(return_value={
        "content": json.dumps({"sentiment": "neutral", "themes": [], "mentions": ["WHOOP MG"]}),
        "usage": {},
    })

    async def build(config, conn=None):
        from reddit_pulse.ai_batch import Classifier

        return PipelineClients(source, Classifier(ai_client), conn, ai_client, owns_connection=False)

    return build


class TestHealth:
    """Verify the health endpoint."""

    def test_health(self, test_client):
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestMetricsEndpoints:
    """Verify /metrics endpoints."""

    def test_list_before_any_run(self, test_client):
        response = test_client.get("/metrics")

        assert response.status_code == 200
        body = response.json()
        assert body["data"] == [
            {"dimension": "product", "computed_at": None},
            {"dimension": "overview", "computed_at": None},
        ]
        assert body["meta"]["total"] == 2

    def test_never_computed_is_no_data(self, test_client):
        response = test_client.get("/metrics/product")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NO_DATA"

    def test_unknown_dimension_is_not_found(self, test_client):
        response = test_client.get("/metrics/competitor")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_unknown_route_is_not_found(self, test_client):
        response = test_client.get("/nothing/here")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_computed_snapshot_returned(self, test_client):
        response = test_client.post(f"/cron/metrics?secret={CRON_SECRET}")
        assert response.status_code == 200

        response = test_client.get("/metrics/overview")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["dimension"] == "overview"
        assert data["computed_at"]
        assert data["payload"]["total_posts"] == 0
        assert data["payload"]["sentiment_percentages"] == {
            "positive": 0.0, "neutral": 0.0, "negative": 0.0,
        }


class TestCronSecret:
    """Verify cron endpoints require the secret."""

    @pytest.mark.parametrize("path", ["/cron/run", "/cron/metrics"])
    def test_missing_secret(self, test_client, path):
        response = test_client.post(path)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_wrong_secret(self, test_client):
        response = test_client.post("/cron/metrics?secret=guess")
        assert response.status_code == 401

    def test_no_configured_secret_rejects_everything(self, test_client):
        test_client.app.state.config.cron_secret = None

        response = test_client.post("/cron/metrics?secret=anything")

        assert response.status_code == 401


class TestCronRun:
    """Verify POST /cron/run."""

    def test_run_returns_report(self, test_client, make_post):
        with patch('reddit_pulse.api.routes.runs.build_clients', side_effect=_fake_build_clients(make_post)):
            response = test_client.post(f"/cron/run?secret={CRON_SECRET}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["exit_code"] == 0
        assert [s["name"] for s in data["stages"]] == ["seed", "collect", "analyze", "extended", "aggregate"]
        assert data["stages"][3]["detail"] == {"reason": "disabled"}

        product = test_client.get("/metrics/product").json()["data"]["payload"]
        assert product["variants"]["WHOOP MG"]["mentions"] == 1

    def test_extended_flag(self, test_client, make_post):
        with patch('reddit_pulse.api.routes.runs.build_clients', side_effect=_fake_build_clients(make_post)):
            response = test_client.post(f"/cron/run?secret={CRON_SECRET}&extended=true")

        extended = response.json()["data"]["stages"][3]
        assert extended["status"] == "succeeded"
        assert test_client.app.state.config.extended_analysis is False

    def test_aborted_run_is_pipeline_error(self, test_client):
        report = RunReport(
            stages=[StageOutcome(name="collect", status="failed", error="SourceUnavailableError: 503")],
            aborted=True,
        )
        clients = MagicMock()
        clients.close = AsyncMock()

        with patch('reddit_pulse.api.routes.runs.build_clients', new_callable=AsyncMock, return_value=clients), \
                patch('reddit_pulse.api.routes.runs.run_pipeline', new_callable=AsyncMock, return_value=report):
            response = test_client.post(f"/cron/run?secret={CRON_SECRET}")

        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "PIPELINE_ERROR"
        assert "SourceUnavailableError: 503" in error["message"]
        clients.close.assert_awaited_once()

    def test_setup_failure_is_pipeline_error(self, test_client):
        from reddit_pulse.backend.utils.errors import SourceUnavailableError

        with patch('reddit_pulse.api.routes.runs.build_clients',
                   new_callable=AsyncMock, side_effect=SourceUnavailableError("bad credentials")):
            response = test_client.post(f"/cron/run?secret={CRON_SECRET}")

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "PIPELINE_ERROR"

    def test_missing_configuration(self, test_client):
        test_client.app.state.config.openai_api_key = None

        response = test_client.post(f"/cron/run?secret={CRON_SECRET}")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "CONFIGURATION_ERROR"
        assert "OPENAI_API_KEY" in error["message"]

    def test_concurrent_run_rejected(self, test_client):
        lock = MagicMock()
        lock.locked.return_value = True
        test_client.app.state.run_lock = lock

        response = test_client.post(f"/cron/run?secret={CRON_SECRET}")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "RUN_IN_PROGRESS"
