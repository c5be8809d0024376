"""
Tests for pipeline configuration.

Behavioral tests verifying settings are read from the environment, that
validation names every missing key at once, and that bad integers are reported
rather than silently accepted.
"""

import os
from unittest.mock import patch

import pytest

from reddit_pulse.backend.utils.errors import ConfigurationError
from reddit_pulse.config import PipelineConfig, load_dotenv


FULL_ENV = {
    "REDDIT_CLIENT_ID": "client-id",
    "REDDIT_CLIENT_SECRET": "client-secret",
    "REDDIT_REFRESH_TOKEN": "refresh-token",
    "OPENAI_API_KEY": "sk-test",
    "DB_PATH": "/tmp/reddit_pulse_test.db",
}


class TestFromEnv:
    """Test PipelineConfig.from_env()."""

    def test_reads_required_settings(self):
        config = PipelineConfig.from_env(FULL_ENV)

        assert config.reddit_client_id == "client-id"
        assert config.openai_api_key == "sk-test"
        assert config.db_path == "/tmp/reddit_pulse_test.db"
        assert config.missing_keys() == []

    def test_defaults(self):
        config = PipelineConfig.from_env(FULL_ENV)

        assert config.subreddit == "whoop"
        assert config.openai_model == "gpt-4o-mini"
        assert config.extended_analysis is False
        assert config.analyze_comments is False
        assert config.use_search_terms is False
        assert config.max_comment_depth == 2
        assert config.analyze_workers == 5

    def test_boolean_flags(self):
        env = dict(FULL_ENV, EXTENDED_ANALYSIS="true", ANALYZE_COMMENTS="1", FORCE_REANALYSIS="no",
                   USE_SEARCH_TERMS="on")
        config = PipelineConfig.from_env(env)

        assert config.extended_analysis is True
        assert config.analyze_comments is True
        assert config.force_reanalysis is False
        assert config.use_search_terms is True

    def test_blank_values_count_as_missing(self):
        env = dict(FULL_ENV, OPENAI_API_KEY="   ")
        config = PipelineConfig.from_env(env)

        assert config.openai_api_key is None
        assert config.missing_keys() == ["OPENAI_API_KEY"]

    def test_integer_settings(self):
        env = dict(FULL_ENV, POST_LIMIT="25", MAX_COMMENT_DEPTH="4")
        config = PipelineConfig.from_env(env)

        assert config.post_limit == 25
        assert config.max_comment_depth == 4

    def test_invalid_integers_reported(self):
        """Non-numeric and non-positive values fall back to the default but fail validation."""
        env = dict(FULL_ENV, POST_LIMIT="lots", ANALYZE_WORKERS="0")
        config = PipelineConfig.from_env(env)

        assert config.post_limit == 100
        assert config.analyze_workers == 5
        assert config.invalid_keys == ["POST_LIMIT", "ANALYZE_WORKERS"]
        with pytest.raises(ConfigurationError):
            config.validate()


class TestValidate:
    """Test PipelineConfig.validate()."""

    def test_valid_config_returns_self(self):
        config = PipelineConfig.from_env(FULL_ENV)
        assert config.validate() is config

    def test_names_every_missing_key(self):
        config = PipelineConfig.from_env({})

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()

        assert exc_info.value.missing_keys == [
            "REDDIT_CLIENT_ID",
            "REDDIT_CLIENT_SECRET",
            "REDDIT_REFRESH_TOKEN",
            "OPENAI_API_KEY",
            "DB_PATH",
        ]

    def test_password_flow_replaces_refresh_token(self):
        env = {k: v for k, v in FULL_ENV.items() if k != "REDDIT_REFRESH_TOKEN"}
        env.update(REDDIT_USERNAME="bot", REDDIT_PASSWORD="hunter2")

        config = PipelineConfig.from_env(env)

        assert config.missing_keys() == []

    def test_username_without_password_is_not_enough(self):
        env = {k: v for k, v in FULL_ENV.items() if k != "REDDIT_REFRESH_TOKEN"}
        env.update(REDDIT_USERNAME="bot")

        assert PipelineConfig.from_env(env).missing_keys() == ["REDDIT_REFRESH_TOKEN"]


class TestLoadDotenv:
    """Test .env loading."""

    def test_does_not_override_existing_variables(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# comment line\n"
            "SUBREDDIT=\"fitness\"\n"
            "OPENAI_MODEL=gpt-4o\n"
        )

        with patch.dict(os.environ, {"OPENAI_MODEL": "gpt-4o-mini"}, clear=True):
            load_dotenv(str(env_file))

            assert os.environ["SUBREDDIT"] == "fitness"
            assert os.environ["OPENAI_MODEL"] == "gpt-4o-mini"

    def test_missing_file_is_ignored(self, tmp_path):
        with patch.dict(os.environ, {}, clear=True):
            load_dotenv(str(tmp_path / "missing.env"))
            assert dict(os.environ) == {}
