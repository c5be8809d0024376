"""
Shared pytest fixtures.

These fixtures provide temporary databases with the real schema, a valid
pipeline configuration, and factories for posts, comments and classifications.
"""

import os
import sqlite3
import tempfile
from pathlib import Path

import pytest

_DB_DIR = Path(__file__).parent.parent / "reddit_pulse" / "backend" / "db"
SCHEMA_SQL_PATH = _DB_DIR / "schema.sql"


def _load_schema(conn):
    """Execute schema.sql on an open connection, handling PRAGMAs separately."""
    sql = SCHEMA_SQL_PATH.read_text()
    lines = [line for line in sql.splitlines()
             if not line.strip().upper().startswith("PRAGMA")]
    conn.executescript("\n".join(lines))
    # executescript resets per-connection PRAGMAs
    conn.execute("PRAGMA foreign_keys = ON")


@pytest.fixture
def temp_db_path():
    """Provide a temporary database file path that is cleaned up after test."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    yield db_path

    for suffix in ['', '-wal', '-shm']:
        path = db_path + suffix
        if os.path.exists(path):
            os.unlink(path)


@pytest.fixture
def schema_initialized_db(temp_db_path):
    """Provide a connection to a temporary database with schema.sql applied."""
    conn = sqlite3.connect(temp_db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    _load_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def seeded_db(schema_initialized_db):
    """Schema plus the default themes and search terms."""
    from reddit_pulse import taxonomy

    taxonomy.seed(schema_initialized_db)
    return schema_initialized_db


@pytest.fixture
def pipeline_config(temp_db_path):
    """A configuration that passes validate()."""
    from reddit_pulse.config import PipelineConfig

    return PipelineConfig(
        reddit_client_id="client-id",
        reddit_client_secret="client-secret",
        reddit_refresh_token="refresh-token",
        openai_api_key="sk-test",
        db_path=temp_db_path,
        collect_workers=2,
        analyze_workers=2,
        invalid_keys=[],
    )


@pytest.fixture
def make_post():
    """Factory for ProcessedPost objects."""
    from reddit_pulse.models.reddit_models import ProcessedPost

    def _make(reddit_id="p1", created_utc=1_700_000_000, **overrides):
        values = dict(
            reddit_id=reddit_id,
            subreddit="whoop",
            title=f"Post {reddit_id}",
            body="Battery life on the new band is great",
            author="athlete",
            created_utc=created_utc,
            permalink=f"/r/whoop/comments/{reddit_id}/",
            url=f"https://www.reddit.com/r/whoop/comments/{reddit_id}/",
            score=10,
            ups=10,
            num_comments=2,
        )
        values.update(overrides)
        return ProcessedPost(**values)

    return _make


@pytest.fixture
def make_comment():
    """Factory for ProcessedComment objects."""
    from reddit_pulse.models.reddit_models import ProcessedComment

    def _make(reddit_id, post_reddit_id="p1", parent_reddit_id=None, depth=0, score=1, body=None):
        return ProcessedComment(
            reddit_id=reddit_id,
            post_reddit_id=post_reddit_id,
            parent_reddit_id=parent_reddit_id,
            author=f"user_{reddit_id}",
            body=body or f"Comment {reddit_id}",
            score=score,
            depth=depth,
            created_utc=1_700_000_100,
        )

    return _make


@pytest.fixture
def make_result():
    """Factory for ClassificationResult objects."""
    from reddit_pulse.models.analysis_models import ClassificationResult

    def _make(sentiment="positive", **overrides):
        values = dict(
            sentiment=sentiment,
            sentiment_score=0.6,
            confidence=0.9,
            summary="User likes the battery life",
            themes=["Battery Life"],
            keywords=["battery"],
            mentions=["WHOOP 5.0"],
            model_used="gpt-4o-mini",
            prompt_version="1.0",
        )
        values.update(overrides)
        return ClassificationResult(**values)

    return _make
