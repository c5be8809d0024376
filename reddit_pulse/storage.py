"""Storage operations for posts, comment trees, analysis results and aggregates.

Every write is an upsert keyed on the entity's natural key, so re-running any
stage converges on the same rows instead of duplicating them.

Key Functions:
    store_post: Upsert one post in its own transaction
    store_thread: Persist one materialized comment tree atomically
    select_pending: Items the analysis stage still has to classify
    upsert_analysis_result / mark_processed: Analysis stage writes
    upsert_aggregate / load_aggregate: Aggregate snapshots
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import structlog

from reddit_pulse.backend.utils.errors import OrphanedCommentError, PersistenceError
from reddit_pulse.models.analysis_models import AggregateMetric, ClassificationResult
from reddit_pulse.models.reddit_models import ProcessedComment, ProcessedPost, media_to_dict

logger = structlog.get_logger()

COLLECTION_METADATA_ID = "reddit-collection"

_CONTENT_TABLES = {
    "post": "reddit_posts",
    "comment": "reddit_comments",
}

# SQLite has a limit of ~999 parameters in a single query
_IN_BATCH_SIZE = 900


def _table_for(content_type: str) -> str:
    try:
        return _CONTENT_TABLES[content_type]
    except KeyError:
        raise ValueError(f"Unknown content_type: {content_type!r}") from None


def upsert_post(conn: sqlite3.Connection, post: ProcessedPost) -> int:
    """Insert or update a post and return its database id.

    Counters, media and metadata are refreshed on conflict. The post is
    flagged unprocessed again only when its title or body changed, so an
    unchanged re-collect keeps its analysis. Does not commit.
    """
    cursor = conn.execute("""
        INSERT INTO reddit_posts (
            reddit_id, subreddit, title, body, author, permalink, url, created_utc,
            score, ups, num_comments, image_urls, media, metadata
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(reddit_id) DO UPDATE SET
            title = excluded.title,
            body = excluded.body,
            score = excluded.score,
            ups = excluded.ups,
            num_comments = excluded.num_comments,
            image_urls = excluded.image_urls,
            media = excluded.media,
            metadata = excluded.metadata,
            processed = CASE
                WHEN reddit_posts.title IS NOT excluded.title OR reddit_posts.body IS NOT excluded.body THEN 0
                ELSE reddit_posts.processed
            END,
            processed_at = CASE
                WHEN reddit_posts.title IS NOT excluded.title OR reddit_posts.body IS NOT excluded.body THEN NULL
                ELSE reddit_posts.processed_at
            END,
            updated_at = datetime('now')
        RETURNING id
    """, (
        post.reddit_id,
        post.subreddit,
        post.title,
        post.body,
        post.author,
        post.permalink,
        post.url,
        post.created_utc,
        post.score,
        post.ups,
        post.num_comments,
        json.dumps(post.image_urls),
        json.dumps([media_to_dict(m) for m in post.media]),
        json.dumps(post.metadata),
    ))
    return cursor.fetchone()[0]


def store_post(conn: sqlite3.Connection, post: ProcessedPost) -> int:
    """Upsert one post in its own transaction.

    Raises:
        PersistenceError: The write failed; the transaction was rolled back.
    """
    try:
        post_db_id = upsert_post(conn, post)
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.warning("failed_to_store_post", reddit_id=post.reddit_id, error=str(e))
        raise PersistenceError(f"Failed to store post {post.reddit_id}: {e}") from e

    logger.debug("stored_post", reddit_id=post.reddit_id, post_id=post_db_id)
    return post_db_id


def upsert_comment(
    conn: sqlite3.Connection,
    comment: ProcessedComment,
    post_db_id: int,
    parent_db_id: Optional[int] = None,
) -> int:
    """Insert or update a comment and return its database id.

    Args:
        conn: SQLite database connection
        comment: Comment to write
        post_db_id: Database id of the owning post
        parent_db_id: Database id of the parent comment. Required whenever
            comment.parent_reddit_id is set.

    Raises:
        OrphanedCommentError: The comment has a parent that was not resolved
            to a persisted row.
    """
    if comment.parent_reddit_id is not None and parent_db_id is None:
        raise OrphanedCommentError(
            f"Comment {comment.reddit_id} references unpersisted parent "
            f"{comment.parent_reddit_id}"
        )

    cursor = conn.execute("""
        INSERT INTO reddit_comments (
            reddit_id, post_id, parent_comment_id, author, body, created_utc, score, depth
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(reddit_id) DO UPDATE SET
            processed = CASE
                WHEN reddit_comments.body IS NOT excluded.body THEN 0
                ELSE reddit_comments.processed
            END,
            processed_at = CASE
                WHEN reddit_comments.body IS NOT excluded.body THEN NULL
                ELSE reddit_comments.processed_at
            END,
            body = excluded.body,
            score = excluded.score,
            updated_at = datetime('now')
        RETURNING id
    """, (
        comment.reddit_id,
        post_db_id,
        parent_db_id,
        comment.author,
        comment.body,
        comment.created_utc,
        comment.score,
        comment.depth,
    ))
    return cursor.fetchone()[0]


def lookup_comment_ids(conn: sqlite3.Connection, reddit_ids: Iterable[str]) -> Dict[str, int]:
    """Map already-persisted comment reddit ids to their database ids.

    Queries in batches of 900 to stay under SQLite's parameter limit.
    """
    reddit_ids = list(dict.fromkeys(reddit_ids))
    found: Dict[str, int] = {}

    for i in range(0, len(reddit_ids), _IN_BATCH_SIZE):
        batch = reddit_ids[i:i + _IN_BATCH_SIZE]
        placeholders = ','.join('?' * len(batch))
        rows = conn.execute(
            f"SELECT reddit_id, id FROM reddit_comments WHERE reddit_id IN ({placeholders})",
            batch,
        ).fetchall()
        found.update({row['reddit_id']: row['id'] for row in rows})

    return found


def store_thread(
    conn: sqlite3.Connection,
    post_db_id: int,
    comments: List[ProcessedComment],
) -> int:
    """Persist one comment tree in a single transaction.

    Comments must arrive parent-before-child. Each parent reference is
    resolved against comments written earlier in this tree, then against
    rows already in the store. If any comment cannot be linked, nothing from
    this tree is kept.

    Args:
        conn: SQLite database connection
        post_db_id: Database id of the owning post
        comments: Materialized tree in parent-before-child order

    Returns:
        Number of comments written

    Raises:
        PersistenceError: The tree could not be written (OrphanedCommentError
            when a parent could not be resolved). The transaction is rolled back.
    """
    if not comments:
        return 0

    id_map: Dict[str, int] = {}
    outside_parents = {
        c.parent_reddit_id for c in comments
        if c.parent_reddit_id is not None
    } - {c.reddit_id for c in comments}

    try:
        if outside_parents:
            id_map.update(lookup_comment_ids(conn, outside_parents))

        for comment in comments:
            parent_db_id = None
            if comment.parent_reddit_id is not None:
                parent_db_id = id_map.get(comment.parent_reddit_id)
            id_map[comment.reddit_id] = upsert_comment(conn, comment, post_db_id, parent_db_id)

        conn.commit()
    except OrphanedCommentError:
        conn.rollback()
        raise
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(f"Failed to store thread for post {post_db_id}: {e}") from e

    logger.debug("stored_thread", post_id=post_db_id, comment_count=len(comments))
    return len(comments)


def select_pending(
    conn: sqlite3.Connection,
    content_type: str,
    limit: Optional[int] = None,
    force: bool = False,
) -> List[sqlite3.Row]:
    """Return items the analysis stage should classify, newest first.

    Args:
        conn: SQLite database connection
        content_type: "post" or "comment"
        limit: Maximum rows to return (None = all)
        force: Include items already marked processed

    Raises:
        PersistenceError: The store could not be read.
    """
    table = _table_for(content_type)
    query = f"SELECT * FROM {table}"
    if not force:
        query += " WHERE processed = 0"
    query += " ORDER BY created_utc DESC, id DESC"
    params: List[Any] = []
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    try:
        return conn.execute(query, params).fetchall()
    except sqlite3.Error as e:
        raise PersistenceError(f"Failed to select pending {content_type}s: {e}") from e


def load_top_comments(conn: sqlite3.Connection, post_db_id: int, limit: int = 5) -> List[sqlite3.Row]:
    """Highest-scoring comments of a post, used as prompt context."""
    return conn.execute("""
        SELECT author, body, score FROM reddit_comments
        WHERE post_id = ?
        ORDER BY score DESC, id ASC
        LIMIT ?
    """, (post_db_id, limit)).fetchall()


def load_theme_index(conn: sqlite3.Connection) -> Dict[str, int]:
    """Map lowercased active theme names to theme ids."""
    rows = conn.execute("SELECT id, name FROM themes WHERE is_active = 1").fetchall()
    return {row['name'].lower(): row['id'] for row in rows}


def load_theme_names(conn: sqlite3.Connection) -> List[str]:
    """Active theme names, highest priority first, for prompt context."""
    rows = conn.execute(
        "SELECT name FROM themes WHERE is_active = 1 ORDER BY priority DESC, name"
    ).fetchall()
    return [row['name'] for row in rows]


def load_post_titles(conn: sqlite3.Connection, post_ids: Iterable[int]) -> Dict[int, str]:
    """Map post database ids to titles, used as context for comments."""
    post_ids = list(dict.fromkeys(post_ids))
    titles: Dict[int, str] = {}

    for i in range(0, len(post_ids), _IN_BATCH_SIZE):
        batch = post_ids[i:i + _IN_BATCH_SIZE]
        placeholders = ','.join('?' * len(batch))
        rows = conn.execute(
            f"SELECT id, title FROM reddit_posts WHERE id IN ({placeholders})",
            batch,
        ).fetchall()
        titles.update({row['id']: row['title'] for row in rows})

    return titles


def load_search_terms(conn: sqlite3.Connection) -> List[str]:
    rows = conn.execute(
        "SELECT term FROM search_terms WHERE is_active = 1 ORDER BY id"
    ).fetchall()
    return [row['term'] for row in rows]


def upsert_analysis_result(
    conn: sqlite3.Connection,
    content_type: str,
    content_id: int,
    result: ClassificationResult,
    theme_index: Optional[Dict[str, int]] = None,
) -> int:
    """Insert or replace the analysis result of one item and link its themes.

    At most one result exists per (content_type, content_id). Re-analysis
    overwrites the classification fields and rewrites the theme links; the
    extended and product-review columns are kept. Does not commit.

    Args:
        conn: SQLite database connection
        content_type: "post" or "comment"
        content_id: Database id of the analyzed item
        result: Validated classification
        theme_index: Lowercased theme name -> theme id. Labels with no match
            stay in the raw themes column but get no link.

    Returns:
        Database id of the analysis result row
    """
    _table_for(content_type)

    cursor = conn.execute("""
        INSERT INTO analysis_results (
            content_type, content_id, summary, sentiment, sentiment_score, confidence,
            tone, themes, keywords, mentions, attributes, is_announcement_related,
            has_image_analysis, image_analysis, model_used, prompt_version
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(content_type, content_id) DO UPDATE SET
            summary = excluded.summary,
            sentiment = excluded.sentiment,
            sentiment_score = excluded.sentiment_score,
            confidence = excluded.confidence,
            tone = excluded.tone,
            themes = excluded.themes,
            keywords = excluded.keywords,
            mentions = excluded.mentions,
            attributes = excluded.attributes,
            is_announcement_related = excluded.is_announcement_related,
            has_image_analysis = excluded.has_image_analysis,
            image_analysis = excluded.image_analysis,
            model_used = excluded.model_used,
            prompt_version = excluded.prompt_version,
            updated_at = datetime('now')
        RETURNING id
    """, (
        content_type,
        content_id,
        result.summary,
        result.sentiment,
        result.sentiment_score,
        result.confidence,
        result.tone,
        json.dumps(result.themes),
        json.dumps(result.keywords),
        json.dumps(result.mentions),
        json.dumps(result.attributes),
        int(result.is_announcement_related),
        int(result.image_analysis is not None),
        result.image_analysis,
        result.model_used,
        result.prompt_version,
    ))
    result_id = cursor.fetchone()[0]

    conn.execute("DELETE FROM analysis_result_themes WHERE analysis_result_id = ?", (result_id,))
    if theme_index:
        theme_ids = {
            theme_index[label.lower()]
            for label in result.themes
            if label.lower() in theme_index
        }
        conn.executemany(
            "INSERT INTO analysis_result_themes (analysis_result_id, theme_id) VALUES (?, ?)",
            [(result_id, theme_id) for theme_id in sorted(theme_ids)],
        )

    return result_id


def mark_processed(conn: sqlite3.Connection, content_type: str, content_id: int) -> None:
    """Set the processed flag of one item. Does not commit."""
    table = _table_for(content_type)
    conn.execute(
        f"UPDATE {table} SET processed = 1, processed_at = datetime('now') WHERE id = ?",
        (content_id,),
    )


def get_collection_metadata(conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        "SELECT * FROM collection_metadata WHERE id = ?", (COLLECTION_METADATA_ID,)
    ).fetchone()
    return dict(row) if row else None


def update_collection_metadata(
    conn: sqlite3.Connection,
    last_collection_time: int,
    posts_collected: int,
) -> None:
    """Record the collector watermark and commit.

    posts_collected accumulates across runs.
    """
    conn.execute("""
        INSERT INTO collection_metadata (id, last_collection_time, posts_collected, last_updated)
        VALUES (?, ?, ?, datetime('now'))
        ON CONFLICT(id) DO UPDATE SET
            last_collection_time = MAX(COALESCE(collection_metadata.last_collection_time, 0),
                                       excluded.last_collection_time),
            posts_collected = collection_metadata.posts_collected + excluded.posts_collected,
            last_updated = excluded.last_updated
    """, (COLLECTION_METADATA_ID, last_collection_time, posts_collected))
    conn.commit()


def upsert_aggregate(conn: sqlite3.Connection, metric: AggregateMetric) -> None:
    """Replace the stored snapshot for one dimension and commit."""
    try:
        conn.execute("""
            INSERT INTO aggregate_metrics (dimension, payload, computed_at)
            VALUES (?, ?, ?)
            ON CONFLICT(dimension) DO UPDATE SET
                payload = excluded.payload,
                computed_at = excluded.computed_at
        """, (metric.dimension, json.dumps(metric.payload), metric.computed_at))
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(f"Failed to store aggregate {metric.dimension}: {e}") from e


def load_aggregate(conn: sqlite3.Connection, dimension: str) -> Optional[AggregateMetric]:
    """Return the stored snapshot for a dimension, or None if never computed."""
    row = conn.execute(
        "SELECT dimension, payload, computed_at FROM aggregate_metrics WHERE dimension = ?",
        (dimension,),
    ).fetchone()
    if row is None:
        return None
    return AggregateMetric(
        dimension=row['dimension'],
        payload=json.loads(row['payload']),
        computed_at=row['computed_at'],
    )


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
