"""Content collector.

Fetches posts for a collection scope, upserts them, then materializes each
post's comment tree through a bounded pool of asyncio workers. A worker
handles one tree from fetch to commit before taking the next, so a tree is
either fully linked in the store or not written at all.

The watermark only moves past posts whose tree was written. When a post or
its tree failed, or the run stopped before reaching it, the watermark stays
at that post's creation time so the next run collects it again.
"""

import asyncio
import sqlite3
from typing import List, Optional, Set, Tuple

import structlog

from reddit_pulse import storage
from reddit_pulse.backend.utils.errors import (
    WARNING_TYPE_ITEM_FETCH_FAILED,
    WARNING_TYPE_PERSISTENCE_FAILED,
    ItemFetchError,
    PersistenceError,
    WarningsCollector,
)
from reddit_pulse.config import PipelineConfig
from reddit_pulse.models.reddit_models import CollectionScope, CollectionSummary, ProcessedPost

logger = structlog.get_logger()


def scope_from_metadata(
    conn: sqlite3.Connection,
    config: PipelineConfig,
    use_search_terms: Optional[bool] = None,
) -> CollectionScope:
    """Build the default scope: newest posts since the last collection.

    The first run reads at most post_limit posts. Later runs have no limit
    and read the "new" listing back to the watermark, so a burst of more than
    post_limit posts between runs is still collected in full.

    Args:
        conn: SQLite database connection
        config: Pipeline configuration (subreddit, post_limit, use_search_terms)
        use_search_terms: Only keep posts matching an active search term.
            None uses config.use_search_terms.
    """
    if use_search_terms is None:
        use_search_terms = config.use_search_terms
    metadata = storage.get_collection_metadata(conn)
    since = metadata["last_collection_time"] if metadata else None
    terms = storage.load_search_terms(conn) if use_search_terms else []
    return CollectionScope(
        subreddit=config.subreddit,
        listing="new",
        limit=config.post_limit if since is None else None,
        since=since,
        search_terms=terms,
    )


def next_watermark(
    posts: List[ProcessedPost],
    completed: Set[str],
    since: Optional[int] = None,
) -> Optional[int]:
    """Newest creation time the next run can safely start from.

    Returns the oldest creation time among posts that were not completed, or
    the newest creation time when every post was. Never earlier than since.
    None when there were no posts.
    """
    if not posts:
        return None
    pending = [p.created_utc for p in posts if p.reddit_id not in completed]
    watermark = min(pending) if pending else max(p.created_utc for p in posts)
    if since is not None:
        watermark = max(watermark, since)
    return watermark


async def collect(
    source,
    conn: sqlite3.Connection,
    scope: CollectionScope,
    config: PipelineConfig,
    stop_event: Optional[asyncio.Event] = None,
    warnings: Optional[WarningsCollector] = None,
) -> CollectionSummary:
    """Collect posts and their comment trees into the store.

    Args:
        source: Content source with fetch_top_items(scope) and
            fetch_replies(post_reddit_id, max_depth, max_per_level)
        conn: SQLite database connection
        scope: What to fetch
        config: Pipeline configuration (depth/breadth limits, worker count)
        stop_event: When set, workers finish their current tree and stop
        warnings: Collector for per-item failures

    Returns:
        CollectionSummary with per-run counts

    Raises:
        SourceUnavailableError: Reddit rejected authentication, rate limited
            the client or is down. Remaining work is cancelled and the
            watermark is left unchanged.
    """
    warnings = warnings or WarningsCollector()
    summary = CollectionSummary()

    posts = await source.fetch_top_items(scope)
    summary.posts_fetched = len(posts)

    stored: List[Tuple[ProcessedPost, int]] = []
    for post in posts:
        if stop_event is not None and stop_event.is_set():
            summary.stopped_early = True
            break
        try:
            post_db_id = storage.store_post(conn, post)
        except PersistenceError as e:
            summary.posts_failed += 1
            warnings.append(
                WARNING_TYPE_PERSISTENCE_FAILED,
                f"Failed to store post {post.reddit_id}",
                {"reddit_id": post.reddit_id, "error": str(e)}
            )
            continue
        summary.posts_stored += 1
        stored.append((post, post_db_id))

    queue: asyncio.Queue = asyncio.Queue()
    for item in stored:
        queue.put_nowait(item)
    completed: Set[str] = set()

    async def worker(worker_id: int) -> None:
        while True:
            if stop_event is not None and stop_event.is_set():
                summary.stopped_early = True
                return
            try:
                post, post_db_id = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                comments = await source.fetch_replies(
                    post.reddit_id,
                    config.max_comment_depth,
                    config.max_comments_per_level,
                )
                summary.comments_stored += storage.store_thread(conn, post_db_id, comments)
            except ItemFetchError as e:
                summary.threads_failed += 1
                logger.warning("thread_fetch_failed", reddit_id=post.reddit_id, worker_id=worker_id, error=str(e))
                warnings.append(
                    WARNING_TYPE_ITEM_FETCH_FAILED,
                    f"Failed to fetch replies for {post.reddit_id}",
                    {"reddit_id": post.reddit_id, "error": str(e)}
                )
            except PersistenceError as e:
                summary.threads_failed += 1
                logger.warning("thread_store_failed", reddit_id=post.reddit_id, worker_id=worker_id, error=str(e))
                warnings.append(
                    WARNING_TYPE_PERSISTENCE_FAILED,
                    f"Failed to store replies for {post.reddit_id}",
                    {"reddit_id": post.reddit_id, "error": str(e)}
                )
            else:
                completed.add(post.reddit_id)

    worker_count = max(1, min(config.collect_workers, len(stored) or 1))
    tasks = [asyncio.create_task(worker(i)) for i in range(worker_count)]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.error("collection_aborted", subreddit=scope.subreddit, **summary.to_dict())
        raise

    summary.watermark = next_watermark(posts, completed, scope.since)
    if summary.watermark is not None:
        storage.update_collection_metadata(
            conn,
            last_collection_time=summary.watermark,
            posts_collected=summary.posts_stored,
        )

    logger.info("collection_complete", subreddit=scope.subreddit, **summary.to_dict())
    return summary
