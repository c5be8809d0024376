"""Batch processing and transaction management for the analysis stage.

This module classifies unprocessed posts (and optionally comments), including:
- Concurrent batch processing with ThreadPoolExecutor
- Retry logic for malformed responses and rate limits
- Main-thread commits: the result row is committed before the processed flag

Key Functions:
    Classifier.classify: One inference call, parsed into a ClassificationResult
    classify_with_retry: Retry handler for individual items
    process_single_batch: ThreadPoolExecutor coordinator
    commit_analysis_result: Result upsert, then processed flag, each committed
    analyze_unprocessed: Main orchestrator
"""

import asyncio
import concurrent.futures
import json
import sqlite3
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from openai import APITimeoutError, RateLimitError

from reddit_pulse import storage
from reddit_pulse.ai_parser import MalformedResponseError, parse_ai_response
from reddit_pulse.backend.utils.errors import (
    WARNING_TYPE_INFERENCE_FAILED,
    WARNING_TYPE_PERSISTENCE_FAILED,
    InferenceError,
    PersistenceError,
    WarningsCollector,
    calculate_backoff_delay,
)
from reddit_pulse.config import PipelineConfig
from reddit_pulse.models.analysis_models import AnalysisSummary, ClassificationResult
from reddit_pulse.models.reddit_models import media_from_dict
from reddit_pulse.prompts import (
    MAX_IMAGES_PER_REQUEST,
    PROMPT_VERSION,
    SYSTEM_PROMPT,
    TOP_COMMENTS_IN_PROMPT,
    build_user_prompt,
)

logger = structlog.get_logger()

# Malformed JSON: max 1 retry (2 total attempts)
MAX_MALFORMED_RETRIES = 1
# Rate limit: max 3 retries (4 total attempts)
MAX_RATE_LIMIT_RETRIES = 3


class Classifier:
    """Inference capability: classify one item's text and images.

    Args:
        client: OpenAIClient (or any object with send_chat_completion and model)
        system_prompt: System message sent with every request
    """

    def __init__(self, client: Any, system_prompt: str = SYSTEM_PROMPT):
        self.client = client
        self.system_prompt = system_prompt

    @property
    def model(self) -> Optional[str]:
        return getattr(self.client, "model", None)

    async def classify(self, text: str, image_urls: Sequence[str] = ()) -> ClassificationResult:
        """Send one classification request and parse the response.

        Raises:
            MalformedResponseError: Response was not a JSON object
            ValueError: Response JSON failed validation
            openai.OpenAIError: Transport or API failure
        """
        response = await self.client.send_chat_completion(
            self.system_prompt,
            text,
            image_urls=list(image_urls[:MAX_IMAGES_PER_REQUEST]) or None,
        )
        return parse_ai_response(
            response.get('content', ''),
            model_used=self.model,
            prompt_version=PROMPT_VERSION,
        )


async def classify_with_retry(unit: Dict[str, Any], classifier: Classifier) -> ClassificationResult:
    """Classify a single item with retry logic for malformed JSON and rate limits.

    Retry behaviors:
    - Malformed JSON (MalformedResponseError): Retry once with identical prompt
    - Rate limit (RateLimitError): Retry up to 3 times with exponential backoff [1s, 2s, 4s]
    - Anything else (timeout, validation failure, API error): no retry

    Args:
        unit: Work unit dict with content_type, content_id, reddit_id, prompt, image_urls
        classifier: Classifier instance

    Returns:
        Validated ClassificationResult

    Raises:
        InferenceError: The item could not be classified; it stays unprocessed
    """
    reddit_id = unit.get('reddit_id', 'unknown')
    malformed_attempt = 0
    rate_limit_attempt = 0

    while True:
        try:
            return await classifier.classify(unit['prompt'], unit.get('image_urls') or ())

        except MalformedResponseError as e:
            if malformed_attempt < MAX_MALFORMED_RETRIES:
                malformed_attempt += 1
                logger.info(
                    "malformed_json_retry",
                    retry_attempt=malformed_attempt,
                    reddit_id=reddit_id,
                    error_type="malformed_json"
                )
                # No backoff delay for malformed JSON (retry immediately)
                continue
            logger.warning("item_skipped_malformed_json", reddit_id=reddit_id, error_message=str(e))
            raise InferenceError(f"Malformed response for {reddit_id}: {e}") from e

        except RateLimitError as e:
            if rate_limit_attempt < MAX_RATE_LIMIT_RETRIES:
                delay = calculate_backoff_delay(rate_limit_attempt)
                rate_limit_attempt += 1
                logger.info(
                    "rate_limit_retry",
                    retry_attempt=rate_limit_attempt,
                    reddit_id=reddit_id,
                    error_type="rate_limit",
                    backoff_delay=delay
                )
                await asyncio.sleep(delay)
                continue
            logger.warning(
                "item_skipped_rate_limit",
                reddit_id=reddit_id,
                max_retries=MAX_RATE_LIMIT_RETRIES
            )
            raise InferenceError(f"Rate limited while classifying {reddit_id}") from e

        except APITimeoutError as e:
            logger.warning("item_skipped_timeout", reddit_id=reddit_id)
            raise InferenceError(f"Timed out classifying {reddit_id}") from e

        except Exception as e:
            logger.warning(
                "item_skipped_other_error",
                reddit_id=reddit_id,
                error_type=type(e).__name__,
                error_message=str(e)
            )
            raise InferenceError(f"Failed to classify {reddit_id}: {e}") from e


def process_single_batch(
    units: List[Dict[str, Any]],
    classifier: Classifier,
    max_workers: int = 5,
) -> Tuple[List[Tuple[Dict[str, Any], ClassificationResult]], List[Tuple[Dict[str, Any], Exception]]]:
    """Classify a batch of items concurrently using ThreadPoolExecutor.

    Each item is sent by a separate worker thread (1 item per API call). If a
    worker fails after retries, the remaining workers continue normally and the
    failure is returned with its unit for attribution. Nothing is written here.

    Args:
        units: Work units for this batch
        classifier: Classifier instance shared by the workers
        max_workers: Thread pool size

    Returns:
        (successes, failures) where successes are (unit, result) pairs and
        failures are (unit, exception) pairs
    """
    successes = []
    failures = []

    def process_single_unit(unit: Dict[str, Any]) -> ClassificationResult:
        """Synchronous wrapper for classifying one item (runs in thread pool)."""
        # Create a new event loop for this thread
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(classify_with_retry(unit, classifier))
        finally:
            loop.close()

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_unit = {
            executor.submit(process_single_unit, unit): unit
            for unit in units
        }

        for future in concurrent.futures.as_completed(future_to_unit):
            unit = future_to_unit[future]
            try:
                successes.append((unit, future.result()))
            except Exception as e:
                structlog.get_logger().error(
                    "ai_worker_failed",
                    reddit_id=unit.get('reddit_id', 'unknown'),
                    content_type=unit['content_type'],
                    error_type=type(e).__name__,
                    error_message=str(e)
                )
                failures.append((unit, e))

    return successes, failures


def commit_analysis_result(
    conn: sqlite3.Connection,
    unit: Dict[str, Any],
    result: ClassificationResult,
    theme_index: Optional[Dict[str, int]] = None,
) -> None:
    """Persist one classification, then flag the item processed.

    Two transactions: the result row (with its theme links) is committed
    first, the processed flag second. A crash between them leaves a stored
    result on an unprocessed item, which the next run overwrites.

    Raises:
        PersistenceError: Either write failed; the open transaction was rolled back
    """
    content_type = unit['content_type']
    content_id = unit['content_id']

    try:
        storage.upsert_analysis_result(conn, content_type, content_id, result, theme_index)
        conn.commit()
        storage.mark_processed(conn, content_type, content_id)
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.error(
            "analysis_result_rollback",
            content_type=content_type,
            content_id=content_id,
            reddit_id=unit.get('reddit_id'),
            error_type=type(e).__name__,
            error_message=str(e)
        )
        raise PersistenceError(f"Failed to store analysis for {content_type} {content_id}: {e}") from e


def _post_unit(conn: sqlite3.Connection, row: sqlite3.Row, theme_names: List[str]) -> Dict[str, Any]:
    media = [media_from_dict(m) for m in json.loads(row['media'] or '[]')]
    image_urls = [m.url for m in media][:MAX_IMAGES_PER_REQUEST]
    top_comments = storage.load_top_comments(conn, row['id'], TOP_COMMENTS_IN_PROMPT)
    return {
        'content_type': 'post',
        'content_id': row['id'],
        'reddit_id': row['reddit_id'],
        'image_urls': image_urls,
        'prompt': build_user_prompt(
            title=row['title'],
            body=row['body'],
            top_comments=top_comments,
            theme_names=theme_names,
            image_count=len(image_urls),
        ),
    }


def _comment_unit(row: sqlite3.Row, theme_names: List[str], post_titles: Dict[int, str]) -> Dict[str, Any]:
    return {
        'content_type': 'comment',
        'content_id': row['id'],
        'reddit_id': row['reddit_id'],
        'image_urls': [],
        'prompt': build_user_prompt(
            title="",
            body=row['body'],
            theme_names=theme_names,
            post_title=post_titles.get(row['post_id']),
        ),
    }


def build_work_units(conn: sqlite3.Connection, config: PipelineConfig) -> List[Dict[str, Any]]:
    """Select pending items and build their prompts, posts before comments.

    Raises:
        PersistenceError: The store could not be read
    """
    try:
        theme_names = storage.load_theme_names(conn)
        posts = storage.select_pending(
            conn, 'post', limit=config.analyze_batch_limit, force=config.force_reanalysis
        )
        units = [_post_unit(conn, row, theme_names) for row in posts]

        if config.analyze_comments:
            comments = storage.select_pending(
                conn, 'comment', limit=config.analyze_batch_limit, force=config.force_reanalysis
            )
            post_titles = storage.load_post_titles(conn, [row['post_id'] for row in comments])
            units.extend(_comment_unit(row, theme_names, post_titles) for row in comments)
    except sqlite3.Error as e:
        raise PersistenceError(f"Failed to load items for analysis: {e}") from e

    return units


async def analyze_unprocessed(
    conn: sqlite3.Connection,
    classifier: Classifier,
    config: PipelineConfig,
    warnings: Optional[WarningsCollector] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> AnalysisSummary:
    """Classify every pending item and persist the results.

    Items are processed in batches of analyze_workers. Each batch runs on a
    thread pool off the event loop; its results are committed here, in the
    calling thread, one item at a time. A failed item is recorded and stays
    unprocessed so the next run picks it up again.

    Args:
        conn: SQLite database connection
        classifier: Classifier instance
        config: Pipeline configuration (worker count, limits, flags)
        warnings: Collector for per-item failures
        stop_event: When set, no new batch is started

    Returns:
        AnalysisSummary with selected/succeeded/failed/skipped counts

    Raises:
        PersistenceError: The store could not be read at all
    """
    warnings = warnings or WarningsCollector()
    summary = AnalysisSummary()

    units = build_work_units(conn, config)
    summary.selected = len(units)

    if not units:
        logger.info("no_items_to_analyze")
        return summary

    try:
        theme_index = storage.load_theme_index(conn)
    except sqlite3.Error as e:
        raise PersistenceError(f"Failed to load theme index: {e}") from e

    batch_size = config.analyze_workers
    total_batches = (len(units) + batch_size - 1) // batch_size

    for batch_idx in range(total_batches):
        if stop_event is not None and stop_event.is_set():
            summary.skipped = len(units) - batch_idx * batch_size
            logger.info("analysis_stopped", remaining=summary.skipped)
            break

        batch = units[batch_idx * batch_size:(batch_idx + 1) * batch_size]
        successes, failures = await asyncio.to_thread(
            process_single_batch, batch, classifier, config.analyze_workers
        )

        for unit, error in failures:
            summary.failed += 1
            warnings.append(
                WARNING_TYPE_INFERENCE_FAILED,
                f"Failed to classify {unit['content_type']} {unit['reddit_id']}",
                {"reddit_id": unit['reddit_id'], "content_type": unit['content_type'], "error": str(error)}
            )

        for unit, result in successes:
            try:
                commit_analysis_result(conn, unit, result, theme_index)
            except PersistenceError as e:
                summary.failed += 1
                warnings.append(
                    WARNING_TYPE_PERSISTENCE_FAILED,
                    f"Failed to store analysis for {unit['content_type']} {unit['reddit_id']}",
                    {"reddit_id": unit['reddit_id'], "content_type": unit['content_type'], "error": str(e)}
                )
                continue
            summary.succeeded += 1

        logger.info(
            "analysis_batch_complete",
            batch_number=batch_idx + 1,
            total_batches=total_batches,
            succeeded=summary.succeeded,
            failed=summary.failed
        )

    logger.info("analysis_complete", **summary.to_dict())
    return summary
