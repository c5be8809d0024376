"""Extended analysis: competitors, feature aspects, cancellations, questions, product reviews.

Runs after base classification over posts that already have an analysis
result. Two passes, each tracked by its own timestamp column so a repeated
run only picks up rows it has not finished:

    1. Extended pass (extended_analysis_at IS NULL): EXTENDED_SYSTEM_PROMPT
    2. Product-review pass (product_analysis_at IS NULL): PRODUCT_REVIEW_SYSTEM_PROMPT

Writes are UPDATEs keyed by the analysis result id, committed per row.
"""

import json
import sqlite3
from typing import Any, Callable, Dict, List, Optional

import structlog

from reddit_pulse.ai_parser import parse_extended_response, parse_product_review_response
from reddit_pulse.backend.utils.errors import (
    WARNING_TYPE_EXTENDED_ANALYSIS_FAILED,
    PersistenceError,
    WarningsCollector,
)
from reddit_pulse.config import PipelineConfig
from reddit_pulse.models.analysis_models import AnalysisSummary
from reddit_pulse.prompts import (
    EXTENDED_SYSTEM_PROMPT,
    PRODUCT_REVIEW_SYSTEM_PROMPT,
    build_extended_prompt,
)

logger = structlog.get_logger()


def select_for_extended(conn: sqlite3.Connection, marker_column: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Post analysis results whose marker column is still NULL, newest first."""
    if marker_column not in ("extended_analysis_at", "product_analysis_at"):
        raise ValueError(f"Unknown marker column: {marker_column}")

    query = f"""
        SELECT ar.id AS result_id, p.reddit_id, p.title, p.body
        FROM analysis_results ar
        JOIN reddit_posts p ON p.id = ar.content_id
        WHERE ar.content_type = 'post' AND ar.{marker_column} IS NULL
        ORDER BY p.created_utc DESC, p.id DESC
    """
    params: List[Any] = []
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    try:
        return [dict(row) for row in conn.execute(query, params).fetchall()]
    except sqlite3.Error as e:
        raise PersistenceError(f"Failed to select rows for {marker_column}: {e}") from e


def store_extended_fields(conn: sqlite3.Connection, result_id: int, fields: Dict[str, Any]) -> None:
    conn.execute("""
        UPDATE analysis_results
        SET competitor_mentions = ?,
            aspects = ?,
            cancellation_mention = ?,
            cancellation_reason = ?,
            user_questions = ?,
            extended_analysis_at = datetime('now'),
            updated_at = datetime('now')
        WHERE id = ?
    """, (
        json.dumps(fields['competitor_mentions']),
        json.dumps(fields['aspects']),
        int(fields['cancellation_mention']),
        fields['cancellation_reason'],
        json.dumps(fields['user_questions']),
        result_id,
    ))


def store_product_review_fields(conn: sqlite3.Connection, result_id: int, fields: Dict[str, Any]) -> None:
    conn.execute("""
        UPDATE analysis_results
        SET has_received_product = ?,
            product_received = ?,
            product_satisfaction = ?,
            product_analysis_at = datetime('now'),
            updated_at = datetime('now')
        WHERE id = ?
    """, (
        int(fields['has_received_product']),
        fields['product_received'],
        fields['product_satisfaction'],
        result_id,
    ))


async def _run_pass(
    conn: sqlite3.Connection,
    client: Any,
    pass_name: str,
    rows: List[Dict[str, Any]],
    system_prompt: str,
    parse: Callable[[str], Dict[str, Any]],
    store: Callable[[sqlite3.Connection, int, Dict[str, Any]], None],
    summary: AnalysisSummary,
    warnings: WarningsCollector,
) -> None:
    for row in rows:
        try:
            response = await client.send_chat_completion(system_prompt, build_extended_prompt(row))
            fields = parse(response.get('content', ''))
            store(conn, row['result_id'], fields)
            conn.commit()
        except Exception as e:
            if isinstance(e, sqlite3.Error):
                conn.rollback()
            summary.failed += 1
            logger.warning(
                "extended_analysis_item_failed",
                analysis_pass=pass_name,
                reddit_id=row['reddit_id'],
                error_type=type(e).__name__,
                error_message=str(e)
            )
            warnings.append(
                WARNING_TYPE_EXTENDED_ANALYSIS_FAILED,
                f"{pass_name} analysis failed for post {row['reddit_id']}",
                {"reddit_id": row['reddit_id'], "pass": pass_name, "error": str(e)}
            )
            continue
        summary.succeeded += 1


async def run_extended_analysis(
    conn: sqlite3.Connection,
    client: Any,
    config: PipelineConfig,
    warnings: Optional[WarningsCollector] = None,
) -> AnalysisSummary:
    """Run the extended and product-review passes over analyzed posts.

    Args:
        conn: SQLite database connection
        client: OpenAIClient (send_chat_completion)
        config: Pipeline configuration (analyze_batch_limit bounds each pass)
        warnings: Collector for per-item failures

    Returns:
        AnalysisSummary counting rows across both passes

    Raises:
        PersistenceError: Rows to analyze could not be selected
    """
    warnings = warnings or WarningsCollector()
    summary = AnalysisSummary()

    extended_rows = select_for_extended(conn, "extended_analysis_at", config.analyze_batch_limit)
    product_rows = select_for_extended(conn, "product_analysis_at", config.analyze_batch_limit)
    summary.selected = len(extended_rows) + len(product_rows)

    await _run_pass(
        conn, client, "extended", extended_rows,
        EXTENDED_SYSTEM_PROMPT, parse_extended_response, store_extended_fields,
        summary, warnings,
    )
    await _run_pass(
        conn, client, "product_review", product_rows,
        PRODUCT_REVIEW_SYSTEM_PROMPT, parse_product_review_response, store_product_review_fields,
        summary, warnings,
    )

    logger.info("extended_analysis_complete", **summary.to_dict())
    return summary
