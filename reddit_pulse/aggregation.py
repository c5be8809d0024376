"""
Aggregate metrics for the comparison dashboard.

Every aggregate is a pure function of the stored posts, comments and
analysis results: each run recomputes the payload from scratch and replaces
the stored snapshot for its dimension.

Dimensions:
    product: per-variant mentions, co-mentions, sentiment, themes, engagement
    overview: totals, overall sentiment, top themes, top keywords
"""

import json
import sqlite3
from collections import Counter
from itertools import combinations
from typing import Any, Dict, Iterable, List, Mapping, Sequence

import structlog

from reddit_pulse import storage
from reddit_pulse.backend.utils.errors import PersistenceError, retry_with_backoff
from reddit_pulse.models.analysis_models import AggregateMetric
from reddit_pulse.prompts import PRODUCT_VARIANTS

logger = structlog.get_logger(__name__)


SENTIMENTS = ('positive', 'neutral', 'negative')
DIMENSIONS = ('product', 'overview')

TOP_THEMES = 10
TOP_KEYWORDS = 20


def sentiment_percentages(counts: Mapping[str, int]) -> Dict[str, float]:
    """
    Express sentiment counts as percentages of their total.

    Args:
        counts: Mapping with positive/neutral/negative counts (missing = 0)

    Returns:
        dict: Percentage per sentiment, rounded to 1 decimal
        - Returns 0.0 for every sentiment when the total is zero

    Examples:
        >>> sentiment_percentages({'positive': 32, 'neutral': 84, 'negative': 103})
        {'positive': 14.6, 'neutral': 38.4, 'negative': 47.0}
        >>> sentiment_percentages({})
        {'positive': 0.0, 'neutral': 0.0, 'negative': 0.0}
    """
    total = sum(counts.get(s, 0) for s in SENTIMENTS)
    if total == 0:
        return {s: 0.0 for s in SENTIMENTS}
    return {s: round(counts.get(s, 0) * 100.0 / total, 1) for s in SENTIMENTS}


def engagement_metrics(scores: Sequence[int], comment_counts: Sequence[int]) -> Dict[str, Any]:
    """
    Engagement totals and per-post averages.

    Averages are rounded to 2 decimals; zero posts gives 0.0 averages.
    """
    post_count = len(scores)
    total_score = sum(scores)
    total_comments = sum(comment_counts)
    return {
        'post_count': post_count,
        'total_score': total_score,
        'total_comments': total_comments,
        'avg_score': round(total_score / post_count, 2) if post_count else 0.0,
        'avg_comments': round(total_comments / post_count, 2) if post_count else 0.0,
    }


def _ranked(counter: Counter, limit: int) -> List[Dict[str, Any]]:
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [{'name': name, 'count': count} for name, count in ranked[:limit]]


def _load_post_results(conn: sqlite3.Connection) -> List[sqlite3.Row]:
    return conn.execute("""
        SELECT ar.id AS result_id, ar.sentiment, ar.mentions, p.score, p.num_comments
        FROM analysis_results ar
        JOIN reddit_posts p ON p.id = ar.content_id
        WHERE ar.content_type = 'post'
    """).fetchall()


def _load_result_themes(conn: sqlite3.Connection) -> Dict[int, List[str]]:
    rows = conn.execute("""
        SELECT art.analysis_result_id, t.name
        FROM analysis_result_themes art
        JOIN themes t ON t.id = art.theme_id
    """).fetchall()
    themes: Dict[int, List[str]] = {}
    for row in rows:
        themes.setdefault(row['analysis_result_id'], []).append(row['name'])
    return themes


def aggregate_products(
    conn: sqlite3.Connection,
    variants: Iterable[str] = PRODUCT_VARIANTS,
) -> Dict[str, Any]:
    """
    Per-variant statistics over classified posts.

    A post counts toward a variant when its canonical mentions include the
    variant name. Co-mentions are counted for every pair of variants, plus
    "all" for posts that mention every variant.

    Args:
        conn: SQLite database connection
        variants: Canonical variant names

    Returns:
        dict with "variants" (name -> mentions, sentiment_counts,
        sentiment_percentages, themes, engagement) and "co_mentions"
    """
    variants = list(variants)
    rows = _load_post_results(conn)
    result_themes = _load_result_themes(conn)

    stats = {
        variant: {
            'sentiment': Counter(),
            'themes': Counter(),
            'scores': [],
            'comments': [],
        }
        for variant in variants
    }
    co_mentions = Counter()

    for row in rows:
        mentioned = set(json.loads(row['mentions'] or '[]'))
        matched = [v for v in variants if v in mentioned]

        for variant in matched:
            entry = stats[variant]
            entry['sentiment'][row['sentiment']] += 1
            entry['themes'].update(result_themes.get(row['result_id'], []))
            entry['scores'].append(row['score'] or 0)
            entry['comments'].append(row['num_comments'] or 0)

        for a, b in combinations(matched, 2):
            co_mentions[f"{a} + {b}"] += 1
        if len(variants) > 1 and len(matched) == len(variants):
            co_mentions['all'] += 1

    payload_variants = {}
    for variant, entry in stats.items():
        counts = {s: entry['sentiment'].get(s, 0) for s in SENTIMENTS}
        payload_variants[variant] = {
            'mentions': len(entry['scores']),
            'sentiment_counts': counts,
            'sentiment_percentages': sentiment_percentages(counts),
            'themes': dict(sorted(entry['themes'].items(), key=lambda item: (-item[1], item[0]))),
            'engagement': engagement_metrics(entry['scores'], entry['comments']),
        }

    pair_keys = [f"{a} + {b}" for a, b in combinations(variants, 2)]
    co_mention_payload = {key: co_mentions.get(key, 0) for key in pair_keys}
    co_mention_payload['all'] = co_mentions.get('all', 0)

    return {
        'variants': payload_variants,
        'co_mentions': co_mention_payload,
    }


def aggregate_overview(conn: sqlite3.Connection) -> Dict[str, Any]:
    """
    Store-wide totals, sentiment distribution, top themes and top keywords.
    """
    total_posts = conn.execute("SELECT COUNT(*) FROM reddit_posts").fetchone()[0]
    total_comments = conn.execute("SELECT COUNT(*) FROM reddit_comments").fetchone()[0]

    sentiment_counts = {s: 0 for s in SENTIMENTS}
    keywords = Counter()
    analyzed = {'post': 0, 'comment': 0}
    for row in conn.execute("SELECT content_type, sentiment, keywords FROM analysis_results"):
        analyzed[row['content_type']] += 1
        sentiment_counts[row['sentiment']] += 1
        keywords.update({kw.lower() for kw in json.loads(row['keywords'] or '[]')})

    themes = Counter({
        row['name']: row['count']
        for row in conn.execute("""
            SELECT t.name, COUNT(*) AS count
            FROM analysis_result_themes art
            JOIN themes t ON t.id = art.theme_id
            GROUP BY t.id
        """)
    })

    return {
        'total_posts': total_posts,
        'total_comments': total_comments,
        'analyzed_posts': analyzed['post'],
        'analyzed_comments': analyzed['comment'],
        'sentiment_counts': sentiment_counts,
        'sentiment_percentages': sentiment_percentages(sentiment_counts),
        'top_themes': _ranked(themes, TOP_THEMES),
        'top_keywords': _ranked(keywords, TOP_KEYWORDS),
    }


_BUILDERS = {
    'product': aggregate_products,
    'overview': aggregate_overview,
}


def aggregate(conn: sqlite3.Connection, dimension: str) -> AggregateMetric:
    """
    Recompute one dimension and replace its stored snapshot.

    Raises:
        ValueError: Unknown dimension
        PersistenceError: Base tables could not be read or the snapshot could
            not be written after retries
    """
    if dimension not in _BUILDERS:
        raise ValueError(f"Unknown dimension: {dimension}. Must be one of {list(DIMENSIONS)}")

    try:
        payload = _BUILDERS[dimension](conn)
    except sqlite3.Error as e:
        raise PersistenceError(f"Failed to read base data for {dimension}: {e}") from e

    metric = AggregateMetric(dimension=dimension, payload=payload, computed_at=storage.utc_now_iso())
    # Retries cover a store briefly locked by a concurrent collector
    retry_with_backoff(
        lambda: storage.upsert_aggregate(conn, metric),
        max_retries=2,
        base_delay=0.5,
        retryable_exceptions=(PersistenceError,)
    )

    logger.info("aggregate_computed", dimension=dimension, computed_at=metric.computed_at)
    return metric


def run_aggregation(
    conn: sqlite3.Connection,
    dimensions: Iterable[str] = DIMENSIONS,
) -> List[AggregateMetric]:
    """Recompute every dimension. The first failure propagates."""
    return [aggregate(conn, dimension) for dimension in dimensions]
