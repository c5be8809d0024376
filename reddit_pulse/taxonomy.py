"""Theme taxonomy and search term seeding.

The taxonomy has exactly two levels: root themes and their subthemes. Seeding
writes roots first so every subtheme can reference its parent's id, then
writes search terms. Every write is an upsert on the natural key (theme name,
search term), so seeding twice leaves the store unchanged.
"""

import sqlite3
from typing import Iterable, List, Sequence, Set

import structlog

from reddit_pulse.backend.utils.errors import PersistenceError
from reddit_pulse.models.analysis_models import SearchTermSpec, SeedSummary, ThemeSpec

logger = structlog.get_logger()


def _subs(*entries) -> tuple:
    return tuple(
        ThemeSpec(name=name, description=description, priority=index)
        for index, (name, description) in enumerate(entries, start=1)
    )


DEFAULT_THEMES: Sequence[ThemeSpec] = (
    ThemeSpec(
        "Hardware & Device",
        "Topics related to the physical WHOOP device, including build quality, comfort, and durability",
        1,
        _subs(
            ("Battery Life", "Battery performance and charging issues"),
            ("Comfort & Wearability", "How the device feels to wear, irritation issues"),
            ("Design & Aesthetics", "Appearance and style of the device and bands"),
            ("Durability", "Device longevity and resistance to damage"),
            ("Sensor Performance", "Accuracy and reliability of device sensors"),
        ),
    ),
    ThemeSpec(
        "Software & App",
        "Topics related to the WHOOP mobile app, user interface, and software functionality",
        2,
        _subs(
            ("App Usability", "User interface and ease of use"),
            ("Feature Requests", "Desired new software capabilities"),
            ("Data Access", "Ability to access and export personal data"),
            ("Notifications", "App notifications and alerts"),
            ("App Stability", "App crashes, bugs, and technical issues"),
        ),
    ),
    ThemeSpec(
        "Metrics & Accuracy",
        "Topics related to the accuracy and reliability of measurements and health metrics",
        3,
        _subs(
            ("Sleep Tracking", "Sleep detection, stages, and quality metrics"),
            ("Heart Rate Monitoring", "Accuracy of heart rate metrics"),
            ("Strain Calculation", "Accuracy and consistency of strain scores"),
            ("Recovery Assessment", "Recovery score accuracy and consistency"),
            ("Workout Detection", "Automatic activity and workout detection"),
            ("Body Metrics", "Body composition and other body measurements"),
        ),
    ),
    ThemeSpec(
        "Pricing & Membership",
        "Topics related to cost, subscription models, membership tiers, and value proposition",
        4,
        _subs(
            ("Membership Value", "Is WHOOP worth the cost?"),
            ("Pricing Model", "Subscription vs. one-time purchase debates"),
            ("Price Increases", "Reactions to changes in pricing"),
            ("Cancellation", "Experiences with cancelling membership"),
        ),
    ),
    ThemeSpec(
        "Competitive Comparison",
        "Topics comparing WHOOP to competing fitness wearables and services",
        5,
        _subs(
            ("Apple Watch vs. WHOOP", "Comparisons to Apple Watch"),
            ("Oura Ring vs. WHOOP", "Comparisons to Oura Ring"),
            ("Garmin vs. WHOOP", "Comparisons to Garmin devices"),
            ("Fitbit vs. WHOOP", "Comparisons to Fitbit devices"),
            ("Value Comparison", "Value proposition compared to competitors"),
        ),
    ),
    ThemeSpec(
        "Customer Support",
        "Topics related to customer service, warranty issues, and support experiences",
        6,
        _subs(
            ("Support Responsiveness", "Response time and quality of support"),
            ("Warranty Claims", "Experiences with warranty process"),
            ("Return Process", "Experiences with returns and refunds"),
        ),
    ),
    ThemeSpec(
        "Product Updates",
        "Topics related to new hardware releases and software updates",
        7,
        _subs(
            ("WHOOP 5.0 Discussion", "Specific discussions about the newest WHOOP 5.0"),
            ("Feature Updates", "Reactions to new software features"),
            ("Update Issues", "Problems after updates"),
        ),
    ),
    ThemeSpec(
        "Community & Social",
        "Topics related to the WHOOP community, teams, and social features",
        8,
        _subs(
            ("Community Features", "WHOOP teams and social capabilities"),
            ("Data Sharing", "Sharing and comparing data with others"),
            ("Coaching", "Coaching and training related to WHOOP data"),
        ),
    ),
)


def _terms(category: str, *terms: str) -> List[SearchTermSpec]:
    return [SearchTermSpec(term=term, category=category) for term in terms]


DEFAULT_SEARCH_TERMS: Sequence[SearchTermSpec] = tuple(
    _terms(
        "product",
        "WHOOP 5.0", "WHOOP 4.0", "WHOOP MG", "WHOOP app", "WHOOP bands",
        "WHOOP body", "Body Composition",
    )
    + _terms(
        "feature",
        "sleep tracking", "recovery", "strain", "HRV", "heart rate",
        "resting heart rate", "activity tracking", "workout detection",
        "battery life", "sleep coach", "respiratory rate", "SPO2",
        "skin temperature", "body temperature", "journal", "sleep quality",
    )
    + _terms(
        "pricing",
        "membership", "subscription", "pricing", "price increase", "cost",
        "cheaper", "expensive", "monthly fee", "annual fee", "yearly fee",
        "hardware cost",
    )
    + _terms(
        "competitor",
        "Apple Watch", "Oura Ring", "Fitbit", "Garmin", "Polar", "Amazfit",
        "Samsung Galaxy Watch", "switch to", "switching to", "better than",
    )
    + _terms(
        "issue",
        "inaccurate", "broken", "disconnecting", "battery drain",
        "customer support", "customer service", "not tracking", "not syncing",
        "not working", "won't charge", "issues", "problems", "disappointed",
        "frustrating",
    )
)


def validate_taxonomy(themes: Iterable[ThemeSpec]) -> None:
    """Check that a taxonomy has two levels and unique theme names.

    Names are the upsert key, so a name used twice would make the second
    write re-parent (or un-parent) the first.

    Raises:
        ValueError: A subtheme has its own subthemes, or a name repeats.
    """
    seen: Set[str] = set()
    for root in themes:
        names = [root.name]
        for sub in root.subthemes:
            if sub.subthemes:
                raise ValueError(
                    f"Theme '{sub.name}' under '{root.name}' has subthemes; "
                    "only two levels are supported"
                )
            names.append(sub.name)
        for name in names:
            if name in seen:
                raise ValueError(f"Theme name '{name}' is used more than once")
            seen.add(name)


def _upsert_theme(conn: sqlite3.Connection, theme: ThemeSpec, parent_id=None) -> int:
    cursor = conn.execute("""
        INSERT INTO themes (name, description, priority, parent_theme_id, is_active)
        VALUES (?, ?, ?, ?, 1)
        ON CONFLICT(name) DO UPDATE SET
            description = excluded.description,
            priority = excluded.priority,
            parent_theme_id = excluded.parent_theme_id,
            is_active = 1,
            updated_at = datetime('now')
        RETURNING id
    """, (theme.name, theme.description, theme.priority, parent_id))
    return cursor.fetchone()[0]


def _upsert_search_term(conn: sqlite3.Connection, term: SearchTermSpec) -> None:
    conn.execute("""
        INSERT INTO search_terms (term, category, is_active, usage_count)
        VALUES (?, ?, 1, 0)
        ON CONFLICT(term) DO UPDATE SET
            category = excluded.category,
            is_active = 1,
            updated_at = datetime('now')
    """, (term.term, term.category))


def seed(
    conn: sqlite3.Connection,
    themes: Sequence[ThemeSpec] = DEFAULT_THEMES,
    search_terms: Sequence[SearchTermSpec] = DEFAULT_SEARCH_TERMS,
) -> SeedSummary:
    """Write the theme taxonomy and search terms in one transaction.

    Args:
        conn: SQLite database connection
        themes: Root themes with their subthemes
        search_terms: Search terms with categories

    Returns:
        SeedSummary with the number of rows written per kind

    Raises:
        ValueError: The taxonomy is malformed (nothing is written)
        PersistenceError: A write failed; the transaction was rolled back

    Example:
        >>> summary = seed(conn)
        >>> summary.root_themes, summary.subthemes
        (8, 34)
    """
    validate_taxonomy(themes)
    summary = SeedSummary()

    try:
        root_ids = {}
        for root in themes:
            root_ids[root.name] = _upsert_theme(conn, root)
            summary.root_themes += 1

        for root in themes:
            for sub in root.subthemes:
                _upsert_theme(conn, sub, parent_id=root_ids[root.name])
                summary.subthemes += 1

        for term in search_terms:
            _upsert_search_term(conn, term)
            summary.search_terms += 1

        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.error("taxonomy_seed_failed", error=str(e), exc_info=True)
        raise PersistenceError(f"Failed to seed reference data: {e}") from e

    logger.info(
        "taxonomy_seeded",
        root_themes=summary.root_themes,
        subthemes=summary.subthemes,
        search_terms=summary.search_terms,
    )
    return summary


def has_reference_data(conn: sqlite3.Connection) -> bool:
    """True when at least one theme and at least one search term exist.

    A failed lookup (e.g. the tables do not exist yet) counts as "not seeded".
    """
    try:
        has_theme = conn.execute("SELECT id FROM themes LIMIT 1").fetchone() is not None
        has_term = conn.execute("SELECT id FROM search_terms LIMIT 1").fetchone() is not None
    except sqlite3.Error as e:
        logger.warning("reference_data_check_failed", error=str(e))
        return False
    return has_theme and has_term
