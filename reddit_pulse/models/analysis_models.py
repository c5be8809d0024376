"""Taxonomy, analysis, and aggregate data models.

Data Models:
    ThemeSpec: a root theme with optional subthemes (two levels, no deeper)
    SearchTermSpec: a search term and its category
    SeedSummary: row counts written by the taxonomy seeder
    ClassificationResult: validated output of one inference call
    AnalysisSummary: counts reported by an analysis stage
    AggregateMetric: one stored aggregate snapshot
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ThemeSpec:
    """A theme definition. Subthemes must not have subthemes of their own."""
    name: str
    description: str = ""
    priority: int = 0
    subthemes: Tuple["ThemeSpec", ...] = ()


@dataclass(frozen=True)
class SearchTermSpec:
    term: str
    category: str


@dataclass
class SeedSummary:
    root_themes: int = 0
    subthemes: int = 0
    search_terms: int = 0


@dataclass
class ClassificationResult:
    """Parsed, validated output of one classification call.

    Attributes:
        sentiment: "positive", "neutral", or "negative"
        sentiment_score: -1.0 (very negative) to 1.0 (very positive)
        confidence: 0.0 to 1.0
        summary: One or two sentence summary
        tone: Free-text tone label (e.g. "frustrated", "enthusiastic")
        themes: Raw theme labels returned by the model
        keywords: Salient keywords
        mentions: Canonical product/entity names mentioned
        attributes: Free-form extra fields (kept as a mapping)
        is_announcement_related: Item discusses an official announcement
        image_analysis: Description of attached images, if any were sent
        model_used: Model that produced the result
        prompt_version: Version of the prompt that produced the result
    """
    sentiment: str
    sentiment_score: float = 0.0
    confidence: float = 0.0
    summary: str = ""
    tone: Optional[str] = None
    themes: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    mentions: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)
    is_announcement_related: bool = False
    image_analysis: Optional[str] = None
    model_used: Optional[str] = None
    prompt_version: Optional[str] = None


@dataclass
class AnalysisSummary:
    """Counts reported by an analysis stage."""
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "selected": self.selected,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass
class AggregateMetric:
    """A stored aggregate snapshot for one dimension."""
    dimension: str
    payload: Dict[str, Any]
    computed_at: str
