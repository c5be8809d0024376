"""AI response parsing and mention normalization.

This module provides functionality for:
1. Extracting and validating JSON from GPT-4o-mini responses
2. Normalizing product and competitor mentions to canonical names
3. Custom exceptions for malformed responses

Key Functions:
    parse_ai_response() - Strip markdown fences, parse JSON, validate classification fields
    parse_extended_response() - Competitor mentions, aspects, cancellation, questions
    parse_product_review_response() - Received-product detection
    normalize_mentions() - Canonical names, blanks dropped, order-preserving dedup

Validation Rules (classification):
    - Required fields: sentiment, themes, mentions
    - Sentiment: accepts only "positive", "neutral", "negative" (case-insensitive)
    - Confidence: float clamped to [0.0, 1.0]; missing means 0.0
    - Sentiment score: float clamped to [-1.0, 1.0]; missing means 0.0
    - Unknown fields: kept under attributes
    - Missing required fields: raises ValueError

Response Format:
    {
        "summary": "User loves the new battery life",
        "sentiment": "positive",
        "sentiment_score": 0.8,
        "confidence": 0.9,
        "tone": "enthusiastic",
        "themes": ["Battery Life"],
        "keywords": ["battery", "14 days"],
        "mentions": ["WHOOP 5.0"],
        "image_analysis": null,
        "is_announcement_related": true
    }
"""

import json
from typing import Any, Dict, List, Optional

import structlog

from reddit_pulse.backend.utils.errors import InferenceError
from reddit_pulse.models.analysis_models import ClassificationResult
from reddit_pulse.prompts import COMPETITORS, EXTENDED_FEATURES, PRODUCT_VARIANTS


class MalformedResponseError(InferenceError):
    """Raised when AI response JSON cannot be parsed.

    Consumed by the retry logic in ai_batch.py, which retries once.
    """
    pass


VALID_SENTIMENTS = {'positive', 'neutral', 'negative'}

# Lowercased alias -> canonical product/entity name
MENTION_ALIASES = {
    'whoop 5.0': 'WHOOP 5.0',
    'whoop 5': 'WHOOP 5.0',
    'whoop5': 'WHOOP 5.0',
    'whoop5.0': 'WHOOP 5.0',
    '5.0': 'WHOOP 5.0',
    'whoop mg': 'WHOOP MG',
    'whoopmg': 'WHOOP MG',
    'mg': 'WHOOP MG',
    'medical grade': 'WHOOP MG',
    'whoop medical grade': 'WHOOP MG',
    'whoop 4.0': 'WHOOP 4.0',
    'whoop 4': 'WHOOP 4.0',
    '4.0': 'WHOOP 4.0',
    'oura': 'Oura',
    'oura ring': 'Oura',
    'apple watch': 'Apple Watch',
    'garmin': 'Garmin',
    'fitbit': 'Fitbit',
}

_CLASSIFICATION_FIELDS = {
    'summary', 'sentiment', 'sentiment_score', 'confidence', 'tone', 'themes',
    'keywords', 'mentions', 'image_analysis', 'is_announcement_related',
}


def strip_code_fences(raw_content: str) -> str:
    """Remove ```json ... ``` fences and surrounding whitespace."""
    stripped = raw_content.strip()

    if stripped.startswith('```'):
        start_idx = stripped.find('\n')
        start_idx = 3 if start_idx == -1 else start_idx + 1

        end_idx = stripped.rfind('```')
        if end_idx > start_idx:
            stripped = stripped[start_idx:end_idx].strip()
        else:
            stripped = stripped[start_idx:].strip()

    return stripped


def load_json_object(raw_content: Optional[str]) -> Dict[str, Any]:
    """Parse a model response into a dict.

    Raises:
        MalformedResponseError: Empty content, invalid JSON, or a non-object
    """
    if not raw_content:
        raise MalformedResponseError("Empty response content")

    stripped = strip_code_fences(raw_content)
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as e:
        structlog.get_logger().warning("ai_response_json_invalid", error=str(e), raw_content=raw_content[:200])
        raise MalformedResponseError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedResponseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _clamp(value: Any, low: float, high: float, field_name: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field_name} must be numeric, got {type(value).__name__}")
    clamped = max(low, min(high, float(value)))
    if clamped != value:
        structlog.get_logger().debug("ai_value_clamped", field=field_name, original=value, clamped=clamped)
    return clamped


def _string_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{field_name} must be a list, got {type(value).__name__}")
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _normalize_sentiment(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"Sentiment must be a string, got {type(value).__name__}")
    sentiment = value.strip().lower()
    if sentiment not in VALID_SENTIMENTS:
        raise ValueError(f"Invalid sentiment: {value}. Must be one of {sorted(VALID_SENTIMENTS)}")
    return sentiment


def normalize_mentions(mentions: List[str]) -> List[str]:
    """Map mentions to canonical names, drop blanks, deduplicate in order.

    Examples:
        >>> normalize_mentions(['whoop 5.0', 'Medical Grade', 'WHOOP 5.0', '', 'Polar'])
        ['WHOOP 5.0', 'WHOOP MG', 'Polar']
    """
    normalized = []
    seen = set()

    for mention in mentions:
        text = " ".join(str(mention).split())
        if not text:
            continue
        canonical = MENTION_ALIASES.get(text.lower(), text)
        if canonical not in seen:
            seen.add(canonical)
            normalized.append(canonical)

    return normalized


def parse_ai_response(
    raw_content: str,
    model_used: Optional[str] = None,
    prompt_version: Optional[str] = None,
) -> ClassificationResult:
    """Extract and validate a classification response.

    Args:
        raw_content: Raw GPT-4o-mini response text (may include markdown)
        model_used: Model name recorded on the result
        prompt_version: Prompt version recorded on the result

    Returns:
        ClassificationResult with normalized sentiment, clamped scores and
        canonical mentions

    Raises:
        MalformedResponseError: If JSON cannot be parsed
        ValueError: If required fields are missing or have the wrong type
    """
    data = load_json_object(raw_content)

    missing_fields = [f for f in ('sentiment', 'themes', 'mentions') if f not in data]
    if missing_fields:
        structlog.get_logger().warning("ai_response_missing_fields", missing=missing_fields)
        raise ValueError(f"Missing required fields: {missing_fields}")

    image_analysis = data.get('image_analysis')
    if isinstance(image_analysis, str) and not image_analysis.strip():
        image_analysis = None

    return ClassificationResult(
        sentiment=_normalize_sentiment(data['sentiment']),
        sentiment_score=_clamp(data.get('sentiment_score'), -1.0, 1.0, 'sentiment_score'),
        confidence=_clamp(data.get('confidence'), 0.0, 1.0, 'confidence'),
        summary=str(data.get('summary') or '').strip(),
        tone=data.get('tone') or None,
        themes=_string_list(data['themes'], 'themes'),
        keywords=_string_list(data.get('keywords'), 'keywords'),
        mentions=normalize_mentions(_string_list(data['mentions'], 'mentions')),
        attributes={k: v for k, v in data.items() if k not in _CLASSIFICATION_FIELDS},
        is_announcement_related=bool(data.get('is_announcement_related', False)),
        image_analysis=image_analysis,
        model_used=model_used,
        prompt_version=prompt_version,
    )


def parse_extended_response(raw_content: str) -> Dict[str, Any]:
    """Parse an extended-analysis response.

    Competitors outside the canonical list and features outside the fixed
    feature list are dropped. Aspect scores are clamped to [-1.0, 1.0].

    Returns:
        Dict with competitor_mentions, aspects, cancellation_mention,
        cancellation_reason and user_questions

    Raises:
        MalformedResponseError: If JSON cannot be parsed
        ValueError: If a list field has the wrong type
    """
    data = load_json_object(raw_content)
    features = {feature.lower(): feature for feature in EXTENDED_FEATURES}

    competitor_mentions = []
    for entry in data.get('competitor_mentions') or []:
        if not isinstance(entry, dict):
            continue
        name = MENTION_ALIASES.get(str(entry.get('competitor', '')).strip().lower())
        if name not in COMPETITORS:
            continue
        sentiment = str(entry.get('comp_sentiment') or 'neutral').lower()
        competitor_mentions.append({
            'competitor': name,
            'comp_context': entry.get('comp_context'),
            'comp_sentiment': sentiment if sentiment in VALID_SENTIMENTS else 'neutral',
            'comp_quote': entry.get('comp_quote'),
        })

    aspects = []
    for entry in data.get('aspects') or []:
        if not isinstance(entry, dict):
            continue
        feature = features.get(str(entry.get('feature', '')).strip().lower())
        if feature is None:
            continue
        sentiment = str(entry.get('sentiment') or 'neutral').lower()
        aspects.append({
            'feature': feature,
            'sentiment': sentiment if sentiment in VALID_SENTIMENTS else 'neutral',
            'score': _clamp(entry.get('score'), -1.0, 1.0, 'score'),
            'quote': entry.get('quote'),
        })

    cancellation_mention = bool(data.get('cancellation_mention', False))
    reason = data.get('cancellation_reason') if cancellation_mention else None

    return {
        'competitor_mentions': competitor_mentions,
        'aspects': aspects,
        'cancellation_mention': cancellation_mention,
        'cancellation_reason': reason or None,
        'user_questions': _string_list(data.get('user_questions'), 'user_questions'),
    }


def parse_product_review_response(raw_content: str) -> Dict[str, Any]:
    """Parse a product-review response.

    product_received is kept only when it resolves to one of the product
    variants; otherwise the post counts as not having received a product.

    Returns:
        Dict with has_received_product, product_received and product_satisfaction

    Raises:
        MalformedResponseError: If JSON cannot be parsed
    """
    data = load_json_object(raw_content)

    product = data.get('product_received')
    if product is not None:
        product = MENTION_ALIASES.get(str(product).strip().lower(), str(product).strip())
    has_received = bool(data.get('has_received_product', False)) and product in PRODUCT_VARIANTS

    if not has_received:
        return {
            'has_received_product': False,
            'product_received': None,
            'product_satisfaction': None,
        }

    satisfaction = data.get('product_satisfaction')
    if isinstance(satisfaction, str) and satisfaction.lower() in VALID_SENTIMENTS:
        satisfaction = satisfaction.lower()
    else:
        satisfaction = None

    return {
        'has_received_product': True,
        'product_received': product,
        'product_satisfaction': satisfaction,
    }
