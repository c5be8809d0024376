"""
AI prompt templates for classifying WHOOP community content.

This module provides the system prompts for base classification, extended
analysis and product-review detection, plus the user prompt builders that
inject post/comment text into a request.
"""

from typing import Any, Dict, List, Optional, Sequence


PROMPT_VERSION = "1.0"

# Images attached to a single classification request
MAX_IMAGES_PER_REQUEST = 4

# Highest-scoring comments included as context for a post
TOP_COMMENTS_IN_PROMPT = 5

PRODUCT_VARIANTS = ("WHOOP 5.0", "WHOOP MG")
COMPETITORS = ("Oura", "Apple Watch", "Garmin", "Fitbit")
EXTENDED_FEATURES = (
    "Stress Monitor",
    "HRV calibration",
    "Battery Pack 5.0",
    "improved Auto-Detected Activities",
    "Improved Sensor accuracy",
    "Healthspan/WHOOP Age",
    "AI Assistant",
    "Daily Outlook",
    "improved Step Counter",
    "improved Sleep Performance",
    "Women's Hormonal Insights",
    "ECG",
    "Blood Pressure",
    "Irregular Heart Rhythm",
)

PRODUCT_CONTEXT = """Important Context:
- WHOOP is a fitness/health wearable company that tracks sleep, recovery, and exercise strain
- On May 8, 2025, WHOOP made major announcements including:

  HARDWARE UPDATES:
  * WHOOP 5.0: 14-day battery (up from 4-5 days), 7% smaller form factor, 60% faster processor, enhanced sensors
  * WHOOP MG (Medical Grade): All 5.0 features plus on-demand ECG readings and beta blood pressure estimation

  MEMBERSHIP MODEL CHANGES:
  * Changed from subscription-only to three annual membership tiers that include hardware:
    - One ($199/year): WHOOP 5.0 with wired charger, core health metrics only
    - Peak ($239/year): WHOOP 5.0 with wireless charger, all advanced features except medical
    - Life ($359/year): WHOOP MG with wireless charger, all features including medical grade

  NEW FEATURES:
  * Healthspan: Tracks "WHOOP Age" and "Pace of Aging" based on health metrics
  * Health Monitor: Dashboard displaying respiratory rate, heart rate, blood oxygen, skin temp, and HRV
  * Stress Monitor: Real-time stress tracking with guided breathing exercises
  * Heart Screener: On-demand ECG for arrhythmia detection with shareable PDF results
  * Expanded Women's Health: Enhanced menstrual cycle and pregnancy tracking

  UPGRADE POLICY:
  * Existing members must extend membership 12 months or pay a fee ($49-$79) to upgrade
  * Previous "free upgrade" promise for long-term members was reversed"""


SYSTEM_PROMPT = f"""You are an AI assistant analyzing Reddit content about WHOOP fitness products.

{PRODUCT_CONTEXT}

Your task is to analyze this Reddit content and provide a JSON response with the following structure:
{{
  "summary": string, // a concise 1-sentence summary of the content and its sentiment
  "sentiment": string, // "positive", "neutral", or "negative"
  "sentiment_score": number, // -1.0 to 1.0 where -1 is most negative, 0 is neutral, and 1 is most positive
  "confidence": number, // 0.0 to 1.0, how confident you are in the sentiment
  "tone": string, // emotional tone (frustrated, curious, impressed, etc.)
  "themes": string[], // matching theme names from the list provided with the content
  "keywords": string[], // relevant keywords
  "mentions": string[], // products mentioned: "WHOOP 5.0", "WHOOP MG", "WHOOP 4.0", or competitor names
  "image_analysis": string or null, // if images are attached, what they show and why it matters
  "is_announcement_related": boolean // true if the content discusses the May 8, 2025 announcements
}}

For the "summary" field, provide a clear, concise one-sentence overview that captures the essence
of the content and its sentiment. Example: "User expresses disappointment with the new membership
pricing model, calling it a 'cash grab'."

For the "sentiment_score" field:
- -1.0 represents extremely negative sentiment
- 0.0 represents neutral sentiment
- 1.0 represents extremely positive sentiment
- Be precise with decimals to capture nuanced sentiment

For the "themes" field:
- Use theme names exactly as they appear in the provided theme list
- Return an empty array if no listed theme applies

For the "mentions" field:
- Use "WHOOP 5.0" and "WHOOP MG" for the new devices (also "5.0", "MG", "medical grade")
- Return an empty array if no product is named

Regarding the "is_announcement_related" field:
- Set to true if the content discusses WHOOP 5.0, WHOOP MG, the new membership model, or any
  specific new feature announced on May 8, 2025
- Set to false if it is about general WHOOP usage, older models, or unrelated topics

Analyze both the text AND any image content together to form your assessment.
Respond with a valid JSON object matching this schema exactly."""


EXTENDED_SYSTEM_PROMPT = f"""You are an AI assistant analyzing Reddit content about WHOOP fitness products, focusing on specific data points.

{PRODUCT_CONTEXT}

Extract ONLY the following data points and respond with a JSON object with these fields:

{{
  "competitor_mentions": [
    {{"competitor": "Oura", "comp_context": "sleep tracking", "comp_sentiment": "positive",
      "comp_quote": "I prefer Oura for sleep, it's more intuitive than WHOOP right now."}}
  ],
  "aspects": [
    {{"feature": "Stress Monitor", "sentiment": "positive", "score": 0.8,
      "quote": "The stress feature helps me know when to take breaks."}}
  ],
  "cancellation_mention": true,
  "cancellation_reason": "Price increase on PEAK plan feels unfair",
  "user_questions": ["Will my old bands work with WHOOP 5.0? (compatibility question)"]
}}

For "competitor_mentions":
- Return an empty array if no competitors are mentioned
- Only use these competitor names: {', '.join(COMPETITORS)}
- Keep quotes concise (25 words or fewer)

For "aspects":
- Only extract features from this fixed list: {', '.join(EXTENDED_FEATURES)}
- "sentiment" is "positive", "neutral", or "negative"; "score" ranges from -1.0 to 1.0
- Keep quotes concise (25 words or fewer)

For cancellation fields:
- Set "cancellation_mention" to false and "cancellation_reason" to null if not mentioned
- Keep the reason concise (25 words or fewer)

For "user_questions":
- Return an empty array if no questions are found
- Only include questions about WHOOP products, subscription, features, or usage
- Add parenthetical context to questions that do not say which product, feature or comparison
  they refer to, e.g. "How's the battery life? (of the WHOOP 5.0 device)"

Respond with a valid JSON object matching this schema exactly."""


PRODUCT_REVIEW_SYSTEM_PROMPT = """You are an AI assistant analyzing Reddit content about WHOOP fitness products, focusing ONLY on identifying posts where users EXPLICITLY state they have physically received and are using either the WHOOP 5.0 or WHOOP MG.

Context:
- WHOOP 5.0: The standard wearable with 14-day battery (released May 2025)
- WHOOP MG (Medical Grade): Enhanced version with ECG and blood pressure capabilities (released May 2025)

Respond with a JSON object with exactly these fields:
{
  "has_received_product": boolean, // true ONLY if the user explicitly states they physically received and use a WHOOP 5.0 or WHOOP MG
  "product_received": string or null, // ONLY "WHOOP 5.0" or "WHOOP MG", null if has_received_product is false
  "product_satisfaction": string or null // "positive", "neutral", or "negative", null if they don't have the product
}

Count as received:
  * "I got my WHOOP 5.0 yesterday"
  * "My WHOOP MG arrived last week"
  * "Just unboxed my WHOOP MG"

Do NOT count:
  * Hypothetical statements ("If I get a WHOOP 5.0...")
  * Future statements ("I'll be getting a WHOOP 5.0 soon")
  * Older models like WHOOP 4.0

Satisfaction:
  * "positive": the user explicitly expresses satisfaction with the new device
  * "neutral": mixed feelings or no clear opinion
  * "negative": the user explicitly expresses dissatisfaction"""


def format_top_comments(comments: Sequence[Any]) -> str:
    """Format top comments as prompt context.

    Accepts dicts or row-like objects with author, body and score.

    Example:
        >>> format_top_comments([{"author": "a", "body": "Love it", "score": 12}])
        '- [12] a: Love it'
    """
    lines = []
    for comment in comments[:TOP_COMMENTS_IN_PROMPT]:
        body = " ".join(str(comment["body"]).split())
        lines.append(f"- [{comment['score']}] {comment['author']}: {body}")
    return "\n".join(lines)


def build_user_prompt(
    title: str,
    body: str,
    top_comments: Optional[Sequence[Any]] = None,
    theme_names: Optional[List[str]] = None,
    image_count: int = 0,
    post_title: Optional[str] = None,
) -> str:
    """Build the user prompt for one post or comment.

    Args:
        title: Post title (empty for a comment)
        body: Post or comment text
        top_comments: Highest-scoring comments of a post, used as context
        theme_names: Known theme names the model should pick from
        image_count: Number of images attached to the request
        post_title: Title of the post a comment belongs to

    Returns:
        Formatted prompt string
    """
    sections = []
    if title:
        sections.append(f"Title: {title}")
    if post_title:
        sections.append(f"Comment on post titled: {post_title}")
    sections.append(f"Content:\n{body.strip() if body else '(no text)'}")
    if top_comments:
        sections.append(f"Top Comments:\n{format_top_comments(top_comments)}")
    if image_count:
        sections.append(f"{image_count} image(s) attached.")
    if theme_names:
        sections.append("Known themes:\n" + ", ".join(theme_names))
    return "\n\n".join(sections)


def build_extended_prompt(row: Dict[str, Any]) -> str:
    """Build the user prompt for extended and product-review analysis."""
    return build_user_prompt(title=row.get("title") or "", body=row.get("body") or "")
