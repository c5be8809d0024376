"""
Tests for AI prompt templates.

Verifies the system prompts carry the product context and response schema,
and that user prompts include the content, comment context and theme list.
"""

from reddit_pulse.prompts import (
    EXTENDED_FEATURES,
    EXTENDED_SYSTEM_PROMPT,
    PRODUCT_REVIEW_SYSTEM_PROMPT,
    PROMPT_VERSION,
    SYSTEM_PROMPT,
    build_extended_prompt,
    build_user_prompt,
    format_top_comments,
)


class TestSystemPrompts:
    """Test the system prompt templates."""

    def test_classification_schema_fields(self):
        for field in ("summary", "sentiment", "sentiment_score", "confidence", "tone",
                      "themes", "keywords", "mentions", "image_analysis", "is_announcement_related"):
            assert f'"{field}"' in SYSTEM_PROMPT

    def test_product_context_included(self):
        assert "WHOOP 5.0" in SYSTEM_PROMPT
        assert "WHOOP MG" in SYSTEM_PROMPT
        assert "May 8, 2025" in EXTENDED_SYSTEM_PROMPT

    def test_extended_prompt_lists_features(self):
        for feature in EXTENDED_FEATURES:
            assert feature in EXTENDED_SYSTEM_PROMPT

    def test_product_review_prompt(self):
        assert '"has_received_product"' in PRODUCT_REVIEW_SYSTEM_PROMPT
        assert "WHOOP 4.0" in PRODUCT_REVIEW_SYSTEM_PROMPT

    def test_prompt_version(self):
        assert PROMPT_VERSION == "1.0"


class TestBuildUserPrompt:
    """Test build_user_prompt()."""

    def test_post_prompt(self):
        prompt = build_user_prompt(
            title="Battery update",
            body="Two weeks on one charge",
            top_comments=[{"author": "a", "body": "Same here", "score": 4}],
            theme_names=["Battery Life", "Durability"],
            image_count=2,
        )

        assert prompt.startswith("Title: Battery update")
        assert "Content:\nTwo weeks on one charge" in prompt
        assert "Top Comments:\n- [4] a: Same here" in prompt
        assert "2 image(s) attached." in prompt
        assert prompt.endswith("Known themes:\nBattery Life, Durability")

    def test_comment_prompt(self):
        prompt = build_user_prompt(title="", body="Mine too", post_title="Strap broke")

        assert "Title:" not in prompt
        assert "Comment on post titled: Strap broke" in prompt

    def test_empty_body(self):
        assert "(no text)" in build_user_prompt(title="Photo", body="")

    def test_extended_prompt_uses_title_and_body(self):
        prompt = build_extended_prompt({"title": "Cancelled", "body": "Too expensive"})

        assert "Title: Cancelled" in prompt
        assert "Too expensive" in prompt


class TestFormatTopComments:
    """Test format_top_comments()."""

    def test_whitespace_collapsed(self):
        formatted = format_top_comments([{"author": "b", "body": "line one\n\nline two", "score": 3}])
        assert formatted == "- [3] b: line one line two"

    def test_at_most_five(self):
        comments = [{"author": f"u{i}", "body": "x", "score": i} for i in range(8)]
        assert len(format_top_comments(comments).splitlines()) == 5
