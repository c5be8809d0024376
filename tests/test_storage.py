"""
Tests for storage operations.

Behavioral tests verifying upserts converge on one row per natural key,
that comment trees are written atomically with parents resolved first, and
that the analysis stage's pending selection and result writes behave.
"""

import json

import pytest

from reddit_pulse import storage
from reddit_pulse.backend.utils.errors import OrphanedCommentError
from reddit_pulse.models.analysis_models import AggregateMetric
from reddit_pulse.models.reddit_models import DirectImage, GalleryImage


class TestPostStorage:
    """Test store_post() / upsert_post()."""

    def test_store_post_twice_keeps_one_row(self, schema_initialized_db, make_post):
        first_id = storage.store_post(schema_initialized_db, make_post(score=5))
        second_id = storage.store_post(schema_initialized_db, make_post(score=42))

        rows = schema_initialized_db.execute("SELECT id, score FROM reddit_posts").fetchall()
        assert first_id == second_id
        assert len(rows) == 1
        assert rows[0]['score'] == 42

    def test_media_and_metadata_serialized(self, schema_initialized_db, make_post):
        post = make_post(
            media=[DirectImage(url="https://i.redd.it/a.jpg"),
                   GalleryImage(url="https://i.redd.it/b.png", media_id="b")],
            metadata={"is_self": False, "link_flair_text": "Review"},
        )
        storage.store_post(schema_initialized_db, post)

        row = schema_initialized_db.execute("SELECT * FROM reddit_posts").fetchone()
        assert json.loads(row['image_urls']) == ["https://i.redd.it/a.jpg", "https://i.redd.it/b.png"]
        assert json.loads(row['media'])[1] == {
            "kind": "gallery", "url": "https://i.redd.it/b.png", "media_id": "b"
        }
        assert json.loads(row['metadata'])["link_flair_text"] == "Review"

    def test_recollected_post_is_pending_again(self, schema_initialized_db, make_post):
        post_id = storage.store_post(schema_initialized_db, make_post())
        storage.mark_processed(schema_initialized_db, "post", post_id)
        schema_initialized_db.commit()

        storage.store_post(schema_initialized_db, make_post(title="Edited title"))

        pending = storage.select_pending(schema_initialized_db, "post")
        assert [row['id'] for row in pending] == [post_id]

    def test_unchanged_recollect_keeps_processed(self, schema_initialized_db, make_post):
        post_id = storage.store_post(schema_initialized_db, make_post())
        storage.mark_processed(schema_initialized_db, "post", post_id)
        schema_initialized_db.commit()

        storage.store_post(schema_initialized_db, make_post(score=99))

        row = schema_initialized_db.execute("SELECT processed, score FROM reddit_posts").fetchone()
        assert row['processed'] == 1
        assert row['score'] == 99
        assert storage.select_pending(schema_initialized_db, "post") == []

    def test_edited_comment_is_pending_again(self, schema_initialized_db, make_post, make_comment):
        post_id = storage.store_post(schema_initialized_db, make_post())
        storage.store_thread(schema_initialized_db, post_id, [make_comment("c1")])
        comment_id = schema_initialized_db.execute("SELECT id FROM reddit_comments").fetchone()[0]
        storage.mark_processed(schema_initialized_db, "comment", comment_id)
        schema_initialized_db.commit()

        storage.store_thread(schema_initialized_db, post_id, [make_comment("c1")])
        assert storage.select_pending(schema_initialized_db, "comment") == []

        storage.store_thread(schema_initialized_db, post_id, [make_comment("c1", body="Edited reply")])
        assert [row['id'] for row in storage.select_pending(schema_initialized_db, "comment")] == [comment_id]


class TestThreadStorage:
    """Test store_thread()."""

    def test_parent_before_child_links_ids(self, schema_initialized_db, make_post, make_comment):
        post_id = storage.store_post(schema_initialized_db, make_post())
        comments = [
            make_comment("c1"),
            make_comment("c2", parent_reddit_id="c1", depth=1),
            make_comment("c3", parent_reddit_id="c2", depth=2),
        ]

        written = storage.store_thread(schema_initialized_db, post_id, comments)

        rows = {
            row['reddit_id']: row
            for row in schema_initialized_db.execute("SELECT * FROM reddit_comments")
        }
        assert written == 3
        assert rows['c1']['parent_comment_id'] is None
        assert rows['c2']['parent_comment_id'] == rows['c1']['id']
        assert rows['c3']['parent_comment_id'] == rows['c2']['id']
        assert all(row['post_id'] == post_id for row in rows.values())

    def test_parent_resolved_from_store(self, schema_initialized_db, make_post, make_comment):
        """A reply whose parent was written by an earlier run still links."""
        post_id = storage.store_post(schema_initialized_db, make_post())
        storage.store_thread(schema_initialized_db, post_id, [make_comment("c1")])

        storage.store_thread(
            schema_initialized_db, post_id,
            [make_comment("c9", parent_reddit_id="c1", depth=1)],
        )

        parent_id = schema_initialized_db.execute(
            "SELECT parent_comment_id FROM reddit_comments WHERE reddit_id = 'c9'"
        ).fetchone()[0]
        assert parent_id == storage.lookup_comment_ids(schema_initialized_db, ["c1"])["c1"]

    def test_orphan_rolls_back_whole_tree(self, schema_initialized_db, make_post, make_comment):
        post_id = storage.store_post(schema_initialized_db, make_post())
        comments = [
            make_comment("c1"),
            make_comment("c2", parent_reddit_id="missing", depth=1),
        ]

        with pytest.raises(OrphanedCommentError):
            storage.store_thread(schema_initialized_db, post_id, comments)

        count = schema_initialized_db.execute("SELECT COUNT(*) FROM reddit_comments").fetchone()[0]
        assert count == 0

    def test_restoring_tree_is_idempotent(self, schema_initialized_db, make_post, make_comment):
        post_id = storage.store_post(schema_initialized_db, make_post())
        comments = [make_comment("c1"), make_comment("c2", parent_reddit_id="c1", depth=1)]

        storage.store_thread(schema_initialized_db, post_id, comments)
        storage.store_thread(schema_initialized_db, post_id, comments)

        count = schema_initialized_db.execute("SELECT COUNT(*) FROM reddit_comments").fetchone()[0]
        assert count == 2

    def test_empty_tree(self, schema_initialized_db):
        assert storage.store_thread(schema_initialized_db, 1, []) == 0


class TestPendingSelection:
    """Test select_pending()."""

    def test_newest_first_and_limit(self, schema_initialized_db, make_post):
        for i, created in enumerate([100, 300, 200]):
            storage.store_post(schema_initialized_db, make_post(f"p{i}", created_utc=created))

        pending = storage.select_pending(schema_initialized_db, "post", limit=2)

        assert [row['reddit_id'] for row in pending] == ["p1", "p2"]

    def test_processed_items_excluded_unless_forced(self, schema_initialized_db, make_post):
        done_id = storage.store_post(schema_initialized_db, make_post("done"))
        storage.store_post(schema_initialized_db, make_post("todo"))
        storage.mark_processed(schema_initialized_db, "post", done_id)
        schema_initialized_db.commit()

        pending = storage.select_pending(schema_initialized_db, "post")
        forced = storage.select_pending(schema_initialized_db, "post", force=True)

        assert [row['reddit_id'] for row in pending] == ["todo"]
        assert len(forced) == 2

    def test_unknown_content_type(self, schema_initialized_db):
        with pytest.raises(ValueError, match="Unknown content_type"):
            storage.select_pending(schema_initialized_db, "video")


class TestAnalysisResults:
    """Test upsert_analysis_result() and theme links."""

    def test_one_result_per_item(self, seeded_db, make_post, make_result):
        post_id = storage.store_post(seeded_db, make_post())
        index = storage.load_theme_index(seeded_db)

        first = storage.upsert_analysis_result(seeded_db, "post", post_id, make_result(), index)
        second = storage.upsert_analysis_result(
            seeded_db, "post", post_id, make_result(sentiment="negative"), index
        )
        seeded_db.commit()

        rows = seeded_db.execute("SELECT id, sentiment FROM analysis_results").fetchall()
        assert first == second
        assert len(rows) == 1
        assert rows[0]['sentiment'] == "negative"

    def test_theme_links_match_case_insensitively(self, seeded_db, make_post, make_result):
        post_id = storage.store_post(seeded_db, make_post())
        index = storage.load_theme_index(seeded_db)
        result = make_result(themes=["battery life", "Sleep Tracking", "Not A Theme"])

        result_id = storage.upsert_analysis_result(seeded_db, "post", post_id, result, index)
        seeded_db.commit()

        linked = {
            row['name'] for row in seeded_db.execute("""
                SELECT t.name FROM analysis_result_themes art
                JOIN themes t ON t.id = art.theme_id
                WHERE art.analysis_result_id = ?
            """, (result_id,))
        }
        stored = seeded_db.execute("SELECT themes FROM analysis_results").fetchone()[0]
        assert linked == {"Battery Life", "Sleep Tracking"}
        assert json.loads(stored) == ["battery life", "Sleep Tracking", "Not A Theme"]

    def test_reanalysis_rewrites_links(self, seeded_db, make_post, make_result):
        post_id = storage.store_post(seeded_db, make_post())
        index = storage.load_theme_index(seeded_db)

        storage.upsert_analysis_result(seeded_db, "post", post_id, make_result(themes=["Battery Life"]), index)
        result_id = storage.upsert_analysis_result(
            seeded_db, "post", post_id, make_result(themes=["Durability"]), index
        )
        seeded_db.commit()

        count = seeded_db.execute(
            "SELECT COUNT(*) FROM analysis_result_themes WHERE analysis_result_id = ?", (result_id,)
        ).fetchone()[0]
        assert count == 1

    def test_image_analysis_flag(self, seeded_db, make_post, make_result):
        post_id = storage.store_post(seeded_db, make_post())
        storage.upsert_analysis_result(
            seeded_db, "post", post_id, make_result(image_analysis="A photo of a strap")
        )

        row = seeded_db.execute("SELECT has_image_analysis, image_analysis FROM analysis_results").fetchone()
        assert row['has_image_analysis'] == 1
        assert row['image_analysis'] == "A photo of a strap"


class TestLookups:
    """Test the context lookups used to build prompts."""

    def test_top_comments_by_score(self, schema_initialized_db, make_post, make_comment):
        post_id = storage.store_post(schema_initialized_db, make_post())
        storage.store_thread(schema_initialized_db, post_id, [
            make_comment("low", score=1),
            make_comment("high", score=50),
            make_comment("mid", score=10),
        ])

        top = storage.load_top_comments(schema_initialized_db, post_id, limit=2)

        assert [row['score'] for row in top] == [50, 10]

    def test_post_titles(self, schema_initialized_db, make_post):
        a = storage.store_post(schema_initialized_db, make_post("a", title="First"))
        b = storage.store_post(schema_initialized_db, make_post("b", title="Second"))

        assert storage.load_post_titles(schema_initialized_db, [a, b, a]) == {a: "First", b: "Second"}

    def test_theme_names_by_priority(self, seeded_db):
        names = storage.load_theme_names(seeded_db)

        assert "Battery Life" in names
        assert len(names) == len(set(names))


class TestCollectionMetadata:
    """Test the collector watermark."""

    def test_watermark_only_moves_forward(self, schema_initialized_db):
        storage.update_collection_metadata(schema_initialized_db, 2000, 5)
        storage.update_collection_metadata(schema_initialized_db, 1000, 3)

        meta = storage.get_collection_metadata(schema_initialized_db)
        assert meta['last_collection_time'] == 2000
        assert meta['posts_collected'] == 8

    def test_no_metadata_yet(self, schema_initialized_db):
        assert storage.get_collection_metadata(schema_initialized_db) is None


class TestAggregates:
    """Test aggregate snapshot storage."""

    def test_snapshot_replaced(self, schema_initialized_db):
        storage.upsert_aggregate(schema_initialized_db, AggregateMetric("overview", {"n": 1}, "t1"))
        storage.upsert_aggregate(schema_initialized_db, AggregateMetric("overview", {"n": 2}, "t2"))

        metric = storage.load_aggregate(schema_initialized_db, "overview")
        count = schema_initialized_db.execute("SELECT COUNT(*) FROM aggregate_metrics").fetchone()[0]
        assert metric.payload == {"n": 2}
        assert metric.computed_at == "t2"
        assert count == 1

    def test_missing_dimension(self, schema_initialized_db):
        assert storage.load_aggregate(schema_initialized_db, "product") is None
