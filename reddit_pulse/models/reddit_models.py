"""Reddit data models for reddit-pulse.

This module defines the data structures produced by the content collector and
consumed by storage.

Data Models:
    DirectImage, GalleryImage, PreviewImage: tagged media references
    ProcessedPost: a normalized submission (the pipeline's ContentItem)
    ProcessedComment: a normalized reply, linked to its parent by reddit id
    CollectionScope: what the collector should fetch
    CollectionSummary: what the collector did

These models use dataclasses for simplicity and map cleanly onto the
reddit_posts and reddit_comments tables.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class DirectImage:
    """The post's primary link points straight at an image file."""
    url: str
    kind: str = field(default="direct", init=False)


@dataclass(frozen=True)
class GalleryImage:
    """One image of a multi-image gallery post.

    Attributes:
        url: Best-quality source URL for the gallery entry
        media_id: Reddit media id of the entry
    """
    url: str
    media_id: Optional[str] = None
    kind: str = field(default="gallery", init=False)


@dataclass(frozen=True)
class PreviewImage:
    """A preview image Reddit generated for a link or video post."""
    url: str
    kind: str = field(default="preview", init=False)


MediaRef = Union[DirectImage, GalleryImage, PreviewImage]


def media_to_dict(media: MediaRef) -> Dict[str, Any]:
    data = {"kind": media.kind, "url": media.url}
    if isinstance(media, GalleryImage) and media.media_id:
        data["media_id"] = media.media_id
    return data


def media_from_dict(data: Dict[str, Any]) -> MediaRef:
    """Rebuild a media reference from its stored dict form.

    Raises:
        ValueError: If the kind tag is unknown
    """
    kind = data.get("kind")
    if kind == "direct":
        return DirectImage(url=data["url"])
    if kind == "gallery":
        return GalleryImage(url=data["url"], media_id=data.get("media_id"))
    if kind == "preview":
        return PreviewImage(url=data["url"])
    raise ValueError(f"Unknown media kind: {kind!r}")


@dataclass
class ProcessedComment:
    """A Reddit comment ready for storage.

    Comments are linked by Reddit ids here. Storage resolves
    parent_reddit_id to the parent's database id and refuses to write a comment
    whose parent has not been persisted.

    Attributes:
        reddit_id: Unique Reddit comment ID (maps to reddit_comments.reddit_id)
        post_reddit_id: Reddit ID of the post the comment belongs to
        parent_reddit_id: Reddit ID of the parent comment, None for top-level replies
        author: Username of the comment author
        body: Full text content of the comment
        score: Reddit score (upvotes - downvotes)
        depth: Nesting level (0 = top-level reply to post)
        created_utc: Unix timestamp of comment creation
    """
    reddit_id: str
    post_reddit_id: str
    parent_reddit_id: Optional[str]
    author: str
    body: str
    score: int
    depth: int
    created_utc: int


@dataclass
class ProcessedPost:
    """A Reddit submission ready for storage.

    Attributes:
        reddit_id: Unique Reddit post ID (maps to reddit_posts.reddit_id)
        subreddit: Community the post was collected from
        title: Post title
        body: Post body text (empty for image/link posts)
        author: Username of the post author
        permalink: Reddit permalink path
        url: Primary link of the post
        created_utc: Unix timestamp of post creation
        score: Reddit score
        ups: Upvote count
        num_comments: Total comment count reported by Reddit
        media: Extracted image references, deduplicated, in tier order
        metadata: Post flags (is_self, is_video, over_18, spoiler, stickied,
            is_original_content, link_flair_text)
        comments: Materialized reply tree in parent-before-child order
    """
    reddit_id: str
    subreddit: str
    title: str
    body: str
    author: str
    created_utc: int
    permalink: Optional[str] = None
    url: Optional[str] = None
    score: int = 0
    ups: int = 0
    num_comments: int = 0
    media: List[MediaRef] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    comments: List[ProcessedComment] = field(default_factory=list)

    @property
    def image_urls(self) -> List[str]:
        return [m.url for m in self.media]


@dataclass
class CollectionScope:
    """What the collector should fetch.

    Attributes:
        subreddit: Community name without the r/ prefix
        listing: One of "new", "hot", "top"
        limit: Maximum number of posts to fetch. None reads the listing until
            it reaches since (the "new" listing stops there).
        since: Only keep posts created at or after this Unix timestamp
        search_terms: When non-empty, only keep posts whose title or body
            contains at least one term (case-insensitive)
    """
    subreddit: str
    listing: str = "new"
    limit: Optional[int] = 100
    since: Optional[int] = None
    search_terms: List[str] = field(default_factory=list)


@dataclass
class CollectionSummary:
    """Counts reported by one collector run."""
    posts_fetched: int = 0
    posts_stored: int = 0
    posts_failed: int = 0
    comments_stored: int = 0
    threads_failed: int = 0
    stopped_early: bool = False
    watermark: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "posts_fetched": self.posts_fetched,
            "posts_stored": self.posts_stored,
            "posts_failed": self.posts_failed,
            "comments_stored": self.comments_stored,
            "threads_failed": self.threads_failed,
            "stopped_early": self.stopped_early,
            "watermark": self.watermark,
        }
