"""Reddit Integration Module

This module provides the Async PRAW client, submission normalization, media
extraction and thread materialization used by the content collector.
"""

import asyncio
import html
from typing import Iterable, List, Optional
from urllib.parse import urlparse

import asyncpraw
import structlog
from asyncpraw.models import MoreComments
from asyncprawcore.exceptions import (
    InvalidToken,
    OAuthException,
    ResponseException,
    ServerError,
    TooManyRequests,
)

from reddit_pulse.backend.utils.errors import (
    ConfigurationError,
    ItemFetchError,
    SourceUnavailableError,
)
from reddit_pulse.config import PipelineConfig
from reddit_pulse.models.reddit_models import (
    CollectionScope,
    DirectImage,
    GalleryImage,
    MediaRef,
    PreviewImage,
    ProcessedComment,
    ProcessedPost,
)

logger = structlog.get_logger()

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
REMOVED_BODIES = {"[deleted]", "[removed]"}
LISTINGS = ("new", "hot", "top")
METADATA_FLAGS = (
    "is_self",
    "is_video",
    "over_18",
    "spoiler",
    "stickied",
    "is_original_content",
)

# HTTP statuses that mean no further request can succeed this run
_FATAL_STATUSES = {401, 403, 429, 503}


async def get_reddit_client(config: PipelineConfig) -> asyncpraw.Reddit:
    """Initialize an Async PRAW Reddit client from explicit configuration.

    A refresh token is preferred; username/password (script app) is the
    fallback.

    Raises:
        ConfigurationError: Credentials are missing
        SourceUnavailableError: Async PRAW rejected the credentials
    """
    missing_vars = []
    if not config.reddit_client_id:
        missing_vars.append('REDDIT_CLIENT_ID')
    if not config.reddit_client_secret:
        missing_vars.append('REDDIT_CLIENT_SECRET')
    if not config.reddit_refresh_token and not (config.reddit_username and config.reddit_password):
        missing_vars.append('REDDIT_REFRESH_TOKEN')

    if missing_vars:
        logger.error("reddit_client_init_failed", missing_vars=missing_vars)
        raise ConfigurationError(missing_vars)

    credentials = {
        "client_id": config.reddit_client_id,
        "client_secret": config.reddit_client_secret,
        "user_agent": config.reddit_user_agent,
        "timeout": config.request_timeout,
    }
    if config.reddit_refresh_token:
        credentials["refresh_token"] = config.reddit_refresh_token
        auth_mode = "refresh_token"
    else:
        credentials["username"] = config.reddit_username
        credentials["password"] = config.reddit_password
        auth_mode = "password"

    try:
        reddit = asyncpraw.Reddit(**credentials)
    except Exception as e:
        logger.error(
            "reddit_authentication_failed",
            error=str(e),
            error_type=type(e).__name__
        )
        raise SourceUnavailableError(f"Reddit API unavailable: {e}") from e

    logger.info("reddit_client_initialized", user_agent=config.reddit_user_agent, auth_mode=auth_mode)
    return reddit


def is_source_unavailable(exc: BaseException) -> bool:
    """True when an exception means the whole source is unusable.

    Authentication failures, rate limiting and outages qualify; anything else
    is scoped to the item that raised it.
    """
    if isinstance(exc, (OAuthException, InvalidToken, TooManyRequests, ServerError)):
        return True
    if isinstance(exc, ResponseException):
        status = getattr(getattr(exc, "response", None), "status", None)
        return status in _FATAL_STATUSES
    return False


def _has_image_extension(url: str) -> bool:
    return urlparse(url).path.lower().endswith(IMAGE_EXTENSIONS)


def _gallery_media_ids(submission, media_metadata: dict) -> List[str]:
    # gallery_data carries the display order; media_metadata alone is unordered
    gallery_data = getattr(submission, "gallery_data", None)
    if isinstance(gallery_data, dict):
        items = gallery_data.get("items") or []
        ordered = [item.get("media_id") for item in items if isinstance(item, dict)]
        ordered = [media_id for media_id in ordered if media_id in media_metadata]
        if ordered:
            return ordered
    return list(media_metadata)


def extract_media(submission) -> List[MediaRef]:
    """Extract image references from a submission.

    Three cases are checked in order and their results concatenated, with
    duplicate URLs dropped:

    1. Direct: the primary link ends with an image extension
       (.jpg .jpeg .png .gif .webp, query string ignored).
    2. Gallery: is_gallery is set and media_metadata holds entries; each
       entry's best-quality source (s.u, or s.gif for animations).
    3. Preview: preview.images[*].source.url.

    Gallery and preview URLs come HTML-escaped from the API and are unescaped.

    Example:
        >>> submission.url = "https://i.redd.it/abc123.jpg"
        >>> extract_media(submission)
        [DirectImage(url='https://i.redd.it/abc123.jpg', kind='direct')]
    """
    media: List[MediaRef] = []
    seen = set()

    def add(ref: MediaRef) -> None:
        if ref.url not in seen:
            seen.add(ref.url)
            media.append(ref)

    url = getattr(submission, "url", None)
    if isinstance(url, str) and _has_image_extension(url):
        add(DirectImage(url=url))

    media_metadata = getattr(submission, "media_metadata", None)
    if getattr(submission, "is_gallery", False) is True and isinstance(media_metadata, dict):
        for media_id in _gallery_media_ids(submission, media_metadata):
            entry = media_metadata.get(media_id)
            if not isinstance(entry, dict) or entry.get("status", "valid") != "valid":
                continue
            source = entry.get("s") or {}
            source_url = source.get("u") or source.get("gif")
            if source_url:
                add(GalleryImage(url=html.unescape(source_url), media_id=media_id))

    preview = getattr(submission, "preview", None)
    if isinstance(preview, dict):
        for image in preview.get("images") or []:
            source_url = (image.get("source") or {}).get("url")
            if source_url:
                add(PreviewImage(url=html.unescape(source_url)))

    return media


def is_removed(author, body) -> bool:
    """True for deleted or removed content (no author, or no usable body)."""
    if author is None:
        return True
    if body is None:
        return True
    body = body.strip()
    return not body or body in REMOVED_BODIES


def normalize_submission(submission, subreddit: str) -> Optional[ProcessedPost]:
    """Map an Async PRAW Submission to a ProcessedPost.

    Link and image posts legitimately have an empty selftext, so only a
    missing author or an explicit [deleted]/[removed] body marks a post as
    removed.

    Returns:
        ProcessedPost, or None for deleted/removed posts
    """
    selftext = getattr(submission, "selftext", "") or ""
    if submission.author is None or selftext.strip() in REMOVED_BODIES:
        return None

    metadata = {flag: bool(getattr(submission, flag, False)) for flag in METADATA_FLAGS}
    metadata["link_flair_text"] = getattr(submission, "link_flair_text", None)

    return ProcessedPost(
        reddit_id=submission.id,
        subreddit=subreddit,
        title=submission.title,
        body=selftext,
        author=str(submission.author),
        permalink=getattr(submission, "permalink", None),
        url=getattr(submission, "url", None),
        created_utc=int(submission.created_utc),
        score=submission.score,
        ups=getattr(submission, "ups", submission.score),
        num_comments=submission.num_comments,
        media=extract_media(submission),
        metadata=metadata,
    )


def _matches_terms(post: ProcessedPost, terms: Iterable[str]) -> bool:
    haystack = f"{post.title}\n{post.body}".lower()
    return any(term.lower() in haystack for term in terms)


def materialize_thread(
    forest: Iterable,
    post_reddit_id: str,
    max_depth: int,
    max_per_level: int,
) -> List[ProcessedComment]:
    """Flatten a reply forest into parent-before-child order, bounded in size.

    At each level only the max_per_level highest-scoring children are kept,
    and only max_depth levels are walked (depth 0 is a top-level reply).
    Deleted or removed comments are dropped together with their replies,
    since those replies would have no persisted parent to link to.

    Args:
        forest: Top-level comments (an Async PRAW CommentForest or any iterable
            of comment-like objects with id, author, body, score,
            created_utc and replies)
        post_reddit_id: Reddit ID of the owning post
        max_depth: Number of levels to keep (>= 1)
        max_per_level: Children kept per parent (>= 1)

    Returns:
        list[ProcessedComment] in depth-first pre-order
    """
    result: List[ProcessedComment] = []

    def top_children(children) -> list:
        candidates = [c for c in children if not isinstance(c, MoreComments)]
        candidates.sort(key=lambda c: getattr(c, "score", 0) or 0, reverse=True)
        return candidates[:max_per_level]

    def walk(children, parent_reddit_id: Optional[str], depth: int) -> None:
        if depth >= max_depth:
            return
        for comment in top_children(children):
            if is_removed(comment.author, getattr(comment, "body", None)):
                logger.debug(
                    "removed_comment_skipped",
                    reddit_id=getattr(comment, "id", None),
                    post_reddit_id=post_reddit_id
                )
                continue

            result.append(ProcessedComment(
                reddit_id=comment.id,
                post_reddit_id=post_reddit_id,
                parent_reddit_id=parent_reddit_id,
                author=str(comment.author),
                body=comment.body,
                score=comment.score,
                depth=depth,
                created_utc=int(comment.created_utc),
            ))
            walk(getattr(comment, "replies", None) or [], comment.id, depth + 1)

    walk(forest, None, 0)
    return result


class RedditSource:
    """Content source backed by Async PRAW.

    Every call to Reddit is bounded by request_timeout. Failures that make the
    whole source unusable raise SourceUnavailableError; failures scoped to one
    post's replies raise ItemFetchError.
    """

    def __init__(self, reddit: asyncpraw.Reddit, request_timeout: float = 30):
        self.reddit = reddit
        self.request_timeout = request_timeout

    async def _collect_listing(self, scope: CollectionScope) -> List[ProcessedPost]:
        subreddit = await self.reddit.subreddit(scope.subreddit)
        listing = getattr(subreddit, scope.listing)
        posts = []
        skipped = 0

        async for submission in listing(limit=scope.limit):
            if scope.since is not None and int(submission.created_utc) < scope.since:
                if scope.listing == "new":
                    break
                continue

            post = normalize_submission(submission, scope.subreddit)
            if post is None:
                skipped += 1
                continue
            if scope.search_terms and not _matches_terms(post, scope.search_terms):
                continue
            posts.append(post)

        logger.info(
            "posts_fetched",
            subreddit=scope.subreddit,
            listing=scope.listing,
            requested_limit=scope.limit,
            fetched_count=len(posts),
            removed_skipped=skipped,
            posts_with_images=sum(1 for p in posts if p.media)
        )
        return posts

    async def fetch_top_items(self, scope: CollectionScope) -> List[ProcessedPost]:
        """Fetch and normalize the posts selected by a collection scope.

        Raises:
            ValueError: scope.listing is not one of new, hot, top
            SourceUnavailableError: The listing could not be read
        """
        if scope.listing not in LISTINGS:
            raise ValueError(f"Unsupported listing: {scope.listing!r}")

        try:
            return await asyncio.wait_for(self._collect_listing(scope), timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            logger.error("posts_fetch_timeout", subreddit=scope.subreddit, timeout=self.request_timeout)
            raise SourceUnavailableError(
                f"Timed out listing r/{scope.subreddit} after {self.request_timeout}s"
            ) from e
        except Exception as e:
            logger.error(
                "posts_fetch_failed",
                subreddit=scope.subreddit,
                error=str(e),
                error_type=type(e).__name__
            )
            raise SourceUnavailableError(f"Reddit API unavailable: {e}") from e

    async def _load_forest(self, post_reddit_id: str):
        submission = await self.reddit.submission(post_reddit_id)
        forest = submission.comments
        # Drop "load more" stubs instead of expanding them; the top-N
        # policy only ever needs the highest-scoring loaded replies.
        await forest.replace_more(limit=0)
        return forest

    async def fetch_replies(
        self,
        post_reddit_id: str,
        max_depth: int,
        max_per_level: int,
    ) -> List[ProcessedComment]:
        """Fetch one post's reply tree and materialize it.

        Raises:
            SourceUnavailableError: Authentication, rate limit or outage
            ItemFetchError: Anything else, including a timeout
        """
        try:
            forest = await asyncio.wait_for(
                self._load_forest(post_reddit_id),
                timeout=self.request_timeout
            )
        except asyncio.TimeoutError as e:
            raise ItemFetchError(
                f"Timed out fetching replies for {post_reddit_id} after {self.request_timeout}s"
            ) from e
        except Exception as e:
            if is_source_unavailable(e):
                logger.error(
                    "reddit_source_unavailable",
                    post_reddit_id=post_reddit_id,
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise SourceUnavailableError(f"Reddit API unavailable: {e}") from e
            raise ItemFetchError(f"Failed to fetch replies for {post_reddit_id}: {e}") from e

        try:
            comments = materialize_thread(forest, post_reddit_id, max_depth, max_per_level)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(
                "malformed_reply_tree",
                post_reddit_id=post_reddit_id,
                error=str(e),
                error_type=type(e).__name__
            )
            raise ItemFetchError(f"Malformed reply tree for {post_reddit_id}: {e}") from e

        logger.debug(
            "replies_fetched",
            post_reddit_id=post_reddit_id,
            comment_count=len(comments),
            max_depth=max_depth,
            max_per_level=max_per_level
        )
        return comments

    async def close(self) -> None:
        await self.reddit.close()
