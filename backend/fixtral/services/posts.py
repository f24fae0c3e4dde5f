import logging
from typing import Any, Optional, Sequence

from pydantic import ValidationError

from fixtral.core.errors import StorageUnavailable
from fixtral.schemas import RedditPost
from fixtral.storage.keyvalue import KeyValueStore
from fixtral.storage.supabase import SupabaseClient

logger = logging.getLogger(__name__)

POSTS_KEY = "reddit_posts"
POSTS_LIMIT = 50


def to_row(post: RedditPost) -> dict[str, Any]:
    return {
        "post_id": post.id,
        "title": post.title,
        "description": post.description,
        "image_url": post.image_url,
        "author": post.author,
        "subreddit": post.subreddit,
        "score": post.score,
        "num_comments": post.num_comments,
        "created_utc": int(post.created_utc),
        "permalink": post.post_url,
    }


def from_row(row: dict[str, Any]) -> RedditPost:
    return RedditPost(
        id=row["post_id"],
        title=row.get("title") or "",
        description=row.get("description") or "",
        image_url=row.get("image_url") or "",
        post_url=row.get("permalink") or "",
        created_utc=float(row.get("created_utc") or 0),
        author=row.get("author") or "",
        score=row.get("score") or 0,
        num_comments=row.get("num_comments") or 0,
        subreddit=row.get("subreddit") or "",
    )


class PostArchive:
    """Keeps every post the fetcher has seen, in Supabase or on this device."""

    def __init__(self, local: KeyValueStore, remote: Optional[SupabaseClient] = None):
        self.local = local
        self.remote = remote

    async def save_posts(self, posts: Sequence[RedditPost]) -> Optional[str]:
        """Archive `posts`; returns the tier that stored them, or None."""
        if not posts:
            return None
        if self.remote is not None:
            try:
                for post in posts:
                    await self.remote.upsert_post(to_row(post))
                return "remote"
            except StorageUnavailable as e:
                logger.warning("remote post archive failed, keeping posts locally: %s", e)

        try:
            self._merge_local(posts)
        except StorageUnavailable as e:
            logger.error("could not archive %d posts: %s", len(posts), e)
            return None
        return "local_storage"

    def _local_posts(self) -> list[dict[str, Any]]:
        value = self.local.get(POSTS_KEY)
        return value if isinstance(value, list) else []

    def _merge_local(self, posts: Sequence[RedditPost]) -> None:
        fresh = [p.model_dump(by_alias=True) for p in posts]
        seen = {p["id"] for p in fresh}
        kept = [p for p in self._local_posts() if isinstance(p, dict) and p.get("id") not in seen]
        self.local.set(POSTS_KEY, fresh + kept)

    async def list_posts(self, limit: int = POSTS_LIMIT) -> list[RedditPost]:
        if self.remote is not None:
            try:
                return [from_row(r) for r in await self.remote.list_posts(limit)]
            except StorageUnavailable as e:
                logger.warning("remote post archive unavailable: %s", e)

        posts = []
        try:
            entries = self._local_posts()
        except StorageUnavailable as e:
            logger.error("local post archive unreadable: %s", e)
            return []
        for entry in entries:
            try:
                posts.append(RedditPost.model_validate(entry))
            except ValidationError:
                logger.debug("skipping unreadable archived post %r", entry)
        posts.sort(key=lambda p: p.created_utc, reverse=True)
        return posts[:limit]
