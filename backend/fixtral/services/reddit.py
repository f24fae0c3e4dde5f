import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from fastapi import HTTPException

from fixtral.core.config import Settings, settings
from fixtral.schemas import RedditPost

logger = logging.getLogger(__name__)

TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
API_BASE = "https://oauth.reddit.com"

IMAGE_SUFFIX = re.compile(r"\.(jpg|jpeg|png|gif|webp)$", re.IGNORECASE)
IMAGE_HOSTS = ("i.redd.it", "i.imgur.com", "redditmedia")
RECENT_WINDOW_SECONDS = 24 * 60 * 60
# Refresh a little before Reddit's expiry.
TOKEN_EXPIRY_MARGIN = 60

RATE_LIMIT_HINT = (
    "Reddit is rate limiting your requests. Please wait 5-10 minutes and try again."
)


def _unquote(value: str) -> str:
    return (value or "").replace('"', "")


def _unescape(url: str) -> str:
    return url.replace("&amp;", "&")


def _looks_like_image(url: Optional[str]) -> bool:
    if not url:
        return False
    return bool(IMAGE_SUFFIX.search(url)) or any(host in url for host in IMAGE_HOSTS)


def has_image(post: dict[str, Any]) -> bool:
    if _looks_like_image(post.get("url")):
        return True
    preview = post.get("preview") or {}
    return bool(post.get("url") and preview.get("images"))


def best_image_url(post: dict[str, Any]) -> str:
    """Pick the highest quality image a post offers.

    Galleries use their first item, crossposts the parent's image, everything
    else the preview source; the post URL is the fallback.
    """
    image_url = post.get("url") or ""

    metadata = post.get("media_metadata") or {}
    if post.get("is_gallery") and metadata:
        first = next(iter(metadata.values()), {}) or {}
        source = (first.get("s") or {}).get("u")
        if source:
            return _unescape(source)
        return image_url

    parents = post.get("crosspost_parent_list") or []
    if parents:
        parent_url = parents[0].get("url")
        if _looks_like_image(parent_url):
            return parent_url
        return image_url

    images = (post.get("preview") or {}).get("images") or []
    if images:
        source = (images[0].get("source") or {}).get("url")
        if source:
            return _unescape(source)
    return image_url


def to_post(data: dict[str, Any]) -> RedditPost:
    created_utc = float(data.get("created_utc") or 0)
    return RedditPost(
        id=data["id"],
        title=data.get("title") or "",
        description=data.get("selftext") or data.get("title") or "",
        image_url=best_image_url(data),
        post_url=f"https://reddit.com{data.get('permalink', '')}",
        created_utc=created_utc,
        created_date=datetime.fromtimestamp(created_utc, tz=timezone.utc).isoformat(),
        author=data.get("author") or "",
        score=data.get("score") or 0,
        num_comments=data.get("num_comments") or 0,
        subreddit=data.get("subreddit") or "",
        thumbnail=data.get("thumbnail"),
        upvote_ratio=data.get("upvote_ratio"),
    )


def recent_image_posts(listing: dict[str, Any], now: Optional[float] = None) -> list[RedditPost]:
    cutoff = (now if now is not None else time.time()) - RECENT_WINDOW_SECONDS
    children = (listing.get("data") or {}).get("children") or []
    posts = [c.get("data") or {} for c in children]
    return [to_post(p) for p in posts if has_image(p) and float(p.get("created_utc") or 0) > cutoff]


class RedditClient:
    def __init__(self, config: Settings = settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def subreddit(self) -> str:
        return self.config.reddit_subreddit

    @property
    def user_agent(self) -> str:
        return _unquote(self.config.reddit_user_agent).strip()

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=20.0, transport=self._transport)

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if self._token and time.time() < self._token_expires_at:
            return self._token

        client_id = _unquote(self.config.reddit_client_id).strip()
        client_secret = _unquote(self.config.reddit_client_secret).strip()
        username = _unquote(self.config.reddit_username).strip()
        password = _unquote(self.config.reddit_password)
        if not (client_id and client_secret and username and password):
            raise HTTPException(status_code=500, detail="Reddit credentials are missing from environment variables")

        data = {"grant_type": "password", "username": username, "password": password, "scope": "identity,read"}
        resp = await client.post(
            TOKEN_URL,
            data=data,
            auth=(client_id, client_secret),
            headers={"User-Agent": self.user_agent},
        )
        if resp.status_code == 429:
            raise HTTPException(status_code=429, detail=RATE_LIMIT_HINT)
        if resp.status_code != 200:
            logger.error("Reddit token call failed: %s %s", resp.status_code, resp.text[:300])
            raise HTTPException(status_code=502, detail=f"Failed to get Reddit access token: {resp.status_code}")

        payload = resp.json()
        token = payload.get("access_token")
        if not token:
            # Reddit answers 200 with {"error": ...} for bad credentials.
            raise HTTPException(status_code=502, detail=f"Reddit rejected credentials: {payload.get('error', 'unknown')}")
        self._token = token
        self._token_expires_at = time.time() + float(payload.get("expires_in", 3600)) - TOKEN_EXPIRY_MARGIN
        return token

    async def _get(self, path: str) -> Any:
        try:
            async with self._http() as client:
                token = await self._access_token(client)
                resp = await client.get(
                    f"{API_BASE}{path}",
                    headers={"Authorization": f"bearer {token}", "User-Agent": self.user_agent},
                )
        except httpx.RequestError as e:
            logger.error("Error contacting Reddit: %s", e)
            raise HTTPException(status_code=502, detail="Cannot reach Reddit API")

        if resp.status_code == 429:
            raise HTTPException(status_code=429, detail=RATE_LIMIT_HINT)
        if resp.status_code == 404:
            raise HTTPException(status_code=404, detail="Post not found")
        if resp.status_code != 200:
            logger.error("Reddit API error: %s %s", resp.status_code, resp.text[:300])
            raise HTTPException(status_code=502, detail=f"Reddit API error: {resp.status_code}")
        return resp.json()

    async def list_image_posts(self) -> list[RedditPost]:
        listing = await self._get(f"/r/{self.subreddit}/new?limit=50")
        posts = recent_image_posts(listing)
        logger.info("found %d image posts from r/%s in the last 24 hours", len(posts), self.subreddit)
        return posts

    async def get_post(self, post_id: str) -> RedditPost:
        thread = await self._get(f"/r/{self.subreddit}/comments/{post_id}")
        try:
            data = thread[0]["data"]["children"][0]["data"]
        except (IndexError, KeyError, TypeError):
            raise HTTPException(status_code=404, detail="Post not found")
        return to_post(data)
