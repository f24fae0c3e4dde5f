import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from fixtral.api.deps import get_archive, get_gemini, get_reddit
from fixtral.services.gemini import GeminiService
from fixtral.services.posts import PostArchive
from fixtral.services.reddit import RedditClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reddit", tags=["reddit"])


class AnalyzePostIn(BaseModel):
    post_id: str = Field(alias="postId", min_length=1)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/posts")
async def list_posts(
    reddit: RedditClient = Depends(get_reddit),
    archive: PostArchive = Depends(get_archive),
):
    posts = await reddit.list_image_posts()
    stored_in = await archive.save_posts(posts)
    if stored_in:
        logger.info("archived %d posts via %s", len(posts), stored_in)
    return {
        "ok": True,
        "posts": [p.model_dump(by_alias=True) for p in posts],
        "total": len(posts),
        "timestamp": _now(),
    }


@router.get("/archive")
async def archived_posts(archive: PostArchive = Depends(get_archive)):
    posts = await archive.list_posts()
    return {"ok": True, "posts": [p.model_dump(by_alias=True) for p in posts], "total": len(posts)}


@router.post("/analyze")
async def analyze_post(
    payload: AnalyzePostIn,
    reddit: RedditClient = Depends(get_reddit),
    gemini: GeminiService = Depends(get_gemini),
):
    post = await reddit.get_post(payload.post_id)
    analysis = await gemini.analyze_post(post.title, post.description, post.image_url)
    return {
        "ok": True,
        "postId": post.id,
        "originalPost": {"title": post.title, "description": post.description, "imageUrl": post.image_url},
        "analysis": analysis,
        "timestamp": _now(),
    }
