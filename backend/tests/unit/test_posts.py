import httpx
import pytest

from fixtral.schemas import RedditPost
from fixtral.services.posts import POSTS_KEY, PostArchive
from tests.helpers import MemoryStore, supabase_client

pytestmark = pytest.mark.anyio


def reddit_post(post_id, created_utc=0, title="t"):
    return RedditPost(id=post_id, title=title, image_url=f"https://i.redd.it/{post_id}.jpg", created_utc=created_utc)


async def test_local_archive_merges_by_post_id():
    store = MemoryStore()
    archive = PostArchive(store)

    assert await archive.save_posts([reddit_post("a", 1), reddit_post("b", 2)]) == "local_storage"
    await archive.save_posts([reddit_post("a", 1, title="updated")])

    assert len(store.data[POSTS_KEY]) == 2
    posts = await archive.list_posts()
    assert [p.id for p in posts] == ["b", "a"]
    assert posts[1].title == "updated"


async def test_remote_failure_falls_back_to_local():
    store = MemoryStore()
    remote = supabase_client(lambda request: httpx.Response(503))
    archive = PostArchive(store, remote)

    assert await archive.save_posts([reddit_post("a")]) == "local_storage"
    assert [p.id for p in await archive.list_posts()] == ["a"]


async def test_remote_archive_upserts_on_post_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201)

    archive = PostArchive(MemoryStore(), supabase_client(handler))
    assert await archive.save_posts([reddit_post("a")]) == "remote"
    assert seen[0].url.params["on_conflict"] == "post_id"
