from datetime import date

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from fixtral.api.deps import DEVICE_COOKIE, get_archive, get_gemini, get_history, get_ledger, get_reddit
from fixtral.core.security import create_access_token
from fixtral.main import app
from fixtral.schemas import EditOutcome, RedditPost
from fixtral.services.credits import CreditLedger, LocalCreditStore
from fixtral.services.history import HistoryCascade, KeyValueHistoryTier
from fixtral.services.posts import PostArchive
from tests.helpers import PNG_DATA_URL, FailingTier, MemoryStore, MemoryTier, make_settings


class FakeGemini:
    def __init__(self, parse_error=False):
        self.parse_error = parse_error
        self.edits = 0

    async def edit_image(self, image_url, change_summary):
        self.edits += 1
        return EditOutcome(ok=True, method="google_gemini", edited=PNG_DATA_URL,
                           generated_images=[PNG_DATA_URL], has_image_data=True)

    async def analyze_post(self, title, description, image_url):
        return f"Remove the car from: {title}"

    async def parse_request(self, title, body=""):
        if self.parse_error:
            raise HTTPException(status_code=502, detail="Gemini API error")
        raise AssertionError("not used")


class FakeReddit:
    async def list_image_posts(self):
        return [RedditPost(id="p1", title="Fix my photo", image_url="https://i.redd.it/p1.jpg")]

    async def get_post(self, post_id):
        return RedditPost(id=post_id, title="Fix my photo", image_url="https://i.redd.it/p1.jpg")


def auth(user_id="user-1", email="user@example.com"):
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id, email=email)}"}


@pytest.fixture()
def ledger():
    store = MemoryStore()
    return CreditLedger([LocalCreditStore(store)], store, config=make_settings(), clock=lambda: date(2025, 3, 1))


@pytest.fixture()
def gemini():
    return FakeGemini()


@pytest.fixture()
def client(ledger, gemini):
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_gemini] = lambda: gemini
    app.dependency_overrides[get_history] = lambda: HistoryCascade([MemoryTier("local_db")])
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def test_edit_requires_sign_in(client):
    resp = client.post("/edit", json={"imageUrl": "https://i.redd.it/p1.jpg", "changeSummary": "remove car"})
    assert resp.status_code == 401


def test_edit_rejects_bad_tokens(client):
    resp = client.post(
        "/edit",
        json={"imageUrl": "https://i.redd.it/p1.jpg", "changeSummary": "remove car"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert resp.status_code == 401


def test_edit_spends_credits_until_the_daily_limit(client, gemini):
    body = {"imageUrl": "https://i.redd.it/p1.jpg", "changeSummary": "remove the car"}

    first = client.post("/edit", json=body, headers=auth())
    assert first.status_code == 200
    assert first.json()["method"] == "google_gemini"
    assert first.json()["generatedImages"] == [PNG_DATA_URL]
    assert first.json()["remainingCredits"] == 1

    second = client.post("/edit", json=body, headers=auth())
    assert second.json()["remainingCredits"] == 0

    third = client.post("/edit", json=body, headers=auth())
    assert third.status_code == 429
    assert "Daily generation limit reached" in third.json()["error"]
    assert gemini.edits == 2

    credits = client.get("/credits", headers=auth()).json()
    assert credits["canGenerate"] is False
    assert credits["credits"]["totalGenerations"] == 2


def test_history_save_list_and_delete(client):
    cascade = HistoryCascade([MemoryTier("remote", mirrored=True), MemoryTier("local_db")])
    app.dependency_overrides[get_history] = lambda: cascade

    saved = client.post("/history", json={"postId": "p1", "editedImageUrls": [PNG_DATA_URL]}, headers=auth())
    assert saved.status_code == 200
    assert saved.json() == {"success": True, "method": "remote", "downloadUrl": None}

    items = client.get("/history", headers=auth()).json()["items"]
    assert len(items) == 1
    assert items[0]["userId"] == "user-1"
    # anonymous callers do not see signed-in history
    assert client.get("/history").json()["total"] == 0

    assert client.delete(f"/history/{items[0]['id']}", headers=auth()).json() == {"ok": True}
    assert client.get("/history", headers=auth()).json()["total"] == 0


def test_anonymous_history_belongs_to_one_browser(client):
    cascade = HistoryCascade([MemoryTier("local_db"), KeyValueHistoryTier(MemoryStore())])
    app.dependency_overrides[get_history] = lambda: cascade
    other = TestClient(app)

    saved = client.post("/history", json={"postId": "private", "editedImageUrls": [PNG_DATA_URL]})
    assert saved.json()["method"] == "local_db"
    assert DEVICE_COOKIE in saved.cookies

    assert client.get("/history").json()["total"] == 1
    assert other.get("/history").json()["total"] == 0

    record_id = client.get("/history").json()["items"][0]["id"]
    assert other.delete(f"/history/{record_id}").json() == {"ok": True}
    assert other.delete("/history").json() == {"ok": True}
    items = client.get("/history").json()["items"]
    assert [i["postId"] for i in items] == ["private"]
    assert "deviceId" not in items[0]


def test_device_header_scopes_anonymous_history(client):
    cascade = HistoryCascade([KeyValueHistoryTier(MemoryStore())])
    app.dependency_overrides[get_history] = lambda: cascade

    client.post("/history", json={"postId": "p1"}, headers={"X-Device-Id": "phone"})
    assert client.get("/history", headers={"X-Device-Id": "phone"}).json()["total"] == 1
    assert client.get("/history", headers={"X-Device-Id": "laptop"}).json()["total"] == 0

    client.delete("/history", headers={"X-Device-Id": "phone"})
    assert client.get("/history", headers={"X-Device-Id": "phone"}).json()["total"] == 0


def test_history_total_failure_is_a_500(client):
    app.dependency_overrides[get_history] = lambda: HistoryCascade([FailingTier("local_db")])
    resp = client.post("/history", json={"postId": "p1"})
    assert resp.status_code == 500
    assert resp.json()["error"] == "Image generation was successful, but all save methods failed."


def test_parse_failure_returns_the_default_brief(client):
    app.dependency_overrides[get_gemini] = lambda: FakeGemini(parse_error=True)
    resp = client.post("/gemini/parse", json={"title": "Remove the car"})
    assert resp.status_code == 500
    assert resp.json()["task_type"] == "other"
    assert resp.json()["instructions"] == "Error parsing request"


def test_reddit_posts_are_archived(client):
    archive = PostArchive(MemoryStore())
    app.dependency_overrides[get_reddit] = lambda: FakeReddit()
    app.dependency_overrides[get_archive] = lambda: archive

    body = client.get("/reddit/posts").json()
    assert body["ok"] is True
    assert body["posts"][0]["imageUrl"] == "https://i.redd.it/p1.jpg"

    archived = client.get("/reddit/archive").json()
    assert [p["id"] for p in archived["posts"]] == ["p1"]

    analyzed = client.post("/reddit/analyze", json={"postId": "p1"}).json()
    assert analyzed["analysis"] == "Remove the car from: Fix my photo"
    assert analyzed["originalPost"]["imageUrl"] == "https://i.redd.it/p1.jpg"
