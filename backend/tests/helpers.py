import base64
import json
from datetime import date
from typing import Any, Optional

import httpx

from fixtral.core.config import Settings
from fixtral.core.errors import StorageUnavailable
from fixtral.schemas import HistoryRecord, UserCredits
from fixtral.services.credits import CreditStore, LocalCreditStore
from fixtral.services.history import HistoryTier
from fixtral.storage.keyvalue import KeyValueStore
from fixtral.storage.supabase import SupabaseClient

# 1x1 transparent PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")


def make_settings(**overrides) -> Settings:
    values = {
        "daily_generation_quota": 2,
        "admin_id": "",
        "admin_uid": "",
        "credit_reset_timezone": "",
        "supabase_url": "",
        "supabase_service_role_key": "",
    }
    values.update(overrides)
    return Settings(**values)


def make_record(**overrides) -> HistoryRecord:
    values: dict[str, Any] = {
        "post_id": "abc123",
        "post_title": "Remove the car",
        "edited_image_urls": [PNG_DATA_URL],
    }
    values.update(overrides)
    return HistoryRecord(**values)


class MemoryStore(KeyValueStore):
    def __init__(self, fail: bool = False):
        self.data: dict[str, Any] = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise StorageUnavailable("local_storage", "disk full")

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value):
        self._check()
        self.data[key] = value

    def delete(self, key):
        self._check()
        self.data.pop(key, None)


class MemoryTier(HistoryTier):
    def __init__(self, name: str, mirrored: bool = False):
        self.name = name
        self.mirrored = mirrored
        self.records: dict[str, HistoryRecord] = {}

    async def save(self, record):
        self.records[record.id] = record

    @staticmethod
    def _owns(record, user_id, device_id):
        if user_id:
            return record.user_id == user_id
        return record.user_id is None and device_id is not None and record.device_id == device_id

    async def load(self, user_id, limit, device_id=None):
        owned = [r for r in self.records.values() if self._owns(r, user_id, device_id)]
        return sorted(owned, key=lambda r: r.timestamp, reverse=True)[:limit]

    async def delete(self, record_id, user_id, device_id=None):
        record = self.records.get(record_id)
        if record is not None and self._owns(record, user_id, device_id):
            del self.records[record_id]

    async def clear(self, user_id, device_id=None):
        self.records = {k: r for k, r in self.records.items() if not self._owns(r, user_id, device_id)}


class FailingTier(HistoryTier):
    def __init__(self, name: str, mirrored: bool = False, error: Optional[Exception] = None):
        self.name = name
        self.mirrored = mirrored
        self.error = error or StorageUnavailable(name, "offline")
        self.calls = 0

    async def _fail(self, *args):
        self.calls += 1
        raise self.error

    save = load = delete = clear = _fail


class FailingCreditStore(CreditStore):
    name = "remote"

    async def get_or_create(self, user_id: str, today: date) -> UserCredits:
        raise StorageUnavailable(self.name, "offline")

    async def compare_and_set(self, user_id, expected, new) -> bool:
        raise StorageUnavailable(self.name, "offline")

    async def put(self, user_id, credits) -> None:
        raise StorageUnavailable(self.name, "offline")


class RacyCreditStore(LocalCreditStore):
    """Another writer spends a credit right before our first write lands."""

    def __init__(self, store: KeyValueStore):
        super().__init__(store)
        self.raced = False

    async def compare_and_set(self, user_id, expected, new) -> bool:
        if not self.raced:
            self.raced = True
            current = self._read(user_id)
            self._write(user_id, current.model_copy(update={
                "daily_generations": current.daily_generations + 1,
                "total_generations": current.total_generations + 1,
            }))
        return await super().compare_and_set(user_id, expected, new)


def supabase_client(handler) -> SupabaseClient:
    return SupabaseClient("https://demo.supabase.co", "service-key", transport=httpx.MockTransport(handler))


class FakeCreditsBackend:
    """Just enough of PostgREST to serve one `user_credits` row."""

    def __init__(self, row: dict[str, Any]):
        self.row = dict(row)
        self.patches = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/rest/v1/rpc/get_or_create_user_credits":
            return httpx.Response(200, json=[self.row])
        if path == "/rest/v1/rpc/is_user_admin":
            return httpx.Response(200, json=False)
        if path == "/rest/v1/user_credits" and request.method == "PATCH":
            self.patches += 1
            params = request.url.params
            matches = all(params[field] == f"eq.{self.row[field]}" for field in self.row)
            if not matches:
                return httpx.Response(200, json=[])
            self.row.update(json.loads(request.content))
            return httpx.Response(200, json=[self.row])
        return httpx.Response(404)
