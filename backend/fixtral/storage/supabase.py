"""
Thin async client for the Supabase PostgREST API.

Every method raises StorageUnavailable on network errors and non-2xx replies
so callers can fall through to a local tier.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from fixtral.core.errors import StorageUnavailable
from fixtral.schemas import HistoryRecord, UserCredits

logger = logging.getLogger(__name__)

TIER_NAME = "remote"
HISTORY_TABLE = "edit_history"
CREDITS_TABLE = "user_credits"
POSTS_TABLE = "reddit_posts"
REMOTE_HISTORY_LIMIT = 50


class SupabaseClient:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {
            "Authorization": f"Bearer {service_key}",
            "apikey": service_key,
            "Accept": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = await self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise StorageUnavailable(TIER_NAME, f"{method} {path}: {e}") from e

        if resp.status_code >= 400:
            raise StorageUnavailable(TIER_NAME, f"{method} {path} -> {resp.status_code} {resp.text[:300]}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise StorageUnavailable(TIER_NAME, f"{method} {path} returned a non-JSON body") from e

    async def rpc(self, function: str, params: dict[str, Any]) -> Any:
        return await self._request("POST", f"/rpc/{function}", json=params)

    # --------------------- edit history ---------------------

    async def insert_history_record(self, record: HistoryRecord, user_id: str) -> HistoryRecord:
        row = {**record.to_row(), "user_id": user_id}
        rows = await self._request("POST", f"/{HISTORY_TABLE}", json=row, prefer="return=representation")
        if not rows:
            raise StorageUnavailable(TIER_NAME, "insert returned no row")
        return HistoryRecord.from_row(rows[0])

    async def list_history_records(self, user_id: str, limit: int = REMOTE_HISTORY_LIMIT) -> list[HistoryRecord]:
        params = {
            "user_id": f"eq.{user_id}",
            "select": "*",
            "order": "created_at.desc",
            "limit": str(limit),
        }
        rows = await self._request("GET", f"/{HISTORY_TABLE}", params=params) or []
        return [HistoryRecord.from_row(r) for r in rows]

    async def delete_history_record(self, record_id: str, user_id: str) -> None:
        params = {"id": f"eq.{record_id}", "user_id": f"eq.{user_id}"}
        await self._request("DELETE", f"/{HISTORY_TABLE}", params=params)

    async def clear_history_records(self, user_id: str) -> None:
        await self._request("DELETE", f"/{HISTORY_TABLE}", params={"user_id": f"eq.{user_id}"})

    # --------------------- credits ---------------------

    async def get_or_create_credits(self, user_id: str) -> UserCredits:
        rows = await self.rpc("get_or_create_user_credits", {"user_uuid": user_id})
        if not rows:
            raise StorageUnavailable(TIER_NAME, "get_or_create_user_credits returned nothing")
        row = rows[0] if isinstance(rows, list) else rows
        try:
            return UserCredits.model_validate(row)
        except ValidationError as e:
            raise StorageUnavailable(TIER_NAME, f"unreadable credits row for {user_id}") from e

    async def update_credits_if(self, user_id: str, expected: UserCredits, new: UserCredits) -> bool:
        """Conditional update: applies `new` only if the row still equals `expected`.

        Returns False when another writer got there first.
        """
        params = {
            "user_id": f"eq.{user_id}",
            "daily_generations": f"eq.{expected.daily_generations}",
            "last_reset_date": f"eq.{expected.last_reset_date.isoformat()}",
            "total_generations": f"eq.{expected.total_generations}",
        }
        body = new.model_dump(mode="json")
        rows = await self._request(
            "PATCH", f"/{CREDITS_TABLE}", params=params, json=body, prefer="return=representation"
        )
        return bool(rows)

    async def is_user_admin(self, user_id: str) -> bool:
        return bool(await self.rpc("is_user_admin", {"user_uuid": user_id}))

    # --------------------- reddit posts ---------------------

    async def upsert_post(self, row: dict[str, Any]) -> None:
        await self._request(
            "POST",
            f"/{POSTS_TABLE}",
            params={"on_conflict": "post_id"},
            json=row,
            prefer="resolution=merge-duplicates",
        )

    async def list_posts(self, limit: int = 50) -> list[dict[str, Any]]:
        params = {"select": "*", "order": "created_at.desc", "limit": str(limit)}
        return await self._request("GET", f"/{POSTS_TABLE}", params=params) or []
