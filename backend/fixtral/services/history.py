"""
Edit history persistence across storage tiers.

Tiers are tried in order: Supabase (signed-in users), the embedded SQLite
store, then the local key-value list. Signed-in records are owned by the user
id, anonymous records by the device id of the browser that created them; an
anonymous caller without a device id owns nothing.

Saving stops at the first local tier that succeeds; the remote tier is mirrored, so a remote success still writes
a device-local copy. When nothing could be stored, the edited image is
exported as a download so the user keeps the result.
"""
from __future__ import annotations

import base64
import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import and_, delete, false, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fixtral.core.errors import StorageUnavailable, TotalPersistenceFailure
from fixtral.models import EditHistoryEntry
from fixtral.schemas import ANONYMOUS_USER, HistoryRecord, SaveResult
from fixtral.storage.keyvalue import KeyValueStore
from fixtral.storage.supabase import REMOTE_HISTORY_LIMIT, SupabaseClient

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100
LOCAL_HISTORY_CAP = 50
HISTORY_KEY = "fixtral_editHistory"
LEGACY_HISTORY_KEY = "editHistory"
DOWNLOAD_METHOD = "download"


class HistoryTier(ABC):
    name: str
    # A mirrored tier does not end the save chain when it succeeds.
    mirrored: bool = False

    @abstractmethod
    async def save(self, record: HistoryRecord) -> None:
        ...

    @abstractmethod
    async def load(self, user_id: Optional[str], limit: int, device_id: Optional[str] = None) -> list[HistoryRecord]:
        ...

    @abstractmethod
    async def delete(self, record_id: str, user_id: Optional[str], device_id: Optional[str] = None) -> None:
        """Remove the record if present; a missing id is not an error."""

    @abstractmethod
    async def clear(self, user_id: Optional[str], device_id: Optional[str] = None) -> None:
        ...


class RemoteHistoryTier(HistoryTier):
    name = "remote"
    mirrored = True

    def __init__(self, client: Optional[SupabaseClient]):
        self.client = client

    async def save(self, record: HistoryRecord) -> None:
        if self.client is None:
            raise StorageUnavailable(self.name, "Supabase is not configured")
        if record.is_anonymous:
            raise StorageUnavailable(self.name, "anonymous records stay on this device")
        await self.client.insert_history_record(record, record.user_id)

    async def load(self, user_id: Optional[str], limit: int, device_id: Optional[str] = None) -> list[HistoryRecord]:
        if self.client is None or not user_id:
            return []
        return await self.client.list_history_records(user_id, min(limit, REMOTE_HISTORY_LIMIT))

    async def delete(self, record_id: str, user_id: Optional[str], device_id: Optional[str] = None) -> None:
        if self.client is None or not user_id:
            return
        await self.client.delete_history_record(record_id, user_id)

    async def clear(self, user_id: Optional[str], device_id: Optional[str] = None) -> None:
        if self.client is None or not user_id:
            return
        await self.client.clear_history_records(user_id)


def _owned_by(user_id: Optional[str], device_id: Optional[str]):
    if user_id:
        return EditHistoryEntry.user_id == user_id
    if not device_id:
        return false()
    return and_(EditHistoryEntry.user_id.is_(None), EditHistoryEntry.device_id == device_id)


class LocalDatabaseTier(HistoryTier):
    name = "local_db"

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self.sessionmaker = sessionmaker

    async def save(self, record: HistoryRecord) -> None:
        entry = EditHistoryEntry(
            id=record.id,
            user_id=record.user_id,
            device_id=record.device_id,
            timestamp=record.timestamp,
            payload=record.to_local(),
        )
        async with self.sessionmaker() as session:
            await session.merge(entry)
            await session.commit()

    async def load(self, user_id: Optional[str], limit: int, device_id: Optional[str] = None) -> list[HistoryRecord]:
        stmt = (
            select(EditHistoryEntry)
            .where(_owned_by(user_id, device_id))
            .order_by(EditHistoryEntry.timestamp.desc())
            .limit(limit)
        )
        async with self.sessionmaker() as session:
            entries = (await session.execute(stmt)).scalars().all()
        return _parse_entries(self.name, [e.payload for e in entries])

    async def delete(self, record_id: str, user_id: Optional[str], device_id: Optional[str] = None) -> None:
        async with self.sessionmaker() as session:
            await session.execute(
                delete(EditHistoryEntry).where(EditHistoryEntry.id == record_id, _owned_by(user_id, device_id))
            )
            await session.commit()

    async def clear(self, user_id: Optional[str], device_id: Optional[str] = None) -> None:
        async with self.sessionmaker() as session:
            await session.execute(delete(EditHistoryEntry).where(_owned_by(user_id, device_id)))
            await session.commit()


def _entry_owner(entry: dict[str, Any]) -> Optional[str]:
    owner = entry.get("userId")
    return None if owner in (None, "", ANONYMOUS_USER) else owner


def _entry_owned_by(entry: dict[str, Any], user_id: Optional[str], device_id: Optional[str]) -> bool:
    owner = _entry_owner(entry)
    if user_id:
        return owner == user_id
    return owner is None and bool(device_id) and entry.get("deviceId") == device_id


def _parse_entries(tier: str, entries: list[dict[str, Any]]) -> list[HistoryRecord]:
    records = []
    for entry in entries:
        try:
            records.append(HistoryRecord.from_local(entry))
        except ValidationError:
            logger.debug("skipping unreadable %s history entry %r", tier, entry.get("id"))
    return records


class KeyValueHistoryTier(HistoryTier):
    name = "local_storage"

    def __init__(self, store: KeyValueStore, cap: int = LOCAL_HISTORY_CAP):
        self.store = store
        self.cap = cap

    def _entries(self, key: str) -> list[dict[str, Any]]:
        value = self.store.get(key)
        if value is None:
            return []
        if not isinstance(value, list):
            raise StorageUnavailable(self.name, f"{key} does not hold a list")
        return [e for e in value if isinstance(e, dict)]

    async def save(self, record: HistoryRecord) -> None:
        entries = [e for e in self._entries(HISTORY_KEY) if e.get("id") != record.id]
        entries.insert(0, record.to_local())
        self.store.set(HISTORY_KEY, entries[: self.cap])

    async def load(self, user_id: Optional[str], limit: int, device_id: Optional[str] = None) -> list[HistoryRecord]:
        owned = []
        # The legacy key holds an older, uncapped array.
        for key in (HISTORY_KEY, LEGACY_HISTORY_KEY):
            owned.extend(e for e in self._entries(key) if _entry_owned_by(e, user_id, device_id))
        return _parse_entries(self.name, owned)

    async def delete(self, record_id: str, user_id: Optional[str], device_id: Optional[str] = None) -> None:
        for key in (HISTORY_KEY, LEGACY_HISTORY_KEY):
            entries = self._entries(key)
            kept = [
                e for e in entries
                if not (e.get("id") == record_id and _entry_owned_by(e, user_id, device_id))
            ]
            if len(kept) != len(entries):
                self.store.set(key, kept)

    async def clear(self, user_id: Optional[str], device_id: Optional[str] = None) -> None:
        for key in (HISTORY_KEY, LEGACY_HISTORY_KEY):
            entries = self._entries(key)
            kept = [e for e in entries if not _entry_owned_by(e, user_id, device_id)]
            if not kept:
                self.store.delete(key)
            elif len(kept) != len(entries):
                self.store.set(key, kept)


class DownloadFallback:
    """Writes a record's edited image to a served directory.

    Only the image survives; the structured history entry is lost.
    """

    def __init__(self, directory: str | Path, base_url: str = "/downloads"):
        self.directory = Path(directory)
        self.base_url = base_url.rstrip("/")

    def export(self, record: HistoryRecord) -> str:
        image = record.primary_image
        if not image:
            raise ValueError("record has no edited image to export")
        if image.startswith(("http://", "https://")):
            # Already downloadable as-is.
            return image
        if not image.startswith("data:"):
            raise ValueError("unsupported image reference")

        header, _, payload = image.partition(",")
        if ";base64" not in header:
            raise ValueError("data URL is not base64 encoded")
        mime_type = header[len("data:"):].split(";")[0] or "image/png"
        data = base64.b64decode(payload, validate=True)
        extension = mimetypes.guess_extension(mime_type) or ".png"

        filename = f"fixtral_edit_{record.timestamp}_{record.id[:8]}{extension}"
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / filename).write_bytes(data)
        return f"{self.base_url}/{filename}"


def _log_tier_failure(tier: HistoryTier, operation: str, exc: Exception) -> None:
    if isinstance(exc, StorageUnavailable):
        logger.info("%s tier could not %s: %s", tier.name, operation, exc)
    else:
        logger.warning("%s tier failed to %s", tier.name, operation, exc_info=exc)


class HistoryCascade:
    def __init__(
        self,
        tiers: Sequence[HistoryTier],
        download: Optional[DownloadFallback] = None,
        *,
        limit: int = HISTORY_LIMIT,
    ):
        self.tiers = list(tiers)
        self.download = download
        self.limit = limit

    async def save(self, record: HistoryRecord) -> SaveResult:
        saved_by: Optional[str] = None
        for tier in self.tiers:
            try:
                await tier.save(record)
            except Exception as e:
                _log_tier_failure(tier, f"save {record.id}", e)
                continue
            saved_by = saved_by or tier.name
            if not tier.mirrored:
                break

        if saved_by:
            logger.info("history record %s saved via %s", record.id, saved_by)
            return SaveResult(success=True, method=saved_by)

        if self.download is not None:
            try:
                url = self.download.export(record)
            except Exception:
                logger.error("download fallback failed for %s", record.id, exc_info=True)
            else:
                logger.warning("every storage tier failed for %s, exported image to %s", record.id, url)
                return SaveResult(success=True, method=DOWNLOAD_METHOD, download_url=url)

        raise TotalPersistenceFailure("save")

    async def load_all(self, user_id: Optional[str] = None, device_id: Optional[str] = None) -> list[HistoryRecord]:
        merged: dict[str, HistoryRecord] = {}
        for tier in self.tiers:
            try:
                records = await tier.load(user_id, self.limit, device_id)
            except Exception as e:
                _log_tier_failure(tier, "load", e)
                continue
            for record in records:
                # Earlier tiers are more authoritative.
                merged.setdefault(record.id, record)

        ordered = sorted(merged.values(), key=lambda r: r.timestamp, reverse=True)
        return ordered[: self.limit]

    async def _everywhere(self, operation: str, call) -> None:
        failures = 0
        for tier in self.tiers:
            try:
                await call(tier)
            except Exception as e:
                _log_tier_failure(tier, operation, e)
                failures += 1
        if failures and failures == len(self.tiers):
            raise TotalPersistenceFailure(f"history {operation}")

    async def delete(self, record_id: str, user_id: Optional[str] = None, device_id: Optional[str] = None) -> None:
        await self._everywhere("delete", lambda tier: tier.delete(record_id, user_id, device_id))

    async def clear(self, user_id: Optional[str] = None, device_id: Optional[str] = None) -> None:
        await self._everywhere("clear", lambda tier: tier.clear(user_id, device_id))


def build_history_cascade(
    sessionmaker: async_sessionmaker[AsyncSession],
    local: KeyValueStore,
    remote: Optional[SupabaseClient],
    download_dir: str | Path,
) -> HistoryCascade:
    tiers = [RemoteHistoryTier(remote), LocalDatabaseTier(sessionmaker), KeyValueHistoryTier(local)]
    return HistoryCascade(tiers, DownloadFallback(download_dir))
