"""
Per-user daily generation credits.

Credits live in an ordered list of stores (Supabase first when configured,
then the local key-value store). Reads take the first store that answers.
Writes are compare-and-set against the values that were read, so two
concurrent requests from the same user cannot both spend the last credit.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Callable, Optional, Sequence
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from fixtral.core.config import Settings, settings
from fixtral.core.errors import CreditConflict, QuotaExceeded, StorageUnavailable, TotalPersistenceFailure
from fixtral.schemas import CreditStatus, UserCredits
from fixtral.storage.keyvalue import KeyValueStore
from fixtral.storage.supabase import SupabaseClient

logger = logging.getLogger(__name__)

# Shown to admins instead of a real count.
UNLIMITED_CREDITS = 999
MAX_CAS_ATTEMPTS = 5


def credits_key(user_id: str) -> str:
    return f"user_credits_{user_id}"


def admin_key(user_id: str) -> str:
    return f"user_admin_{user_id}"


class CreditStore(ABC):
    name: str

    @abstractmethod
    async def get_or_create(self, user_id: str, today: date) -> UserCredits:
        ...

    @abstractmethod
    async def compare_and_set(self, user_id: str, expected: UserCredits, new: UserCredits) -> bool:
        """Write `new` only if the stored value still equals `expected`."""

    async def put(self, user_id: str, credits: UserCredits) -> None:
        """Overwrite the stored credits; used to mirror another store's result."""
        raise StorageUnavailable(self.name, "does not accept mirrored writes")


class RemoteCreditStore(CreditStore):
    name = "remote"

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def get_or_create(self, user_id: str, today: date) -> UserCredits:
        # The RPC inserts the default row server-side.
        return await self.client.get_or_create_credits(user_id)

    async def compare_and_set(self, user_id: str, expected: UserCredits, new: UserCredits) -> bool:
        return await self.client.update_credits_if(user_id, expected, new)


class LocalCreditStore(CreditStore):
    name = "local_storage"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _read(self, user_id: str) -> Optional[UserCredits]:
        raw = self.store.get(credits_key(user_id))
        if raw is None:
            return None
        try:
            return UserCredits.model_validate(raw)
        except ValidationError as e:
            raise StorageUnavailable(self.name, f"corrupt credits for {user_id}") from e

    def _write(self, user_id: str, credits: UserCredits) -> None:
        self.store.set(credits_key(user_id), credits.model_dump(mode="json", by_alias=True))

    async def get_or_create(self, user_id: str, today: date) -> UserCredits:
        credits = self._read(user_id)
        if credits is None:
            credits = UserCredits(daily_generations=0, last_reset_date=today, total_generations=0)
            self._write(user_id, credits)
        return credits

    async def compare_and_set(self, user_id: str, expected: UserCredits, new: UserCredits) -> bool:
        # No await between read and write, so this is atomic on the event loop.
        if self._read(user_id) != expected:
            return False
        self._write(user_id, new)
        return True

    async def put(self, user_id: str, credits: UserCredits) -> None:
        self._write(user_id, credits)


class CreditLedger:
    def __init__(
        self,
        stores: Sequence[CreditStore],
        flags: KeyValueStore,
        *,
        admin_lookup: Optional[SupabaseClient] = None,
        config: Settings = settings,
        clock: Optional[Callable[[], date]] = None,
    ):
        self.stores = list(stores)
        self.flags = flags
        self.admin_lookup = admin_lookup
        self.config = config
        self._clock = clock

    @property
    def quota(self) -> int:
        return self.config.daily_generation_quota

    def today(self) -> date:
        if self._clock is not None:
            return self._clock()
        if self.config.credit_reset_timezone:
            return datetime.now(ZoneInfo(self.config.credit_reset_timezone)).date()
        return date.today()

    async def _current(self, store: CreditStore, user_id: str) -> UserCredits:
        """Read credits from one store, persisting the daily reset if it is due."""
        today = self.today()
        for _ in range(MAX_CAS_ATTEMPTS):
            credits = await store.get_or_create(user_id, today)
            if credits.last_reset_date == today:
                return credits
            reset = credits.model_copy(update={"daily_generations": 0, "last_reset_date": today})
            if await store.compare_and_set(user_id, credits, reset):
                logger.info("daily credits reset for %s (last reset %s)", user_id, credits.last_reset_date)
                return reset
        raise CreditConflict(user_id, MAX_CAS_ATTEMPTS)

    async def _mirror(self, after: int, user_id: str, credits: UserCredits) -> None:
        for store in self.stores[after + 1:]:
            try:
                await store.put(user_id, credits)
            except StorageUnavailable as e:
                logger.warning("could not mirror credits to %s: %s", store.name, e)

    async def get_credits(self, user_id: str) -> UserCredits:
        for store in self.stores:
            try:
                return await self._current(store, user_id)
            except (StorageUnavailable, CreditConflict) as e:
                logger.warning("credit read from %s failed for %s: %s", store.name, user_id, e)
        logger.error("no credit store answered for %s, using fresh defaults", user_id)
        return UserCredits(daily_generations=0, last_reset_date=self.today(), total_generations=0)

    def _matches_configured_admin(self, user_id: str, email: Optional[str]) -> bool:
        admin_email = self.config.admin_id.strip().casefold()
        admin_uid = self.config.admin_uid.strip()
        by_email = bool(admin_email and email and email.strip().casefold() == admin_email)
        by_uid = bool(admin_uid and user_id == admin_uid)
        return by_email or by_uid

    async def is_admin(self, user_id: str, email: Optional[str] = None) -> bool:
        """Resolve the admin flag for `user_id`.

        Positive results are persisted; negatives are not, so changing ADMIN_ID
        or ADMIN_UID takes effect without clearing anything.
        """
        try:
            if self.flags.get(admin_key(user_id)) in (True, "true"):
                return True
        except StorageUnavailable as e:
            logger.warning("admin flag read failed for %s: %s", user_id, e)

        if self.admin_lookup is not None:
            try:
                if await self.admin_lookup.is_user_admin(user_id):
                    return True
            except StorageUnavailable as e:
                logger.info("remote admin check unavailable for %s: %s", user_id, e)

        if not self._matches_configured_admin(user_id, email):
            return False

        try:
            self.flags.set(admin_key(user_id), "true")
        except StorageUnavailable as e:
            logger.warning("could not persist admin flag for %s: %s", user_id, e)
        logger.info("admin access granted to %s via configured admin identity", user_id)
        return True

    def revoke_admin(self, user_id: str) -> None:
        self.flags.delete(admin_key(user_id))

    async def check_limit(self, user_id: str, email: Optional[str] = None) -> CreditStatus:
        credits = await self.get_credits(user_id)
        if await self.is_admin(user_id, email):
            return CreditStatus(can_generate=True, remaining_credits=UNLIMITED_CREDITS, credits=credits, is_admin=True)

        return CreditStatus(
            can_generate=credits.daily_generations < self.quota,
            remaining_credits=max(0, self.quota - credits.daily_generations),
            credits=credits,
            is_admin=False,
        )

    async def _increment_on(self, store: CreditStore, user_id: str, admin: bool) -> UserCredits:
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            current = await self._current(store, user_id)
            if not admin and current.daily_generations >= self.quota:
                raise QuotaExceeded(self.quota)

            updated = UserCredits(
                daily_generations=current.daily_generations + 1,
                last_reset_date=current.last_reset_date,
                total_generations=current.total_generations + 1,
            )
            if await store.compare_and_set(user_id, current, updated):
                return updated
            logger.info("credits for %s changed during increment (attempt %d), re-reading", user_id, attempt)
        raise CreditConflict(user_id, MAX_CAS_ATTEMPTS)

    async def increment(self, user_id: str, email: Optional[str] = None) -> UserCredits:
        admin = await self.is_admin(user_id, email)
        for index, store in enumerate(self.stores):
            try:
                updated = await self._increment_on(store, user_id, admin)
            except StorageUnavailable as e:
                logger.warning("credit increment on %s failed for %s: %s", store.name, user_id, e)
                continue
            await self._mirror(index, user_id, updated)
            return updated
        raise TotalPersistenceFailure("credit update")


def build_ledger(local: KeyValueStore, remote: Optional[SupabaseClient], config: Settings = settings) -> CreditLedger:
    stores: list[CreditStore] = []
    if remote is not None:
        stores.append(RemoteCreditStore(remote))
    stores.append(LocalCreditStore(local))
    return CreditLedger(stores, local, admin_lookup=remote, config=config)
