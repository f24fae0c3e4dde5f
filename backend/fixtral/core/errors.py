"""
Domain errors raised by the storage core.

Only QuotaExceeded, TotalPersistenceFailure and CreditConflict ever reach the
HTTP layer; StorageUnavailable is always recovered by the next tier.
"""


class FixtralError(Exception):
    """Base class for errors raised by Fixtral services."""


class StorageUnavailable(FixtralError):
    """A storage tier is unreachable, unconfigured, or rejected the operation."""

    def __init__(self, tier: str, reason: str = ""):
        self.tier = tier
        self.reason = reason
        super().__init__(f"{tier} storage unavailable" + (f": {reason}" if reason else ""))


class QuotaExceeded(FixtralError):
    def __init__(self, quota: int):
        self.quota = quota
        super().__init__(
            f"Daily generation limit reached ({quota} per day). Your credits reset tomorrow."
        )


class TotalPersistenceFailure(FixtralError):
    """Every tier failed, including the download fallback for saves."""

    def __init__(self, operation: str):
        self.operation = operation
        if operation == "save":
            message = "Image generation was successful, but all save methods failed."
        else:
            message = f"{operation.capitalize()} failed on every storage tier."
        super().__init__(message)


class CreditConflict(FixtralError):
    def __init__(self, user_id: str, attempts: int):
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(
            f"Credits for {user_id} changed concurrently {attempts} times; please retry."
        )
