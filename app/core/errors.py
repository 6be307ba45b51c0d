from __future__ import annotations


class LedgerError(Exception):
    """Base class for everything the ledger raises."""


class InvalidInput(LedgerError):
    pass


class ChatResolutionError(LedgerError):
    """A symbolic chat handle couldn't be turned into a numeric chat id."""


class StorageUnavailable(LedgerError):
    """
    Pool exhaustion, timeout or a dropped connection.
    The operation was not applied and may be retried by the caller.
    """

    retriable = True


class InsufficientLength(LedgerError):
    def __init__(self, user_id: int, length: int, stake: int) -> None:
        super().__init__(f"user {user_id} has {length}, stake is {stake}")
        self.user_id = user_id
        self.length = length
        self.stake = stake


class GrowthCooldown(LedgerError):
    """The record was changed too recently; nothing was written."""

    def __init__(self, wait_sec: int) -> None:
        super().__init__(f"too early, retry in {wait_sec}s")
        self.wait_sec = wait_sec


class DodAlreadyElected(LedgerError):
    """The chat already has a dick of the day for the requested day."""
