from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from app.core.models import User, GrowthResult, Dick, DickRecord, DodElection, Loan, PvpOutcome


class Repository(ABC):
    """
    Blocking storage backend of the ledger.

    Every method is a single transaction: either all of its writes become
    visible or none do. Backends raise StorageUnavailable for transient
    failures and InvalidInput for references to unknown users.
    """

    db_type: str

    @abstractmethod
    def migrate(self) -> list[str]:
        ...

    def close(self) -> None:
        pass

    # --- users ---
    @abstractmethod
    def upsert_user(self, *, external_id: int, display_name: str) -> User:
        ...

    # --- dicks ---
    @abstractmethod
    def create_or_grow(
        self,
        *,
        user_id: int,
        chat_id: int,
        delta: int,
        now_ts: int,
        with_position: bool,
        cooldown_sec: int = 0,
        loan_payout_ratio: float = 0.0,
    ) -> GrowthResult:
        """
        Insert the record with `delta` or add `delta` to it; position is computed after the write.

        With `cooldown_sec > 0` an existing record changed less than `cooldown_sec`
        ago is left untouched and GrowthCooldown is raised. A positive delta pays
        back an outstanding loan by `loan_payout_ratio`.
        """

    @abstractmethod
    def grow_existing(
        self, *, user_id: int, chat_id: int, delta: int, now_ts: int, with_position: bool
    ) -> Optional[GrowthResult]:
        """Like create_or_grow, but never creates a record."""

    @abstractmethod
    def get_dick(self, *, user_id: int, chat_id: int) -> Optional[DickRecord]:
        ...

    @abstractmethod
    def get_top(self, *, chat_id: int, offset: int, limit: int) -> Sequence[Dick]:
        """Ordered by length DESC, user_id ASC."""

    @abstractmethod
    def pvp_transfer(
        self,
        *,
        chat_id: int,
        attacker_id: int,
        defender_id: int,
        winner_id: int,
        stake: int,
        now_ts: int,
    ) -> Optional[PvpOutcome]:
        """
        Move `stake` from the loser to the winner. Both rows are locked in
        ascending user_id order. None if either party has no record.
        """

    # --- loans ---
    @abstractmethod
    def take_loan(self, *, user_id: int, chat_id: int, now_ts: int) -> Optional[Loan]:
        """
        Reset a negative length to zero and record the difference as debt.
        None if there is no record, the length isn't negative or a debt is outstanding.
        """

    @abstractmethod
    def get_debt(self, *, user_id: int, chat_id: int) -> int:
        ...

    # --- chat state ---
    @abstractmethod
    def try_claim_dod(self, *, chat_id: int, day: str) -> bool:
        """True only for the first claim of `day` (ISO date) in the chat."""

    @abstractmethod
    def elect_dod(
        self, *, chat_id: int, day: str, draw: float, bonus: int, now_ts: int, with_position: bool
    ) -> Optional[DodElection]:
        """
        Claim `day`, pick the winner among all records of the chat and grow it
        by `bonus`, all or nothing. The winner is the record at `draw` (a
        uniform float in [0, 1)) in top order. None if the chat has no records;
        DodAlreadyElected if the day is taken.
        """
