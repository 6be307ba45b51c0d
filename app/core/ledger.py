"""
Async entry points of the growth-and-ranking ledger.

Storage backends are blocking; every call is dispatched to an executor whose
worker count matches the connection pool, so the number of in-flight storage
round trips never exceeds what the pool can serve.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from concurrent.futures import Executor
from datetime import date
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from app.core.config import FeatureToggles
from app.core.errors import ChatResolutionError, InvalidInput
from app.core.metrics import MODE_CHAT, Metrics
from app.core.models import (
    ChatHandle,
    ChatId,
    ChatRef,
    Dick,
    DickRecord,
    DodElection,
    GrowthResult,
    Loan,
    PvpOutcome,
    User,
)
from app.core.scoring import pick_pvp_winner
from app.storage.repo import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChatResolver = Callable[[str], Awaitable[Optional[int]]]


class _StorageCaller:
    def __init__(self, repo: Repository, executor: Optional[Executor]) -> None:
        self._repo = repo
        self._executor = executor

    async def _call(self, fn: Callable[..., T], **kwargs) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, **kwargs))


class Users(_StorageCaller):
    async def create_or_update(self, external_id: int, display_name: str) -> User:
        name = (display_name or "").strip()
        if not name:
            raise InvalidInput("display name must not be empty")
        return await self._call(self._repo.upsert_user, external_id=external_id, display_name=name)


class Dicks(_StorageCaller):
    def __init__(
        self,
        repo: Repository,
        features: FeatureToggles = FeatureToggles(),
        *,
        metrics: Optional[Metrics] = None,
        executor: Optional[Executor] = None,
        resolver: Optional[ChatResolver] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        loan_payout_ratio: float = 0.1,
    ) -> None:
        super().__init__(repo, executor)
        self._features = features
        self._metrics = metrics if metrics is not None else Metrics()
        self._resolver = resolver
        self._rng = rng if rng is not None else random.Random()
        self._clock = clock
        self._loan_payout_ratio = loan_payout_ratio

    @property
    def features(self) -> FeatureToggles:
        return self._features

    def _now_ts(self) -> int:
        return int(self._clock())

    async def resolve_chat(self, chat: ChatRef) -> int:
        if isinstance(chat, ChatId):
            if isinstance(chat.value, bool) or not isinstance(chat.value, int):
                raise InvalidInput(f"chat id must be int, got {chat.value!r}")
            return chat.value
        if isinstance(chat, ChatHandle):
            handle = (chat.handle or "").strip()
            if not handle:
                raise InvalidInput("chat handle must not be empty")
            if self._resolver is None:
                raise ChatResolutionError(f"no resolver configured for {handle}")
            if not handle.startswith("@"):
                handle = "@" + handle
            chat_id = await self._resolver(handle)
            if chat_id is None:
                raise ChatResolutionError(f"chat {handle} not found")
            return chat_id
        raise InvalidInput(f"malformed chat reference: {chat!r}")

    async def create_or_grow(
        self, user_id: int, chat: ChatRef, delta: int, *, mode: str = MODE_CHAT, cooldown_sec: int = 0
    ) -> GrowthResult:
        """
        Add `delta` to the record, creating it on first growth.

        With `cooldown_sec` set, raises GrowthCooldown instead of writing when the
        record changed less than `cooldown_sec` ago. Part of a positive `delta`
        pays back an outstanding loan.
        """
        self._metrics.grow.invoked(mode)
        chat_id = await self.resolve_chat(chat)
        result = await self._call(
            self._repo.create_or_grow,
            user_id=user_id,
            chat_id=chat_id,
            delta=delta,
            now_ts=self._now_ts(),
            with_position=self._features.top_unlimited,
            cooldown_sec=cooldown_sec,
            loan_payout_ratio=self._loan_payout_ratio,
        )
        self._metrics.grow.succeeded(mode)
        return result

    async def get_top(self, chat: ChatRef, offset: int, limit: int, *, mode: str = MODE_CHAT) -> Sequence[Dick]:
        self._metrics.top.invoked(mode)
        if offset < 0:
            raise InvalidInput(f"offset must be non-negative, got {offset}")
        if limit <= 0:
            raise InvalidInput(f"limit must be positive, got {limit}")
        chat_id = await self.resolve_chat(chat)
        rows = await self._call(self._repo.get_top, chat_id=chat_id, offset=offset, limit=limit)
        self._metrics.top.succeeded(mode)
        return rows

    async def get_dick(self, user_id: int, chat: ChatRef) -> Optional[DickRecord]:
        chat_id = await self.resolve_chat(chat)
        return await self._call(self._repo.get_dick, user_id=user_id, chat_id=chat_id)

    async def set_dod_winner(
        self, chat: ChatRef, user_id: int, bonus: int, *, mode: str = MODE_CHAT
    ) -> Optional[GrowthResult]:
        """Grow the winner by `bonus`; the winner must already own a record in the chat."""
        self._metrics.dod.invoked(mode)
        if bonus < 0:
            raise InvalidInput(f"bonus must be non-negative, got {bonus}")
        chat_id = await self.resolve_chat(chat)
        result = await self._call(
            self._repo.grow_existing,
            user_id=user_id,
            chat_id=chat_id,
            delta=bonus,
            now_ts=self._now_ts(),
            with_position=self._features.top_unlimited,
        )
        if result is not None:
            self._metrics.dod.succeeded(mode)
        return result

    async def try_claim_dod(self, chat: ChatRef, day: date) -> bool:
        chat_id = await self.resolve_chat(chat)
        return await self._call(self._repo.try_claim_dod, chat_id=chat_id, day=day.isoformat())

    async def pvp_transfer(
        self, chat: ChatRef, attacker_id: int, defender_id: int, stake: int, *, mode: str = MODE_CHAT
    ) -> Optional[PvpOutcome]:
        self._metrics.pvp.invoked(mode)
        if stake <= 0:
            raise InvalidInput(f"stake must be positive, got {stake}")
        if attacker_id == defender_id:
            raise InvalidInput("can't duel yourself")
        chat_id = await self.resolve_chat(chat)
        winner_id = pick_pvp_winner(self._rng, attacker_id, defender_id)
        outcome = await self._call(
            self._repo.pvp_transfer,
            chat_id=chat_id,
            attacker_id=attacker_id,
            defender_id=defender_id,
            winner_id=winner_id,
            stake=stake,
            now_ts=self._now_ts(),
        )
        if outcome is not None:
            self._metrics.pvp.succeeded(mode)
        return outcome

    async def elect_dod(
        self, chat: ChatRef, day: date, bonus: int, *, mode: str = MODE_CHAT
    ) -> Optional[DodElection]:
        """
        Claim `day` and grow a randomly drawn player of the chat by `bonus` in
        one transaction. None if nobody plays in the chat; DodAlreadyElected if
        the day has been claimed already.
        """
        self._metrics.dod.invoked(mode)
        if bonus < 0:
            raise InvalidInput(f"bonus must be non-negative, got {bonus}")
        chat_id = await self.resolve_chat(chat)
        election = await self._call(
            self._repo.elect_dod,
            chat_id=chat_id,
            day=day.isoformat(),
            draw=self._rng.random(),
            bonus=bonus,
            now_ts=self._now_ts(),
            with_position=self._features.top_unlimited,
        )
        if election is not None:
            self._metrics.dod.succeeded(mode)
        return election

    async def take_loan(self, chat: ChatRef, user_id: int, *, mode: str = MODE_CHAT) -> Optional[Loan]:
        self._metrics.loan.invoked(mode)
        chat_id = await self.resolve_chat(chat)
        loan = await self._call(self._repo.take_loan, user_id=user_id, chat_id=chat_id, now_ts=self._now_ts())
        if loan is not None:
            self._metrics.loan.succeeded(mode)
        return loan

    async def get_debt(self, user_id: int, chat: ChatRef) -> int:
        chat_id = await self.resolve_chat(chat)
        return await self._call(self._repo.get_debt, user_id=user_id, chat_id=chat_id)
