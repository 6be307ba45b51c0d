from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class User:
    internal_id: int
    external_id: int
    display_name: str


@dataclass(frozen=True)
class ChatId:
    value: int


@dataclass(frozen=True)
class ChatHandle:
    # Public channel name, e.g. "@some_channel"
    handle: str


ChatRef = Union[ChatId, ChatHandle]


@dataclass(frozen=True)
class GrowthResult:
    new_length: int
    pos_in_top: Optional[int]
    # Part of a positive delta withheld to pay back a loan
    repaid: int = 0
    debt_left: int = 0


@dataclass(frozen=True)
class Dick:
    owner_uid: int
    owner_name: str
    length: int


@dataclass(frozen=True)
class DickRecord:
    user_id: int
    chat_id: int
    length: int
    updated_at_ts: int


@dataclass(frozen=True)
class PvpOutcome:
    attacker_id: int
    defender_id: int
    winner_id: int
    stake: int
    attacker_length: int
    defender_length: int

    @property
    def loser_id(self) -> int:
        return self.defender_id if self.winner_id == self.attacker_id else self.attacker_id


@dataclass(frozen=True)
class Loan:
    user_id: int
    chat_id: int
    debt: int


@dataclass(frozen=True)
class DodElection:
    winner_uid: int
    winner_name: str
    bonus: int
    result: GrowthResult
