from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence

from app.core.errors import DodAlreadyElected, GrowthCooldown, InsufficientLength, InvalidInput, StorageUnavailable
from app.core.models import User, GrowthResult, Dick, DickRecord, DodElection, Loan, PvpOutcome
from app.core.scoring import draw_index, loan_payout
from app.storage.migrations import MIGRATIONS_DIR, SQLiteMigrationRunner, run_migrations
from app.storage.repo import Repository

logger = logging.getLogger(__name__)


def _ensure_dir(path: str) -> None:
    d = os.path.dirname(path)
    if d:
        os.makedirs(d, exist_ok=True)


class SQLiteRepository(Repository):
    db_type = "sqlite"

    def __init__(self, *, db_path: str, busy_timeout_sec: float = 30.0, migrations_dir: Path = MIGRATIONS_DIR) -> None:
        _ensure_dir(db_path)
        self._db_path = db_path
        self._busy_timeout_sec = busy_timeout_sec
        self._migrations_dir = migrations_dir
        with closing(self._connect()) as con:
            con.execute("PRAGMA journal_mode=WAL;")

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
        con = sqlite3.connect(self._db_path, timeout=self._busy_timeout_sec, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON;")
        return con

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(self._connect()) as con:
                yield con
        except sqlite3.OperationalError as ex:
            logger.warning("SQLite read failed: %s", ex)
            raise StorageUnavailable(str(ex)) from ex

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the start."""
        try:
            con = self._connect()
        except sqlite3.OperationalError as ex:
            raise StorageUnavailable(str(ex)) from ex
        try:
            con.execute("BEGIN IMMEDIATE")
            yield con
            con.commit()
        except sqlite3.OperationalError as ex:
            con.rollback()
            logger.warning("SQLite transaction failed: %s", ex)
            raise StorageUnavailable(str(ex)) from ex
        except sqlite3.IntegrityError as ex:
            con.rollback()
            raise InvalidInput(str(ex)) from ex
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def migrate(self) -> list[str]:
        with closing(self._connect()) as con:
            return run_migrations(
                runner=SQLiteMigrationRunner(con),
                migrations_dir=self._migrations_dir,
                db_type=self.db_type,
            )

    # --- users ---
    def upsert_user(self, *, external_id: int, display_name: str) -> User:
        with self._tx() as con:
            row = con.execute(
                """
                INSERT INTO users(external_id,display_name)
                VALUES(?,?)
                ON CONFLICT(external_id) DO UPDATE SET
                  display_name=excluded.display_name
                RETURNING internal_id,external_id,display_name
                """,
                (external_id, display_name),
            ).fetchall()[0]
        return User(
            internal_id=row["internal_id"],
            external_id=row["external_id"],
            display_name=row["display_name"],
        )

    # --- dicks ---
    @staticmethod
    def _position(con: sqlite3.Connection, *, user_id: int, chat_id: int, length: int) -> int:
        row = con.execute(
            """
            SELECT COUNT(*) + 1 AS pos
            FROM dicks
            WHERE chat_id=? AND (length > ? OR (length = ? AND user_id < ?))
            """,
            (chat_id, length, length, user_id),
        ).fetchone()
        return int(row["pos"])

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
        with self._tx() as con:
            debt = self._debt(con, user_id=user_id, chat_id=chat_id)
            repaid = loan_payout(delta, debt, loan_payout_ratio)
            # The cooldown is part of the upsert, so concurrent calls can't both pass it.
            rows = con.execute(
                """
                INSERT INTO dicks(user_id,chat_id,length,updated_at_ts)
                VALUES(?,?,?,?)
                ON CONFLICT(user_id,chat_id) DO UPDATE SET
                  length=length+excluded.length,
                  updated_at_ts=excluded.updated_at_ts
                WHERE ? <= 0 OR dicks.updated_at_ts + ? <= excluded.updated_at_ts
                RETURNING length
                """,
                (user_id, chat_id, delta - repaid, now_ts, cooldown_sec, cooldown_sec),
            ).fetchall()
            if not rows:
                last = con.execute(
                    "SELECT updated_at_ts FROM dicks WHERE user_id=? AND chat_id=?", (user_id, chat_id)
                ).fetchone()
                raise GrowthCooldown(int(last["updated_at_ts"]) + cooldown_sec - now_ts)
            if repaid:
                con.execute("UPDATE loans SET debt=debt-? WHERE user_id=? AND chat_id=?", (repaid, user_id, chat_id))
            new_length = int(rows[0]["length"])
            pos = self._position(con, user_id=user_id, chat_id=chat_id, length=new_length) if with_position else None
        logger.info(
            "create_or_grow: chat=%s user=%s delta=%s repaid=%s length=%s pos=%s",
            chat_id, user_id, delta, repaid, new_length, pos,
        )
        return GrowthResult(new_length=new_length, pos_in_top=pos, repaid=repaid, debt_left=debt - repaid)

    def grow_existing(
        self, *, user_id: int, chat_id: int, delta: int, now_ts: int, with_position: bool
    ) -> Optional[GrowthResult]:
        with self._tx() as con:
            rows = con.execute(
                """
                UPDATE dicks SET length=length+?, updated_at_ts=?
                WHERE user_id=? AND chat_id=?
                RETURNING length
                """,
                (delta, now_ts, user_id, chat_id),
            ).fetchall()
            if not rows:
                logger.info("grow_existing: chat=%s user=%s has no record, nothing to grow", chat_id, user_id)
                return None
            new_length = int(rows[0]["length"])
            pos = self._position(con, user_id=user_id, chat_id=chat_id, length=new_length) if with_position else None
        logger.info("grow_existing: chat=%s user=%s delta=%s length=%s pos=%s", chat_id, user_id, delta, new_length, pos)
        return GrowthResult(new_length=new_length, pos_in_top=pos)

    def get_dick(self, *, user_id: int, chat_id: int) -> Optional[DickRecord]:
        with self._read() as con:
            row = con.execute(
                "SELECT user_id,chat_id,length,updated_at_ts FROM dicks WHERE user_id=? AND chat_id=?",
                (user_id, chat_id),
            ).fetchone()
        if row is None:
            return None
        return DickRecord(
            user_id=row["user_id"],
            chat_id=row["chat_id"],
            length=row["length"],
            updated_at_ts=row["updated_at_ts"],
        )

    def get_top(self, *, chat_id: int, offset: int, limit: int) -> Sequence[Dick]:
        with self._read() as con:
            rows = con.execute(
                """
                SELECT d.user_id,u.display_name,d.length
                FROM dicks d
                JOIN users u ON u.internal_id=d.user_id
                WHERE d.chat_id=?
                ORDER BY d.length DESC, d.user_id ASC
                LIMIT ? OFFSET ?
                """,
                (chat_id, limit, offset),
            ).fetchall()
        return [Dick(owner_uid=r["user_id"], owner_name=r["display_name"], length=r["length"]) for r in rows]

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
        loser_id = defender_id if winner_id == attacker_id else attacker_id
        # BEGIN IMMEDIATE takes the single database write lock, so both rows are covered.
        with self._tx() as con:
            rows = con.execute(
                """
                SELECT user_id,length FROM dicks
                WHERE chat_id=? AND user_id IN (?,?)
                ORDER BY user_id
                """,
                (chat_id, attacker_id, defender_id),
            ).fetchall()
            lengths = {int(r["user_id"]): int(r["length"]) for r in rows}
            if len(lengths) != 2:
                logger.info("pvp_transfer: chat=%s %s vs %s, a party has no record", chat_id, attacker_id, defender_id)
                return None
            for uid in sorted(lengths):
                if lengths[uid] < stake:
                    raise InsufficientLength(uid, lengths[uid], stake)

            for uid, delta in sorted(((winner_id, stake), (loser_id, -stake))):
                lengths[uid] = int(
                    con.execute(
                        "UPDATE dicks SET length=length+?, updated_at_ts=? WHERE user_id=? AND chat_id=? RETURNING length",
                        (delta, now_ts, uid, chat_id),
                    ).fetchall()[0]["length"]
                )
        logger.info("pvp_transfer: chat=%s winner=%s loser=%s stake=%s", chat_id, winner_id, loser_id, stake)
        return PvpOutcome(
            attacker_id=attacker_id,
            defender_id=defender_id,
            winner_id=winner_id,
            stake=stake,
            attacker_length=lengths[attacker_id],
            defender_length=lengths[defender_id],
        )

    # --- loans ---
    @staticmethod
    def _debt(con: sqlite3.Connection, *, user_id: int, chat_id: int) -> int:
        row = con.execute("SELECT debt FROM loans WHERE user_id=? AND chat_id=?", (user_id, chat_id)).fetchone()
        return int(row["debt"]) if row else 0

    def take_loan(self, *, user_id: int, chat_id: int, now_ts: int) -> Optional[Loan]:
        with self._tx() as con:
            if self._debt(con, user_id=user_id, chat_id=chat_id) > 0:
                return None
            row = con.execute(
                "SELECT length FROM dicks WHERE user_id=? AND chat_id=?", (user_id, chat_id)
            ).fetchone()
            if row is None or row["length"] >= 0:
                return None
            debt = -int(row["length"])
            con.execute(
                "UPDATE dicks SET length=0, updated_at_ts=? WHERE user_id=? AND chat_id=?",
                (now_ts, user_id, chat_id),
            )
            con.execute(
                """
                INSERT INTO loans(user_id,chat_id,debt)
                VALUES(?,?,?)
                ON CONFLICT(user_id,chat_id) DO UPDATE SET
                  debt=excluded.debt
                """,
                (user_id, chat_id, debt),
            )
        logger.info("take_loan: chat=%s user=%s debt=%s", chat_id, user_id, debt)
        return Loan(user_id=user_id, chat_id=chat_id, debt=debt)

    def get_debt(self, *, user_id: int, chat_id: int) -> int:
        with self._read() as con:
            return self._debt(con, user_id=user_id, chat_id=chat_id)

    # --- chat state ---
    @staticmethod
    def _claim_day(con: sqlite3.Connection, *, chat_id: int, day: str) -> bool:
        rows = con.execute(
            """
            INSERT INTO chat_state(chat_id,last_dod_day)
            VALUES(?,?)
            ON CONFLICT(chat_id) DO UPDATE SET
              last_dod_day=excluded.last_dod_day
            WHERE chat_state.last_dod_day < excluded.last_dod_day
            RETURNING chat_id
            """,
            (chat_id, day),
        ).fetchall()
        return bool(rows)

    def try_claim_dod(self, *, chat_id: int, day: str) -> bool:
        with self._tx() as con:
            return self._claim_day(con, chat_id=chat_id, day=day)

    def elect_dod(
        self, *, chat_id: int, day: str, draw: float, bonus: int, now_ts: int, with_position: bool
    ) -> Optional[DodElection]:
        with self._tx() as con:
            count = int(con.execute("SELECT COUNT(*) AS n FROM dicks WHERE chat_id=?", (chat_id,)).fetchone()["n"])
            if count == 0:
                return None
            if not self._claim_day(con, chat_id=chat_id, day=day):
                raise DodAlreadyElected(f"chat {chat_id} already has a winner for {day}")
            winner = con.execute(
                """
                SELECT d.user_id,u.display_name
                FROM dicks d
                JOIN users u ON u.internal_id=d.user_id
                WHERE d.chat_id=?
                ORDER BY d.length DESC, d.user_id ASC
                LIMIT 1 OFFSET ?
                """,
                (chat_id, draw_index(draw, count)),
            ).fetchone()
            winner_uid = int(winner["user_id"])
            row = con.execute(
                "UPDATE dicks SET length=length+?, updated_at_ts=? WHERE user_id=? AND chat_id=? RETURNING length",
                (bonus, now_ts, winner_uid, chat_id),
            ).fetchall()[0]
            new_length = int(row["length"])
            pos = self._position(con, user_id=winner_uid, chat_id=chat_id, length=new_length) if with_position else None
        logger.info("elect_dod: chat=%s day=%s winner=%s bonus=%s length=%s", chat_id, day, winner_uid, bonus, new_length)
        return DodElection(
            winner_uid=winner_uid,
            winner_name=winner["display_name"],
            bonus=bonus,
            result=GrowthResult(new_length=new_length, pos_in_top=pos),
        )
