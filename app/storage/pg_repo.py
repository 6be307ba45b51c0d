from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence
import logging

from app.core.errors import DodAlreadyElected, GrowthCooldown, InsufficientLength, InvalidInput, StorageUnavailable
from app.core.models import User, GrowthResult, Dick, DickRecord, DodElection, Loan, PvpOutcome
from app.core.scoring import draw_index, loan_payout
from app.storage.migrations import MIGRATIONS_DIR, PostgresMigrationRunner, run_migrations
from app.storage.repo import Repository

logger = logging.getLogger(__name__)


class PostgresRepository(Repository):
    db_type = "postgres"

    def __init__(
        self,
        *,
        dsn: str,
        max_connections: int = 10,
        pool_timeout_sec: float = 10.0,
        statement_timeout_ms: int = 5000,
        migrations_dir: Path = MIGRATIONS_DIR,
    ) -> None:
        # Import psycopg only when PostgreSQL repo is instantiated
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg_pool import ConnectionPool
        except ModuleNotFoundError:
            raise ModuleNotFoundError(
                "psycopg is not installed. Install it with: pip install 'psycopg[binary,pool]>=3.1'"
            )

        self._psycopg = psycopg
        self._migrations_dir = migrations_dir
        kwargs = {"row_factory": dict_row}
        if statement_timeout_ms > 0:
            kwargs["options"] = f"-c statement_timeout={statement_timeout_ms}"
        self._pool = ConnectionPool(
            conninfo=dsn,
            min_size=1,
            max_size=max_connections,
            timeout=pool_timeout_sec,
            kwargs=kwargs,
            open=False,
        )
        self._pool.open()
        logger.info("Postgres pool opened: max_size=%s timeout=%ss", max_connections, pool_timeout_sec)

    def close(self) -> None:
        self._pool.close()
        logger.info("Postgres pool closed")

    @contextmanager
    def _connect(self) -> Iterator:
        """
        Pooled connection inside a transaction: committed when the block
        exits cleanly, rolled back otherwise.
        """
        psycopg = self._psycopg
        try:
            with self._pool.connection() as con:
                yield con
        except psycopg.errors.ForeignKeyViolation as ex:
            raise InvalidInput(str(ex)) from ex
        # PoolTimeout and QueryCanceled are OperationalErrors too
        except psycopg.OperationalError as ex:
            logger.warning("Postgres operation failed: %s", ex)
            raise StorageUnavailable(str(ex)) from ex

    def migrate(self) -> list[str]:
        with self._connect() as con:
            return run_migrations(
                runner=PostgresMigrationRunner(con),
                migrations_dir=self._migrations_dir,
                db_type=self.db_type,
            )

    # --- users ---
    def upsert_user(self, *, external_id: int, display_name: str) -> User:
        with self._connect() as con:
            with con.cursor() as cur:
                row = cur.execute(
                    """
                    INSERT INTO users(external_id,display_name)
                    VALUES(%s,%s)
                    ON CONFLICT (external_id) DO UPDATE SET
                      display_name=EXCLUDED.display_name
                    RETURNING internal_id,external_id,display_name
                    """,
                    (external_id, display_name),
                ).fetchone()
            con.commit()
        return User(**row)

    # --- dicks ---
    @staticmethod
    def _position(cur, *, user_id: int, chat_id: int, length: int) -> int:
        row = cur.execute(
            """
            SELECT COUNT(*) + 1 AS pos
            FROM dicks
            WHERE chat_id=%s AND (length > %s OR (length = %s AND user_id < %s))
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
        with self._connect() as con:
            with con.cursor() as cur:
                # Lock order is loans, then dicks, same as take_loan.
                debt = self._debt(cur, user_id=user_id, chat_id=chat_id, for_update=True)
                repaid = loan_payout(delta, debt, loan_payout_ratio)
                # The cooldown is part of the upsert: a concurrent call waits for the
                # row lock and then sees the fresh updated_at_ts.
                row = cur.execute(
                    """
                    INSERT INTO dicks(user_id,chat_id,length,updated_at_ts)
                    VALUES(%s,%s,%s,%s)
                    ON CONFLICT (user_id,chat_id) DO UPDATE SET
                      length=dicks.length+EXCLUDED.length,
                      updated_at_ts=EXCLUDED.updated_at_ts
                    WHERE %s <= 0 OR dicks.updated_at_ts + %s <= EXCLUDED.updated_at_ts
                    RETURNING length
                    """,
                    (user_id, chat_id, delta - repaid, now_ts, cooldown_sec, cooldown_sec),
                ).fetchone()
                if row is None:
                    last = cur.execute(
                        "SELECT updated_at_ts FROM dicks WHERE user_id=%s AND chat_id=%s", (user_id, chat_id)
                    ).fetchone()
                    raise GrowthCooldown(int(last["updated_at_ts"]) + cooldown_sec - now_ts)
                if repaid:
                    cur.execute(
                        "UPDATE loans SET debt=debt-%s WHERE user_id=%s AND chat_id=%s", (repaid, user_id, chat_id)
                    )
                new_length = int(row["length"])
                # Same transaction: the count sees the value written above.
                pos = self._position(cur, user_id=user_id, chat_id=chat_id, length=new_length) if with_position else None
            con.commit()
        logger.info(
            "create_or_grow: chat=%s user=%s delta=%s repaid=%s length=%s pos=%s",
            chat_id, user_id, delta, repaid, new_length, pos,
        )
        return GrowthResult(new_length=new_length, pos_in_top=pos, repaid=repaid, debt_left=debt - repaid)

    def grow_existing(
        self, *, user_id: int, chat_id: int, delta: int, now_ts: int, with_position: bool
    ) -> Optional[GrowthResult]:
        with self._connect() as con:
            with con.cursor() as cur:
                row = cur.execute(
                    """
                    UPDATE dicks SET length=length+%s, updated_at_ts=%s
                    WHERE user_id=%s AND chat_id=%s
                    RETURNING length
                    """,
                    (delta, now_ts, user_id, chat_id),
                ).fetchone()
                if row is None:
                    logger.info("grow_existing: chat=%s user=%s has no record, nothing to grow", chat_id, user_id)
                    return None
                new_length = int(row["length"])
                pos = self._position(cur, user_id=user_id, chat_id=chat_id, length=new_length) if with_position else None
            con.commit()
        logger.info("grow_existing: chat=%s user=%s delta=%s length=%s pos=%s", chat_id, user_id, delta, new_length, pos)
        return GrowthResult(new_length=new_length, pos_in_top=pos)

    def get_dick(self, *, user_id: int, chat_id: int) -> Optional[DickRecord]:
        with self._connect() as con:
            with con.cursor() as cur:
                row = cur.execute(
                    "SELECT user_id,chat_id,length,updated_at_ts FROM dicks WHERE user_id=%s AND chat_id=%s",
                    (user_id, chat_id),
                ).fetchone()
        if not row:
            return None
        return DickRecord(**row)

    def get_top(self, *, chat_id: int, offset: int, limit: int) -> Sequence[Dick]:
        with self._connect() as con:
            with con.cursor() as cur:
                rows = cur.execute(
                    """
                    SELECT d.user_id,u.display_name,d.length
                    FROM dicks d
                    JOIN users u ON u.internal_id=d.user_id
                    WHERE d.chat_id=%s
                    ORDER BY d.length DESC, d.user_id ASC
                    OFFSET %s LIMIT %s
                    """,
                    (chat_id, offset, limit),
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
        with self._connect() as con:
            with con.cursor() as cur:
                # Rows are locked in ascending user_id order, so two opposite duels can't deadlock.
                rows = cur.execute(
                    """
                    SELECT user_id,length FROM dicks
                    WHERE chat_id=%s AND user_id IN (%s,%s)
                    ORDER BY user_id
                    FOR UPDATE
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
                        cur.execute(
                            "UPDATE dicks SET length=length+%s, updated_at_ts=%s WHERE user_id=%s AND chat_id=%s RETURNING length",
                            (delta, now_ts, uid, chat_id),
                        ).fetchone()["length"]
                    )
            con.commit()
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
    def _debt(cur, *, user_id: int, chat_id: int, for_update: bool = False) -> int:
        sql = "SELECT debt FROM loans WHERE user_id=%s AND chat_id=%s"
        if for_update:
            sql += " FOR UPDATE"
        row = cur.execute(sql, (user_id, chat_id)).fetchone()
        return int(row["debt"]) if row else 0

    def take_loan(self, *, user_id: int, chat_id: int, now_ts: int) -> Optional[Loan]:
        with self._connect() as con:
            with con.cursor() as cur:
                if self._debt(cur, user_id=user_id, chat_id=chat_id, for_update=True) > 0:
                    return None
                row = cur.execute(
                    "SELECT length FROM dicks WHERE user_id=%s AND chat_id=%s FOR UPDATE", (user_id, chat_id)
                ).fetchone()
                if row is None or row["length"] >= 0:
                    return None
                debt = -int(row["length"])
                cur.execute(
                    "UPDATE dicks SET length=0, updated_at_ts=%s WHERE user_id=%s AND chat_id=%s",
                    (now_ts, user_id, chat_id),
                )
                cur.execute(
                    """
                    INSERT INTO loans(user_id,chat_id,debt)
                    VALUES(%s,%s,%s)
                    ON CONFLICT (user_id,chat_id) DO UPDATE SET
                      debt=EXCLUDED.debt
                    """,
                    (user_id, chat_id, debt),
                )
            con.commit()
        logger.info("take_loan: chat=%s user=%s debt=%s", chat_id, user_id, debt)
        return Loan(user_id=user_id, chat_id=chat_id, debt=debt)

    def get_debt(self, *, user_id: int, chat_id: int) -> int:
        with self._connect() as con:
            with con.cursor() as cur:
                return self._debt(cur, user_id=user_id, chat_id=chat_id)

    # --- chat state ---
    @staticmethod
    def _claim_day(cur, *, chat_id: int, day: str) -> bool:
        row = cur.execute(
            """
            INSERT INTO chat_state(chat_id,last_dod_day)
            VALUES(%s,%s)
            ON CONFLICT (chat_id) DO UPDATE SET
              last_dod_day=EXCLUDED.last_dod_day
            WHERE chat_state.last_dod_day < EXCLUDED.last_dod_day
            RETURNING chat_id
            """,
            (chat_id, day),
        ).fetchone()
        return row is not None

    def try_claim_dod(self, *, chat_id: int, day: str) -> bool:
        with self._connect() as con:
            with con.cursor() as cur:
                claimed = self._claim_day(cur, chat_id=chat_id, day=day)
            con.commit()
        return claimed

    def elect_dod(
        self, *, chat_id: int, day: str, draw: float, bonus: int, now_ts: int, with_position: bool
    ) -> Optional[DodElection]:
        with self._connect() as con:
            with con.cursor() as cur:
                count = int(cur.execute("SELECT COUNT(*) AS n FROM dicks WHERE chat_id=%s", (chat_id,)).fetchone()["n"])
                if count == 0:
                    return None
                # The claim row lock serializes concurrent elections in the chat.
                if not self._claim_day(cur, chat_id=chat_id, day=day):
                    raise DodAlreadyElected(f"chat {chat_id} already has a winner for {day}")
                winner = cur.execute(
                    """
                    SELECT d.user_id,u.display_name
                    FROM dicks d
                    JOIN users u ON u.internal_id=d.user_id
                    WHERE d.chat_id=%s
                    ORDER BY d.length DESC, d.user_id ASC
                    OFFSET %s LIMIT 1
                    """,
                    (chat_id, draw_index(draw, count)),
                ).fetchone()
                winner_uid = int(winner["user_id"])
                row = cur.execute(
                    "UPDATE dicks SET length=length+%s, updated_at_ts=%s WHERE user_id=%s AND chat_id=%s RETURNING length",
                    (bonus, now_ts, winner_uid, chat_id),
                ).fetchone()
                new_length = int(row["length"])
                pos = self._position(cur, user_id=winner_uid, chat_id=chat_id, length=new_length) if with_position else None
            con.commit()
        logger.info("elect_dod: chat=%s day=%s winner=%s bonus=%s length=%s", chat_id, day, winner_uid, bonus, new_length)
        return DodElection(
            winner_uid=winner_uid,
            winner_name=winner["display_name"],
            bonus=bonus,
            result=GrowthResult(new_length=new_length, pos_in_top=pos),
        )
