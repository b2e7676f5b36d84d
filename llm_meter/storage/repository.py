"""
Repository pattern for data access.

Handles the balance ledger, price table, and reset state persistence.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .db import MAX_BALANCE, MAX_BALANCE_UNITS, from_units, get_connection, to_units
from .models import UsageRecord, UserAccount
from ..core.errors import BalanceOverflowError, UserNotFoundError

logger = logging.getLogger(__name__)

LAST_RESET_KEY = "last_balance_reset"

_USER_COLUMNS = "id, email, name, role, balance, default_balance, deleted, created_at"
_ACTIVE = "(deleted = 0 OR deleted IS NULL)"


def initialize_schema(db_path: str = "llm_meter.db") -> None:
    """Create all tables if they don't exist.

    ``user_usage_records`` is an append-only ledger: no UPDATE or DELETE
    operations are ever performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                name TEXT NOT NULL,
                role TEXT NOT NULL,
                balance INTEGER NOT NULL,
                default_balance INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0
            );
            CREATE INDEX IF NOT EXISTS users_email_idx ON users(email);

            CREATE TABLE IF NOT EXISTS model_prices (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                input_price TEXT NOT NULL,
                output_price TEXT NOT NULL,
                per_msg_price TEXT NOT NULL DEFAULT '-1'
            );

            CREATE TABLE IF NOT EXISTS user_usage_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                nickname TEXT NOT NULL,
                model_name TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                cost TEXT NOT NULL,
                balance_after INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS system_settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _check_amount(amount: Decimal, label: str) -> None:
    if not Decimal(amount).is_finite():
        raise ValueError(f"{label} must be a finite number")
    if amount > MAX_BALANCE:
        raise BalanceOverflowError(f"{label} exceeds maximum allowed value")


def _row_to_user(row) -> UserAccount:
    return UserAccount(
        id=row[0],
        email=row[1],
        name=row[2],
        role=row[3],
        balance=from_units(row[4]),
        default_balance=from_units(row[5]),
        deleted=bool(row[6]),
        created_at=datetime.fromisoformat(row[7]) if row[7] else None,
    )


def fetch_model_price(model_id: str, db_path: str = "llm_meter.db") -> Optional[Dict[str, Any]]:
    """Look up a stored price row by exact model identifier.

    Returns:
        Dictionary with id, name, input_price, output_price and per_msg_price
        (prices as Decimal), or None if the model has no stored price
    """
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT id, name, input_price, output_price, per_msg_price "
            "FROM model_prices WHERE id = ?",
            (model_id,),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        return None
    return {
        "id": row[0],
        "name": row[1],
        "input_price": Decimal(row[2]),
        "output_price": Decimal(row[3]),
        "per_msg_price": Decimal(row[4]),
    }


def upsert_model_price(
    model_id: str,
    name: str,
    input_price: Decimal,
    output_price: Decimal,
    per_msg_price: Decimal = Decimal("-1"),
    db_path: str = "llm_meter.db",
) -> None:
    """Insert or replace the stored price for a model.

    Raises:
        ValueError: If a price is not a finite number
    """
    for label, value in (
        ("input price", input_price),
        ("output price", output_price),
        ("per-message price", per_msg_price),
    ):
        if not Decimal(value).is_finite():
            raise ValueError(f"{label} for {model_id} must be a finite number")

    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO model_prices (id, name, input_price, output_price, per_msg_price)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                input_price = excluded.input_price,
                output_price = excluded.output_price,
                per_msg_price = excluded.per_msg_price
        """, (model_id, name, str(input_price), str(output_price), str(per_msg_price)))
        conn.commit()
    finally:
        conn.close()


class BalanceLedger:
    """Transactional access to user balances and the usage ledger.

    Every mutating method runs in its own transaction on its own
    connection, so the ledger can be shared between request handlers and
    the reset scheduler thread.
    """

    def __init__(self, db_path: str = "llm_meter.db", init_balance: Decimal = Decimal("0")):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
            init_balance: Starting balance (and default balance) for new users

        Raises:
            BalanceOverflowError: If ``init_balance`` exceeds the maximum
        """
        _check_amount(init_balance, "Initial balance")
        self.db_path = db_path
        self.init_balance = init_balance

    def charge(
        self,
        user_id: str,
        user_name: str,
        model_id: str,
        input_tokens: int,
        output_tokens: int,
        total_cost: Decimal,
        net_cost: Decimal,
        created_at: Optional[datetime] = None,
    ) -> Decimal:
        """Debit a user's balance and append one usage record atomically.

        The decrement and the upper cap are applied in a single statement,
        so concurrent charges against the same user never lose updates.
        Negative balances are allowed; only the upper bound is enforced.

        Args:
            user_id: Account to debit
            user_name: Display name stored with the usage record
            model_id: Model the charge is for
            input_tokens: Input token count
            output_tokens: Output token count
            total_cost: Gross cost recorded in the ledger
            net_cost: Amount actually subtracted from the balance
            created_at: Record timestamp (defaults to now)

        Returns:
            Balance after the charge

        Raises:
            UserNotFoundError: If no active user matches ``user_id``
            BalanceOverflowError: If the capped balance still exceeds the maximum
        """
        created_at = created_at or datetime.now()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(f"""
                UPDATE users
                SET balance = MIN(balance - ?, ?)
                WHERE id = ? AND {_ACTIVE}
                RETURNING balance
            """, (to_units(net_cost), MAX_BALANCE_UNITS, user_id)).fetchall()

            if not rows:
                raise UserNotFoundError(user_id)

            new_units = rows[0][0]
            if new_units > MAX_BALANCE_UNITS:
                raise BalanceOverflowError("Balance exceeds maximum allowed value")

            conn.execute("""
                INSERT INTO user_usage_records (
                    user_id, nickname, model_name,
                    input_tokens, output_tokens,
                    cost, balance_after, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                user_id,
                user_name,
                model_id,
                input_tokens,
                output_tokens,
                str(total_cost),
                new_units,
                created_at.isoformat(),
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            logger.warning("Charge for user %s on %s rolled back", user_id, model_id)
            raise
        finally:
            conn.close()

        new_balance = from_units(new_units)
        logger.debug("Charged user %s %s, balance now %s", user_id, net_cost, new_balance)
        return new_balance

    def reset_one(self, user_id: str) -> Decimal:
        """Set one user's balance back to their default balance.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                UPDATE users SET balance = default_balance
                WHERE id = ?
                RETURNING balance
            """, (user_id,)).fetchall()
            if not rows:
                raise UserNotFoundError(user_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return from_units(rows[0][0])

    def reset_all(self) -> int:
        """Set every non-deleted user's balance to their default balance.

        Does not touch the persisted reset state.

        Returns:
            Number of users reset
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE users SET balance = default_balance WHERE {_ACTIVE}"
            )
            count = cursor.rowcount
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return count

    def set_default_balance(self, user_id: str, default_balance: Decimal) -> Decimal:
        """Update the balance a user is reset to.

        Raises:
            ValueError: If ``default_balance`` is not a finite number
            BalanceOverflowError: If ``default_balance`` exceeds the maximum
            UserNotFoundError: If the user does not exist
        """
        _check_amount(default_balance, "Default balance")
        return self._set_column(user_id, "default_balance", default_balance)

    def set_balance(self, user_id: str, balance: Decimal) -> Decimal:
        """Overwrite a user's current balance.

        Raises:
            BalanceOverflowError: If ``balance`` exceeds the maximum
            UserNotFoundError: If the user does not exist
        """
        _check_amount(balance, "Balance")
        new_balance = self._set_column(user_id, "balance", balance)
        logger.info("Balance for user %s set to %s", user_id, new_balance)
        return new_balance

    def _set_column(self, user_id: str, column: str, amount: Decimal) -> Decimal:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                UPDATE users SET {column} = MIN(?, ?)
                WHERE id = ?
                RETURNING {column}
            """, (to_units(amount), MAX_BALANCE_UNITS, user_id)).fetchall()
            if not rows:
                raise UserNotFoundError(user_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return from_units(rows[0][0])

    def get_or_create_user(
        self, user_id: str, email: str, name: str, role: str = "user"
    ) -> UserAccount:
        """Return a user, creating it with the initial balance if new.

        Existing users get their email and name refreshed; balances are
        left untouched.
        """
        units = to_units(self.init_balance)
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(f"""
                INSERT INTO users (id, email, name, role, balance, default_balance, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET email = excluded.email, name = excluded.name
                RETURNING {_USER_COLUMNS}
            """, (user_id, email, name, role, units, units, datetime.now().isoformat())).fetchall()[0]
            conn.commit()
        finally:
            conn.close()
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        """Fetch a single user, deleted or not."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_user(row) if row else None

    def fetch_users(self, include_deleted: bool = False) -> List[UserAccount]:
        """List users, newest first."""
        query = f"SELECT {_USER_COLUMNS} FROM users"
        if not include_deleted:
            query += f" WHERE {_ACTIVE}"
        query += " ORDER BY created_at DESC"

        conn = get_connection(self.db_path)
        try:
            return [_row_to_user(row) for row in conn.execute(query).fetchall()]
        finally:
            conn.close()

    def delete_user(self, user_id: str) -> None:
        """Soft-delete a user; their usage history is kept.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("UPDATE users SET deleted = 1 WHERE id = ?", (user_id,))
            if cursor.rowcount == 0:
                raise UserNotFoundError(user_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info("User with ID %s marked as deleted", user_id)

    def fetch_usage_records(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[UsageRecord]:
        """Read usage records, newest first.

        Args:
            user_id: Optional filter for a single user
            limit: Maximum number of records to return
        """
        query = """
            SELECT id, user_id, nickname, model_name, input_tokens,
                   output_tokens, cost, balance_after, created_at
            FROM user_usage_records
        """
        params: List[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [
            UsageRecord(
                id=row[0],
                user_id=row[1],
                user_name=row[2],
                model_id=row[3],
                input_tokens=row[4],
                output_tokens=row[5],
                cost=Decimal(row[6]),
                balance_after=from_units(row[7]),
                created_at=datetime.fromisoformat(row[8]),
            )
            for row in rows
        ]


class ResetStateStore:
    """Singleton persisted timestamp of the last completed bulk reset."""

    def __init__(self, db_path: str = "llm_meter.db"):
        self.db_path = db_path

    def get_last_reset(self) -> Optional[datetime]:
        """Return the last bulk reset time, or None if never reset."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM system_settings WHERE key = ?", (LAST_RESET_KEY,)
            ).fetchone()
        finally:
            conn.close()
        return datetime.fromisoformat(row[0]) if row else None

    def set_last_reset(self, when: datetime) -> None:
        """Record ``when`` as the last bulk reset time."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO system_settings (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """, (LAST_RESET_KEY, when.isoformat(), datetime.now().isoformat()))
            conn.commit()
        finally:
            conn.close()
