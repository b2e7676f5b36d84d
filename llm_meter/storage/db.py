"""
Database connection management.

Provides SQLite connections and the fixed-point money encoding used by
balance columns.
"""

import sqlite3
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path

# Balances are stored as integer ten-thousandths (DECIMAL(16,4) semantics)
BALANCE_QUANTUM = Decimal("0.0001")
MAX_BALANCE = Decimal("999999.9999")
MAX_BALANCE_UNITS = 9999999999


def get_connection(db_path: str = "llm_meter.db") -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def to_units(amount: Decimal) -> int:
    """Convert a monetary amount to stored balance units, rounding half up."""
    quantized = Decimal(amount).quantize(BALANCE_QUANTUM, rounding=ROUND_HALF_UP)
    return int(quantized / BALANCE_QUANTUM)


def from_units(units: int) -> Decimal:
    """Convert stored balance units back to a four-place Decimal."""
    return (Decimal(units) * BALANCE_QUANTUM).quantize(BALANCE_QUANTUM)
