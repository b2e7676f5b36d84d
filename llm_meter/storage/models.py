"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class UsageRecord:
    """Immutable ledger entry for one committed charge.

    Append-only rows that form an auditable history of balance debits.
    Once written, these records must never be modified or deleted.
    """
    user_id: str
    user_name: str
    model_id: str
    input_tokens: int
    output_tokens: int
    cost: Decimal
    balance_after: Decimal
    created_at: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class UserAccount:
    """Snapshot of a user's spendable balance and reset point."""
    id: str
    email: str
    name: str
    role: str
    balance: Decimal
    default_balance: Decimal
    deleted: bool = False
    created_at: Optional[datetime] = None
