"""
Usage metering.

Turns a completed exchange into a balance debit: estimate tokens, price
them, net out the inlet credit, and charge the ledger in one transaction.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .errors import MeterError
from .pricing import Charge, PricingCatalog, calculate_charge
from .token_counter import Message, UsageEstimator
from ..config.loader import InletCostTable
from ..storage.repository import BalanceLedger

logger = logging.getLogger(__name__)

UNKNOWN_USER_NAME = "Unknown User"


@dataclass(frozen=True)
class UsageEvent:
    """A completed request to be charged."""
    model_id: str
    messages: List[Message]
    user_id: str
    user_name: str = UNKNOWN_USER_NAME

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "UsageEvent":
        """Build an event from a gateway outlet payload.

        Expected shape: ``{"body": {"model", "messages"}, "user": {"id", "name"}}``.

        Raises:
            ValueError: If a required field is missing
        """
        body = data.get("body") or {}
        user = data.get("user") or {}
        model_id = body.get("model")
        messages = body.get("messages") or []
        user_id = user.get("id")

        if not model_id:
            raise ValueError("body.model is required")
        if not messages:
            raise ValueError("body.messages is required and cannot be empty")
        if not user_id:
            raise ValueError("user.id is required")

        return cls(
            model_id=model_id,
            messages=[Message.from_dict(m) for m in messages],
            user_id=str(user_id),
            user_name=user.get("name") or UNKNOWN_USER_NAME,
        )


@dataclass(frozen=True)
class ChargeOutcome:
    """Result of metering one event, successful or not."""
    success: bool
    charge: Optional[Charge] = None
    new_balance: Optional[Decimal] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def status_code(self) -> int:
        return 200 if self.success else 500

    def to_dict(self) -> Dict[str, Any]:
        """Response payload for the caller."""
        if not self.success:
            return {
                "success": False,
                "error": self.error,
                "error_type": self.error_type,
            }
        return {
            "success": True,
            "input_tokens": self.charge.input_tokens,
            "output_tokens": self.charge.output_tokens,
            "total_cost": float(self.charge.total_cost),
            "new_balance": float(self.new_balance),
            "message": "Request successful",
        }


class UsageMeter:
    """Charges users for completed exchanges."""

    def __init__(
        self,
        catalog: PricingCatalog,
        ledger: BalanceLedger,
        inlet_costs: Optional[InletCostTable] = None,
        estimator: Optional[UsageEstimator] = None,
    ):
        self.catalog = catalog
        self.ledger = ledger
        self.inlet_costs = inlet_costs or InletCostTable()
        self.estimator = estimator or UsageEstimator()

    def charge(self, event: UsageEvent) -> ChargeOutcome:
        """Meter one event, raising on failure.

        Nothing is committed unless the whole charge succeeds.

        Raises:
            PriceNotFoundError: If the model cannot be priced
            TokenizationError: If token counting fails
            UserNotFoundError: If the user does not exist
            BalanceOverflowError: If the balance would exceed the maximum
        """
        price = self.catalog.resolve(event.model_id)
        usage = self.estimator.estimate(event.messages, event.messages[-1])
        inlet_cost = self.inlet_costs.cost_for(event.model_id)
        charge = calculate_charge(price, usage, inlet_cost)

        new_balance = self.ledger.charge(
            user_id=event.user_id,
            user_name=event.user_name,
            model_id=event.model_id,
            input_tokens=charge.input_tokens,
            output_tokens=charge.output_tokens,
            total_cost=charge.total_cost,
            net_cost=charge.net_cost,
        )
        logger.info(
            "Charged %s for %s: %d in / %d out (%s), cost %s, balance %s",
            event.user_id, event.model_id, charge.input_tokens,
            charge.output_tokens, charge.token_source.value,
            charge.total_cost, new_balance,
        )
        return ChargeOutcome(success=True, charge=charge, new_balance=new_balance)

    def process(self, event: UsageEvent) -> ChargeOutcome:
        """Meter one event, converting failures into a structured outcome."""
        try:
            return self.charge(event)
        except MeterError as e:
            logger.error("Outlet error (%s): %s", e.error_type, e)
            return ChargeOutcome(success=False, error=str(e), error_type=e.error_type)
        except Exception as e:
            logger.exception("Outlet error")
            return ChargeOutcome(success=False, error=str(e), error_type=type(e).__name__)
