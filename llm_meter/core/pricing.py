"""
Pricing calculations and rate management.

Resolves model prices and converts token usage into charges.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .errors import PriceNotFoundError
from .token_counter import TokenSource, TokenUsage
from ..storage.repository import fetch_model_price

logger = logging.getLogger(__name__)

PER_TOKEN_PRICING = Decimal("-1")  # per_message_price sentinel
ONE_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class PriceRecord:
    """Price of a model.

    A non-negative ``per_message_price`` is a fixed charge per completed
    request and overrides per-token pricing.
    """
    model_id: str
    display_name: str
    input_price_per_million: Decimal
    output_price_per_million: Decimal
    per_message_price: Decimal = PER_TOKEN_PRICING

    @property
    def is_fixed(self) -> bool:
        return self.per_message_price >= 0


@dataclass(frozen=True)
class Charge:
    """Monetary outcome of one usage event."""
    input_tokens: int
    output_tokens: int
    token_source: TokenSource
    total_cost: Decimal
    inlet_cost: Decimal
    net_cost: Decimal


class PricingCatalog:
    """Looks up stored model prices, falling back to configured defaults."""

    def __init__(
        self,
        db_path: str = "llm_meter.db",
        default_input_price: Optional[Decimal] = None,
        default_output_price: Optional[Decimal] = None,
    ):
        self.db_path = db_path
        self.default_input_price = default_input_price
        self.default_output_price = default_output_price

    def resolve(self, model_id: str) -> PriceRecord:
        """Get pricing for a specific model.

        Args:
            model_id: Model identifier

        Returns:
            The stored PriceRecord, or one synthesized from the defaults

        Raises:
            PriceNotFoundError: If the stored price is not finite, or the
                model has no stored price and a default price is missing or
                invalid
        """
        row = fetch_model_price(model_id, self.db_path)
        if row is not None:
            prices = (row["input_price"], row["output_price"], row["per_msg_price"])
            if not all(price.is_finite() for price in prices):
                logger.error("Stored price for %s is not a finite number", model_id)
                raise PriceNotFoundError(model_id)
            return PriceRecord(
                model_id=row["id"],
                display_name=row["name"],
                input_price_per_million=row["input_price"],
                output_price_per_million=row["output_price"],
                per_message_price=row["per_msg_price"],
            )

        if not _usable(self.default_input_price) or not _usable(self.default_output_price):
            raise PriceNotFoundError(model_id)

        logger.debug("No stored price for %s, using configured defaults", model_id)
        return PriceRecord(
            model_id=model_id,
            display_name=model_id,
            input_price_per_million=self.default_input_price,
            output_price_per_million=self.default_output_price,
        )


def _usable(price: Optional[Decimal]) -> bool:
    return price is not None and price.is_finite() and price >= 0


def calculate_charge(
    price: PriceRecord, usage: TokenUsage, inlet_cost: Decimal = Decimal("0")
) -> Charge:
    """Calculate the charge for one completed exchange.

    Rules, in order:
    1. No output tokens - nothing is charged
    2. Fixed pricing - the per-message price, whatever the token counts
    3. Per-token pricing - input and output priced per million tokens

    The inlet credit is subtracted afterwards; the resulting net cost may be
    negative and is passed on unmodified.

    Args:
        price: Price record of the model
        usage: Token counts of the exchange
        inlet_cost: Credit already assessed for this model

    Returns:
        Charge with gross and net cost
    """
    if usage.output_tokens == 0:
        total_cost = Decimal("0")
        logger.info("No charge for zero output tokens")
    elif price.is_fixed:
        total_cost = price.per_message_price
        logger.info("Using fixed pricing: %s per message", price.per_message_price)
    else:
        input_cost = (Decimal(usage.input_tokens) / ONE_MILLION) * price.input_price_per_million
        output_cost = (Decimal(usage.output_tokens) / ONE_MILLION) * price.output_price_per_million
        total_cost = input_cost + output_cost

    return Charge(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        token_source=usage.source,
        total_cost=total_cost,
        inlet_cost=inlet_cost,
        net_cost=total_cost - inlet_cost,
    )
