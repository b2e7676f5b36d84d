"""
Process-wide runtime.

Builds every component from one configuration and owns the scheduler
lifecycle. Construct one Runtime at startup and pass it around.
"""

import logging
from typing import Optional

from .config.loader import MeterConfig, load_meter_config
from .core.metering import UsageMeter
from .core.pricing import PricingCatalog
from .core.scheduler import ResetScheduler
from .core.token_counter import UsageEstimator
from .storage.repository import BalanceLedger, ResetStateStore, initialize_schema

logger = logging.getLogger(__name__)


class Runtime:
    """Wires configuration, storage, metering and scheduling together."""

    def __init__(
        self,
        config: Optional[MeterConfig] = None,
        clock=None,
        estimator: Optional[UsageEstimator] = None,
    ):
        """Initialize the runtime.

        Args:
            config: Metering configuration (defaults to the environment)
            clock: Clock for the reset scheduler (defaults to wall time)
            estimator: Token estimator (defaults to the GPT-4 tokenizer)
        """
        self.config = config or load_meter_config()
        initialize_schema(self.config.db_path)

        self.ledger = BalanceLedger(self.config.db_path, self.config.init_balance)
        self.reset_state = ResetStateStore(self.config.db_path)
        self.catalog = PricingCatalog(
            self.config.db_path,
            default_input_price=self.config.default_input_price,
            default_output_price=self.config.default_output_price,
        )
        self.meter = UsageMeter(
            self.catalog, self.ledger, self.config.inlet_costs, estimator
        )
        self.scheduler = ResetScheduler(
            self.config, self.ledger, self.reset_state, clock=clock
        )
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def ensure_initialized(self) -> None:
        """Start background work once; later calls are no-ops."""
        if self._initialized:
            return
        self._initialized = True

        try:
            self.scheduler.initialize()
        except Exception:
            logger.exception("Failed to initialize scheduler")

    def shutdown(self) -> None:
        """Stop background work; ``ensure_initialized()`` may run again."""
        self.scheduler.stop()
        self._initialized = False
