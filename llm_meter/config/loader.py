"""
Configuration management and loading.

Resolves environment settings once at startup and loads the per-model
inlet-cost table.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from ..storage.db import MAX_BALANCE


@dataclass(frozen=True)
class InletCostTable:
    """Provider-side credits assessed before the response is known."""
    models: Dict[str, Decimal] = field(default_factory=dict)
    default: Decimal = Decimal("0")

    def __post_init__(self):
        """Validate credit amounts are non-negative."""
        if self.default < 0:
            raise ValueError("default inlet cost must be >= 0")
        for model_id, amount in self.models.items():
            if amount < 0:
                raise ValueError(f"inlet cost for {model_id} must be >= 0")

    def cost_for(self, model_id: str) -> Decimal:
        """Get the inlet credit for a model, using the default if not listed."""
        return self.models.get(model_id, self.default)


@dataclass(frozen=True)
class MeterConfig:
    """Complete metering configuration."""
    db_path: str = "llm_meter.db"
    default_input_price: Optional[Decimal] = None
    default_output_price: Optional[Decimal] = None
    init_balance: Decimal = Decimal("0")
    reset_day: int = 1
    inlet_costs: InletCostTable = field(default_factory=InletCostTable)
    log_level: str = "INFO"

    @property
    def auto_reset_enabled(self) -> bool:
        """Auto-reset runs only for a positive reset day."""
        return self.reset_day > 0

    @property
    def configured_reset_day(self) -> int:
        """Reset day clamped to a valid day of month."""
        return min(max(self.reset_day, 1), 31)


def _parse_price(raw: Optional[str]) -> Optional[Decimal]:
    """Parse a default price; blank, non-numeric or negative values give None."""
    if raw is None or not raw.strip():
        return None
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


def load_meter_config(environ: Optional[Mapping[str, str]] = None) -> MeterConfig:
    """Build the metering configuration from environment-style settings.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``)

    Returns:
        Validated MeterConfig object

    Raises:
        ValueError: If INIT_BALANCE or BALANCE_RESET_DAY is malformed, or
            INIT_BALANCE exceeds the maximum balance
        FileNotFoundError: If LLM_METER_INLET_COSTS names a missing file
    """
    env = os.environ if environ is None else environ

    raw_init = env.get("INIT_BALANCE", "0").strip() or "0"
    try:
        init_balance = Decimal(raw_init)
    except InvalidOperation:
        raise ValueError(f"INIT_BALANCE must be a number, got {raw_init!r}")
    if not init_balance.is_finite():
        raise ValueError(f"INIT_BALANCE must be a number, got {raw_init!r}")
    if init_balance > MAX_BALANCE:
        raise ValueError(f"INIT_BALANCE must not exceed {MAX_BALANCE}, got {raw_init!r}")

    raw_day = env.get("BALANCE_RESET_DAY", "1").strip() or "1"
    try:
        reset_day = int(raw_day)
    except ValueError:
        raise ValueError(f"BALANCE_RESET_DAY must be an integer, got {raw_day!r}")

    inlet_path = env.get("LLM_METER_INLET_COSTS")
    inlet_costs = load_inlet_costs(inlet_path) if inlet_path else InletCostTable()

    return MeterConfig(
        db_path=env.get("LLM_METER_DB", "llm_meter.db"),
        default_input_price=_parse_price(env.get("DEFAULT_MODEL_INPUT_PRICE")),
        default_output_price=_parse_price(env.get("DEFAULT_MODEL_OUTPUT_PRICE")),
        init_balance=init_balance,
        reset_day=reset_day,
        inlet_costs=inlet_costs,
        log_level=env.get("LLM_METER_LOG_LEVEL", "INFO").upper(),
    )


def load_inlet_costs(path: str) -> InletCostTable:
    """Load and validate the inlet-cost table from a YAML file.

    Args:
        path: Path to YAML file with optional ``default`` and ``models`` keys

    Returns:
        Validated InletCostTable

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the table is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Inlet cost file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in inlet cost file {path}: {e}")

    if not raw_config:
        return InletCostTable()
    if not isinstance(raw_config, dict):
        raise ValueError("Inlet cost file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - {'default', 'models'}
    if unknown_keys:
        raise ValueError(f"Unknown inlet cost keys: {unknown_keys}")

    default = _parse_amount(raw_config.get('default', 0), "default")

    models_data = raw_config.get('models') or {}
    if not isinstance(models_data, dict):
        raise ValueError("'models' must be a dictionary")

    models = {
        str(model_id): _parse_amount(amount, f"models.{model_id}")
        for model_id, amount in models_data.items()
    }
    return InletCostTable(models=models, default=default)


def _parse_amount(value, path: str) -> Decimal:
    """Parse a non-negative credit amount from YAML."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not amount.is_finite():
        raise ValueError(f"'{path}' must be a number")
    if amount < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return amount
