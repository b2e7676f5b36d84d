"""
Metering failures.

Each error carries the ``error_type`` code reported in structured failure
payloads.
"""


class MeterError(Exception):
    """Base class for failures that abort a metering operation."""
    error_type = "METER_ERROR"


class PriceNotFoundError(MeterError):
    """No stored price and no usable default price for a model."""
    error_type = "PRICE_NOT_FOUND"

    def __init__(self, model_id: str):
        super().__init__(f"Fail to fetch price info of model {model_id}")
        self.model_id = model_id


class UserNotFoundError(MeterError):
    """Charge or reset target does not exist (or is deleted)."""
    error_type = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} does not exist")
        self.user_id = user_id


class BalanceOverflowError(MeterError):
    """A balance would exceed the maximum representable value."""
    error_type = "BALANCE_OVERFLOW"


class TokenizationError(MeterError):
    """Token estimation raised unexpectedly."""
    error_type = "TOKENIZATION_FAILURE"
