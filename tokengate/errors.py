from __future__ import annotations


class TokengateError(Exception):
    """Base class for errors raised by tokengate."""


class ConfigurationError(TokengateError, ValueError):
    """Raised at setup when an option fails type or format validation."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"'{field}' {message}")
        self.field = field


class StoreError(TokengateError, RuntimeError):
    """Raised when a bucket store fails to load or save a bucket."""

    def __init__(self, key: str, action: str) -> None:
        super().__init__(f"store failed to {action} bucket for key {key!r}")
        self.key = key
        self.action = action


class InvalidCostError(TokengateError, ValueError):
    """Raised while handling a request when a cost is not a non-negative finite number."""

    def __init__(self, cost: object) -> None:
        super().__init__(f"cost {cost!r} is not a non-negative finite number")
        self.cost = cost
