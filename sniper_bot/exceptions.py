"""
Custom exception classes for the sniper bot.

Maps the failure taxonomy of a position lifecycle onto typed exceptions:
transient network errors are retried, definitive rejects abort the entry,
a migrated pool redirects the sell, and state errors are never swallowed.
"""

class BotException(Exception):
    """Base exception for all bot-related errors."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self):
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class NetworkException(BotException):
    """Raised when network/RPC operations fail (transient)."""
    pass


class RelayException(BotException):
    """Raised when a bundle relay refuses a submission."""
    pass


class RelayRateLimited(RelayException):
    """Relay answered with a rate-limit or auth-denial signal."""
    pass


class RelayRejected(RelayException):
    """Relay rejected the bundle (simulation / validation failure)."""
    pass


class ValidationException(BotException):
    """Raised when a candidate is definitively rejected."""
    pass


class SwapException(BotException):
    """Raised when a swap attempt fails."""
    pass


class PoolMigratedException(SwapException):
    """The venue reports the curve is completed; trading moved to the migrated pool."""
    pass


class SellExhaustedException(SwapException):
    """Every sell tier ran out of attempts."""
    pass


class ConfigurationException(BotException):
    """Raised when configuration is invalid."""
    pass


class WalletException(BotException):
    """Raised when wallet operations fail."""
    pass


class StateException(BotException):
    """Raised on a position-lifecycle invariant violation. Never swallow."""
    pass
