"""Error taxonomy shared by the heartbeat pipeline and the position engine."""


class TradingError(Exception):
    """Base class for every error raised by the trading core."""


class ValidationError(TradingError):
    """Trader or position parameters violate a configured bound."""


class InvalidArgument(TradingError, ValueError):
    """A risk-math function received a value outside its domain."""


class NotFoundError(TradingError):
    """Unknown trader, position, instrument or reader."""


class CollaboratorTimeout(TradingError):
    """A reader or the decision oracle did not answer in time."""


class CollaboratorError(TradingError):
    """Malformed or error response from the decision oracle or a gateway."""


class ConcurrencyConflict(TradingError):
    """A heartbeat is already running, or a position changed underneath us."""
