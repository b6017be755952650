"""Exception hierarchy for the stock-summary subsystem."""


class StockSummaryError(Exception):
    """Base exception for all stock-summary errors."""


class SourceUnavailableError(StockSummaryError):
    """Raised when a loan source collection cannot be read."""


class NotFoundError(StockSummaryError):
    """Raised when a requested record does not exist."""


class SnapshotNotFoundError(NotFoundError):
    """Raised when no stock-summary snapshot has been synchronized yet."""


class LoanNotFoundError(NotFoundError):
    """Raised when no loan in the snapshot matches the given id."""


class ValidationError(StockSummaryError):
    """Raised when a request carries an invalid value."""


class InvalidStatusError(ValidationError):
    """Raised when a loan status outside the allowed set is requested."""


class PersistenceError(StockSummaryError):
    """Raised when the snapshot cannot be read from or written to the store."""
