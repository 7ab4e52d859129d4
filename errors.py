class EstrelaError(Exception):
    """Base error for the leveling core."""


class ValidationError(EstrelaError, ValueError):
    """Raised when identifiers or numeric input are malformed."""


class NotFoundError(EstrelaError, LookupError):
    """Raised when a ranked lookup has no data for the requested user."""


class StorageError(EstrelaError, RuntimeError):
    """Raised when the storage backend fails to read or write."""


class LeaderboardUnavailable(StorageError):
    """Raised when a ranking cannot be computed from the current storage state."""


class AggregationInconsistency(EstrelaError, AssertionError):
    """Raised when a ledger total no longer matches its server contributions."""
