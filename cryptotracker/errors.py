"""Error taxonomy for the portfolio pipeline.

Only ``ValidationError`` and ``NotFoundError`` are meant to reach callers of
the ledger. The rest are internal signals that the services catch and turn
into a fallback value.
"""


class CryptoTrackerError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(CryptoTrackerError, ValueError):
    """Transaction input is malformed (non-positive amount/price, bad kind)."""


class NotFoundError(CryptoTrackerError, LookupError):
    """A record addressed by id does not exist."""


class IntegrityError(CryptoTrackerError):
    """A persisted snapshot failed the required-field/finite/timestamp check."""


class StorageFailure(CryptoTrackerError):
    """The durable key-value store rejected a read or write."""


class PriceUnavailable(CryptoTrackerError):
    """No price could be obtained from the market data provider."""


class RateLimitExceeded(PriceUnavailable):
    """The provider's call budget is spent, or upstream answered 429."""


class NetworkFailure(PriceUnavailable):
    """The provider could not be reached or returned an unusable response."""
