"""Exception types raised by the scraping engine."""


class MarketScanError(Exception):
    """Base class for engine errors."""


class ListingValidationError(MarketScanError):
    """A scraped record failed schema or plausibility checks."""

    def __init__(self, listing_id: str | None, errors: list[str]):
        self.listing_id = listing_id
        self.errors = errors
        super().__init__(f"Listing {listing_id or '?'} invalid: {'; '.join(errors)}")


class ExtractionError(MarketScanError):
    """A selector yielded no data or the wrong data."""

    def __init__(self, data_type: str, message: str, selector: str | None = None):
        self.data_type = data_type
        self.selector = selector
        super().__init__(message)


class NetworkError(MarketScanError):
    """The target site could not be reached. Retryable at job level."""


class ExtractionTimeout(NetworkError):
    """A page did not load within the allowed time."""


class BlockedError(NetworkError):
    """The target site refused the request (rate limit or bot wall)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ExtractionUnavailableError(MarketScanError):
    """No extraction session is active. Retryable at job level."""


class SessionBusyError(MarketScanError):
    """An extraction session is already active or starting."""


class PersistenceError(MarketScanError):
    """Listing storage is unavailable for a whole batch."""


class InvalidJobTypeError(MarketScanError, ValueError):
    """Job type is not one of the known job types."""


class InvalidJobStateError(MarketScanError):
    """Requested job transition is not allowed from the current status."""


class JobNotFoundError(MarketScanError, KeyError):
    """No job with the given id is known to the queue."""


class JobCancelledError(MarketScanError):
    """Raised at a checkpoint once cancellation of the running job was requested."""


class SelectorSyntaxError(MarketScanError, ValueError):
    """A selector string could not be parsed."""
