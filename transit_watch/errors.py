class TransitWatchError(Exception):
    """Base class for engine errors."""


class ProviderError(TransitWatchError):
    """An external call failed or timed out. Retried on the next sweep."""


class TrackingError(ProviderError):
    pass


class AssessmentError(ProviderError):
    pass


class NotificationError(ProviderError):
    pass


class PersistenceError(TransitWatchError):
    """A read or write against the store failed."""


class DataIntegrityError(TransitWatchError):
    """A stored record is missing data the engine depends on."""
