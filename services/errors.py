class AttributionError(Exception):
    """Base class for attribution engine errors."""


class ConfigurationError(AttributionError):
    """Invalid engine wiring or settings (raised at startup, never per request)."""


class PersistenceError(AttributionError):
    """A write to the backing store failed and was rolled back."""
