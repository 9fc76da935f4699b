"""errors.py

Exception types raised across the kilroy package.
"""


class KilroyError(Exception):
    """Base class for all kilroy errors."""


class InvalidRadiusError(KilroyError, ValueError):
    """Raised when a query radius is negative or not a number."""


class CloudPhotosError(KilroyError):
    """The cloud photo provider failed or returned an unusable response."""


class BackendQueryError(KilroyError):
    """A range query or write against the backend store failed."""
