"""
Podroom error taxonomy.

Every failure the core raises derives from PodroomError so the API layer
can map it to a response with a single handler.
"""


class PodroomError(Exception):
    """Base class for all podroom errors."""

    status_code = 500


class ValidationError(PodroomError):
    """Raised when a submission or request is malformed. Never enqueued."""

    status_code = 400


class ConfigurationError(PodroomError):
    """Raised when a required credential or setting is missing."""

    status_code = 500


class UpstreamError(PodroomError):
    """Raised when an ASR, LLM or embedding call fails or times out."""

    status_code = 502


class CapacityError(PodroomError):
    """Raised when input exceeds what any chunking strategy can absorb."""

    status_code = 413


class ConsistencyError(PodroomError):
    """Raised when an operation is missing a required companion argument."""

    status_code = 409


class TaskCancelledError(PodroomError):
    """Raised between pipeline stages after a cancel request."""

    status_code = 409
