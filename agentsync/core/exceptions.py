"""Exceptions raised for caller errors.

Expected business outcomes (unknown ids, illegal transitions, exhausted
retries, auto-rejected submissions, lost claim races) are reported through
return values and never raised.
"""


class CoordinationError(Exception):
    """Base class for coordination layer errors."""


class PayloadValidationError(CoordinationError, ValueError):
    """A document failed the presence or size checks."""

    def __init__(self, message: str, size: int = 0, limit: int = 0):
        super().__init__(message)
        self.size = size
        self.limit = limit


class WriteConflictError(CoordinationError):
    """A versioned write kept colliding with concurrent writers."""

    def __init__(self, message: str, key: str = "", attempts: int = 0):
        super().__init__(message)
        self.key = key
        self.attempts = attempts
