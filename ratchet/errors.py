# ratchet/errors.py


class RatchetError(Exception):
    """Base class for every failure raised by the execution core."""


class ValidationError(RatchetError):
    """Bad signal, missing symbol filters or a ladder that sizes to zero.
    Raised before any order reaches the exchange."""


class SubmissionError(RatchetError):
    """The exchange rejected a single order (or the leverage change)."""

    def __init__(self, message: str, request=None, code=None):
        super().__init__(message)
        self.request = request
        self.code = code


class NotificationHandlingError(RatchetError):
    """A follow-up call made while reacting to a fill failed.
    Logged by the monitor; never stops it."""


class SubscriptionError(RatchetError):
    """The wallet's private order stream failed or was rejected."""
