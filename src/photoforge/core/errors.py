"""Exception hierarchy for the photo-enhancement pipeline.

Every failure in the pipeline is scoped to a single job.  The API layer maps
these classes onto HTTP responses:

- :class:`ValidationError` — 400, raised before any paid work starts.
- :class:`InsufficientCredits` — 402, carries the shortfall and balance.
- :class:`GenerationFailed` — 502, carries the last upstream diagnostic.
- :class:`PersistenceError` — 500, surfaced with a generic message only.
"""

from decimal import Decimal


class PhotoforgeError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PhotoforgeError):
    """User-facing validation error.

    The message is intended to be displayed directly to the user.
    """


class ReferenceCountError(ValidationError):
    """The reference list is empty, too long, or not a list."""


class MalformedReference(ValidationError):
    """A reference does not parse as an absolute URL."""


class UnsafeScheme(ValidationError):
    """A reference uses a scheme other than https."""


class PrivateNetworkBlocked(ValidationError):
    """A reference points at loopback, private, link-local or metadata hosts."""


class FileTooLarge(ValidationError):
    """A source image exceeds the configured size limit."""


class UnsupportedContentType(ValidationError):
    """A source URL did not serve an image."""


class InsufficientCredits(PhotoforgeError):
    """The paid part of a request exceeds the user's credit balance.

    Attributes:
        needed: Paid credits the request requires.
        balance: Paid credits currently available.
        shortfall: ``needed - balance``.
    """

    def __init__(self, needed: int, balance: Decimal):
        self.needed = needed
        self.balance = Decimal(balance)
        self.shortfall = Decimal(needed) - self.balance
        super().__init__(
            f"You need {needed} credits but only have {self.balance}. "
            "Purchase a pack or use pay-as-you-go."
        )


class GenerationFailed(PhotoforgeError):
    """An item could not be generated after every retry and fallback."""


class GenerationCancelled(GenerationFailed):
    """The job was cancelled between two items."""


class PersistenceError(PhotoforgeError):
    """The archive could not be stored or the database write failed."""


class JobNotFound(PhotoforgeError):
    """No job exists with the requested id."""


class JobAccessDenied(PhotoforgeError):
    """The job belongs to a different user."""
