"""Error taxonomy shared by the codec, allocator, registry and service layers.

Routes translate these into HTTP status codes; nothing below the HTTP layer
knows about status codes.
"""

__all__ = [
    "AliasTakenError",
    "AllocatorUnavailableError",
    "CodeAlreadyExistsError",
    "ConflictError",
    "CounterStoreUnavailableError",
    "InvalidCharacterError",
    "InvalidInputError",
    "NotAuthorizedError",
    "RangeExhaustedError",
    "ShortenerError",
    "UrlNotFoundError",
]


class ShortenerError(Exception):
    """Base class for all domain errors."""


class InvalidInputError(ShortenerError, ValueError):
    """Malformed target URL or custom code. Raised before any side effect."""


class InvalidCharacterError(InvalidInputError):
    """A string handed to the codec contains a symbol outside its alphabet."""

    def __init__(self, char: str) -> None:
        super().__init__(f"Invalid character in short code: {char!r}")
        self.char = char


class ConflictError(ShortenerError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class CodeAlreadyExistsError(ConflictError):
    def __init__(self, code: str) -> None:
        super().__init__(code, f"Short code '{code}' already exists")


class AliasTakenError(ConflictError):
    def __init__(self, code: str) -> None:
        super().__init__(code, f"Custom code '{code}' is already taken")


class UrlNotFoundError(ShortenerError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Short URL not found: {code}")
        self.code = code


class NotAuthorizedError(ShortenerError):
    """Ownership mismatch on a mutation."""


class AllocatorUnavailableError(ShortenerError):
    """The instance cannot mint codes right now. Redirects are unaffected."""


class CounterStoreUnavailableError(AllocatorUnavailableError):
    """The global counter store could not hand out a range."""


class RangeExhaustedError(AllocatorUnavailableError):
    """The active range is used up and no replacement range could be obtained."""
