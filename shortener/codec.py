"""Base62 codec and short-code validation.

Integers handed out by the range allocator are turned into short codes here,
and user-supplied custom codes and target URLs are checked before anything
is allocated or persisted.

Alphabet Layout
===============
::
    index  0 ........ 9  10 ....... 35  36 ....... 61
    char   0 ........ 9   a ........ z   A ........ Z

Examples
========
::
    encode(0)    -> "0"
    encode(61)   -> "Z"
    encode(62)   -> "10"
    encode(1000) -> "g8"

Key Behaviours
===============
- ``encode(0)`` is the single first alphabet character, never an empty string.
- ``decode`` is the positional inverse and rejects foreign characters.
- Generated codes are exempt from the custom-code minimum length.
- Custom codes are 3-50 characters of ``[A-Za-z0-9_-]`` and may not shadow
  a route of the HTTP API.
"""

import re
from urllib.parse import urlsplit

import validators

from shortener.exceptions import InvalidCharacterError, InvalidInputError

__all__ = [
    "BASE62_ALPHABET",
    "RESERVED_CODES",
    "decode",
    "encode",
    "validate_custom_code",
    "validate_target_url",
]

BASE62_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
_BASE = len(BASE62_ALPHABET)
_DIGIT_VALUES = {char: index for index, char in enumerate(BASE62_ALPHABET)}

CUSTOM_CODE_MIN_LENGTH = 3
CUSTOM_CODE_MAX_LENGTH = 50
_CUSTOM_CODE_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

# Paths served by the API itself; a short code with one of these names could never be reached.
RESERVED_CODES = frozenset({"api", "docs", "health", "metrics", "openapi.json", "redoc"})

_ALLOWED_SCHEMES = ("http", "https")


def encode(number: int) -> str:
    """Encode a non-negative integer to a base62 string.

    Args:
        number: Value to encode (must be non-negative)

    Returns:
        str: Base62 encoded string, most significant digit first

    Example:
        >>> encode(12345)
        '3d7'
    """
    if number < 0:
        raise ValueError("Number must be non-negative")

    if number == 0:
        return BASE62_ALPHABET[0]

    result = []
    while number > 0:
        number, remainder = divmod(number, _BASE)
        result.append(BASE62_ALPHABET[remainder])

    return "".join(reversed(result))


def decode(code: str) -> int:
    """Decode a base62 string back to the integer it encodes.

    Raises:
        InvalidCharacterError: If ``code`` contains a symbol outside the alphabet
        InvalidInputError: If ``code`` is empty
    """
    if not code:
        raise InvalidInputError("Short code must not be empty")

    value = 0
    for char in code:
        digit = _DIGIT_VALUES.get(char)
        if digit is None:
            raise InvalidCharacterError(char)
        value = value * _BASE + digit
    return value


def validate_custom_code(code: str) -> str:
    if not CUSTOM_CODE_MIN_LENGTH <= len(code) <= CUSTOM_CODE_MAX_LENGTH:
        raise InvalidInputError(
            f"Custom code must be between {CUSTOM_CODE_MIN_LENGTH} and {CUSTOM_CODE_MAX_LENGTH} characters"
        )
    if not _CUSTOM_CODE_PATTERN.fullmatch(code):
        raise InvalidInputError("Custom code may only contain letters, digits, '-' and '_'")
    if code.lower() in RESERVED_CODES:
        raise InvalidInputError(f"Custom code '{code}' is reserved")
    return code


def validate_target_url(url: str) -> str:
    if not url or not validators.url(url):
        raise InvalidInputError("Invalid URL provided")
    if urlsplit(url).scheme.lower() not in _ALLOWED_SCHEMES:
        raise InvalidInputError("URL scheme must be http or https")
    return url
