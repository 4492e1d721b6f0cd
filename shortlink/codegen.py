"""Short address generation.

Addresses are drawn uniformly from a 62-character alphanumeric alphabet with
nanoid's cryptographically secure generator. Generation has no side effects;
collisions are the caller's concern (see ``LinkService._insert_generated``),
which retries with a fresh address up to ``LINK_GENERATION_MAX_RETRIES``.
"""

from nanoid import generate

from shortlink.config import get_settings

__all__ = ["ALPHABET", "generate_address"]

settings = get_settings()

ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


def generate_address(length: int = settings.LINK_LENGTH) -> str:
    assert isinstance(length, int) and length > 0, f"length must be a positive integer, got {length!r}"
    return generate(ALPHABET, length)
