"""Password hashing and API key helpers."""

import asyncio

import bcrypt
from nanoid import generate

from shortlink.codegen import ALPHABET

__all__ = ["check_password", "generate_apikey", "hash_password"]

APIKEY_LENGTH = 40


def _hashpw(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


async def hash_password(password: str) -> str:
    """Hash off the event loop; bcrypt is deliberately slow."""
    return await asyncio.to_thread(_hashpw, password)


async def check_password(password: str, hashed: str) -> bool:
    try:
        return await asyncio.to_thread(bcrypt.checkpw, password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def generate_apikey() -> str:
    return generate(ALPHABET, APIKEY_LENGTH)
