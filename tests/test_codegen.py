"""Short address generation tests."""

import pytest

from shortlink.codegen import ALPHABET, generate_address


def test_default_length() -> None:
    assert len(generate_address()) == 6


@pytest.mark.parametrize("length", [1, 4, 12])
def test_custom_length(length: int) -> None:
    assert len(generate_address(length)) == length


def test_only_alphabet_characters() -> None:
    address = generate_address(64)
    assert set(address) <= set(ALPHABET)


def test_alphabet_is_alphanumeric() -> None:
    assert len(ALPHABET) == 62
    assert ALPHABET.isalnum()


def test_many_addresses_are_distinct() -> None:
    addresses = {generate_address(8) for _ in range(1000)}
    assert len(addresses) == 1000


@pytest.mark.parametrize("length", [0, -1])
def test_rejects_non_positive_length(length: int) -> None:
    with pytest.raises(AssertionError):
        generate_address(length)
