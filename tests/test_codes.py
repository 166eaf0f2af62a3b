from __future__ import annotations

import random

import pytest

from deskbridge.codes import SAFE_ALPHABET, generate_code, is_valid_code, normalize_code, require_valid_code
from deskbridge.errors import InvalidSessionCode


def test_generated_codes_use_safe_alphabet_only() -> None:
    rng = random.Random(1234)
    for length in (6, 7, 8):
        for _ in range(200):
            code = generate_code(length, rng=rng)
            assert len(code) == length
            assert not set(code) & {"0", "O", "1", "I"}
            assert set(code) <= set(SAFE_ALPHABET)


def test_default_code_length_is_six() -> None:
    assert len(generate_code()) == 6


def test_generate_code_rejects_out_of_range_length() -> None:
    with pytest.raises(ValueError):
        generate_code(5)
    with pytest.raises(ValueError):
        generate_code(9)


def test_lookup_is_case_insensitive() -> None:
    assert normalize_code("  abc234 ") == "ABC234"
    assert is_valid_code("abc234")
    assert require_valid_code("abc234") == "ABC234"


@pytest.mark.parametrize("code", ["", "ABC23", "ABCDEFGH2", "ABCO23", "ABC-23", "ABCI23"])
def test_invalid_codes_are_rejected(code: str) -> None:
    assert not is_valid_code(code)
    with pytest.raises(InvalidSessionCode):
        require_valid_code(code)
