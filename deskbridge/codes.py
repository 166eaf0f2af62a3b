from __future__ import annotations

import random
import re

from deskbridge.errors import InvalidSessionCode


# No 0/O and no 1/I: codes are read aloud and typed by hand.
SAFE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

MIN_CODE_LENGTH = 6
MAX_CODE_LENGTH = 8

_CODE_RE = re.compile(rf"^[{SAFE_ALPHABET}]{{{MIN_CODE_LENGTH},{MAX_CODE_LENGTH}}}$")

_rng = random.SystemRandom()


def generate_code(length: int = MIN_CODE_LENGTH, *, rng: random.Random | None = None) -> str:
    if not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
        raise ValueError(f"code length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}")
    pick = rng or _rng
    return "".join(pick.choice(SAFE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


def is_valid_code(code: str) -> bool:
    return bool(_CODE_RE.match(normalize_code(code)))


def require_valid_code(code: str) -> str:
    """Return the normalized code or raise `InvalidSessionCode`."""

    norm = normalize_code(code)
    if not _CODE_RE.match(norm):
        raise InvalidSessionCode(f"Invalid session code: {code!r}")
    return norm
