"""PIN complexity rules and strength rating for till PINs."""

from __future__ import annotations

import re
import secrets
from enum import Enum
from typing import Optional, Tuple


COMMON_PINS = frozenset(
    # Uniform and straight runs
    [d * 4 for d in "0123456789"]
    + ["1234", "2345", "3456", "4567", "5678", "6789", "9876", "8765", "7654", "6543"]
    + ["5432", "4321", "3210", "0123", "1230", "0987", "9870"]
    # ABAB pairs, apart from 0101 and 1010
    + [
        f"{a}{b}{a}{b}"
        for a in "0123456789"
        for b in "0123456789"
        if a != b and {a, b} != {"0", "1"}
    ]
    # AABB pairs
    + [f"{a}{a}{b}{b}" for a in "123456789" for b in "123456789" if a != b]
    # Birth and recent years
    + [str(year) for year in range(1900, 2026)]
)

_SEQUENCES = (
    "0123", "1234", "2345", "3456", "4567", "5678", "6789",
    "9876", "8765", "7654", "6543", "5432", "4321", "3210",
)

_FOUR_DIGITS = re.compile(r"^\d{4}$")
_REPEATED_DIGIT = re.compile(r"(\d)\1{3}")
_REPEATED_PAIR = re.compile(r"^(\d)(\d)\1\2$")


class PinStrength(str, Enum):
    WEAK = "WEAK"
    MEDIUM = "MEDIUM"
    STRONG = "STRONG"


def is_common_pin(pin: str) -> bool:
    return pin in COMMON_PINS


def has_sequential_digits(pin: str) -> bool:
    return any(seq in pin for seq in _SEQUENCES)


def has_repeated_digits(pin: str) -> bool:
    return bool(_REPEATED_DIGIT.search(pin))


def has_repeated_pairs(pin: str) -> bool:
    return bool(_REPEATED_PAIR.match(pin))


def validate_pin_complexity(pin: str) -> Tuple[bool, Optional[str]]:
    """Return ``(True, None)`` for an acceptable PIN, else ``(False, reason)``."""
    if not isinstance(pin, str) or not _FOUR_DIGITS.match(pin):
        return False, "PIN must be exactly 4 digits"
    if is_common_pin(pin):
        return False, "This PIN is too common and easily guessed"
    if has_sequential_digits(pin):
        return False, "PIN should not contain sequential digits"
    if has_repeated_digits(pin):
        return False, "PIN should not contain repeated digits"
    return True, None


def evaluate_pin_strength(pin: str) -> PinStrength:
    ok, _ = validate_pin_complexity(pin)
    if not ok:
        return PinStrength.WEAK
    if has_repeated_pairs(pin):
        return PinStrength.MEDIUM
    return PinStrength.STRONG


def generate_secure_pin() -> str:
    """Random 4-digit PIN in 1000-9999 rated at least MEDIUM."""
    while True:
        pin = str(1000 + secrets.randbelow(9000))
        if evaluate_pin_strength(pin) is not PinStrength.WEAK:
            return pin
