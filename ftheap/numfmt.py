"""Integer parsing and integer-to-text conversion with fixed-width wrapping."""

from __future__ import annotations

import operator

_WHITESPACE = " \t\n\v\f\r"
_DECIMAL = frozenset("0123456789")
_SYMBOLS = "0123456789abcdefghijklmnopqrstuvwxyz"
_U32_MASK = (1 << 32) - 1
_U64_MASK = (1 << 64) - 1


def _to_signed(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def _check_base(base: int) -> None:
    if not 2 <= base <= len(_SYMBOLS):
        raise ValueError(f"base must be between 2 and {len(_SYMBOLS)}, got {base}")


def _digits(magnitude: int, base: int) -> str:
    if magnitude == 0:
        return "0"
    out = []
    while magnitude:
        magnitude, digit = divmod(magnitude, base)
        out.append(_SYMBOLS[digit])
    return "".join(reversed(out))


def atoi(text: str) -> int:
    """Parse a leading decimal integer, wrapping to a signed 32-bit value.

    Leading whitespace and one sign are accepted; parsing stops at the first
    non-digit, and text without digits gives 0.
    """
    body = text.lstrip(_WHITESPACE)
    negative = False
    if body[:1] in ("-", "+"):
        negative = body[0] == "-"
        body = body[1:]
    value = 0
    for char in body:
        if char not in _DECIMAL:
            break
        value = (value * 10 + ord(char) - ord("0")) & _U32_MASK
    if negative:
        value = -value
    return _to_signed(value, 32)


def itoa(number: int) -> str:
    """Decimal text of ``number`` taken as a signed 32-bit value."""
    return str(_to_signed(operator.index(number), 32))


def itoa_signed(number: int, base: int) -> str:
    """Text of a signed 64-bit value in ``base``.

    Only base 10 carries a minus sign; other bases show the magnitude.
    """
    _check_base(base)
    value = _to_signed(operator.index(number), 64)
    text = _digits(abs(value), base)
    if value < 0 and base == 10:
        return "-" + text
    return text


def itoa_unsigned(number: int, base: int) -> str:
    """Text of an unsigned 64-bit value in ``base``.

    In base 10 a value with the top bit set is preceded by a minus sign.
    """
    _check_base(base)
    value = operator.index(number) & _U64_MASK
    text = _digits(value, base)
    if value >> 63 and base == 10:
        return "-" + text
    return text