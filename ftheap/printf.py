"""A small printf-style formatter with the conversions c, s, p, d, i, u, x and X."""

from __future__ import annotations

import operator
import sys
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Iterator, Optional, TextIO

from .numfmt import atoi, itoa, itoa_signed, itoa_unsigned

_U32_MASK = (1 << 32) - 1
_U64_MASK = (1 << 64) - 1


class CharClass(IntEnum):
    """Role of a character inside a conversion directive."""

    OTHER = 0
    TEXT = 1
    NUMBER = 2
    DIGIT = 4
    FLAG = 5


_TEXT_CONVERSIONS = frozenset("cs")
_NUMBER_CONVERSIONS = frozenset("piuxXdl")
_FLAGS = frozenset("-+ #0")
_DIGITS = frozenset("0123456789")


def classify(char: str) -> CharClass:
    """Classify one character; flags win over digits, so '0' is a flag."""
    if char in _TEXT_CONVERSIONS:
        return CharClass.TEXT
    if char in _NUMBER_CONVERSIONS:
        return CharClass.NUMBER
    if char in _FLAGS:
        return CharClass.FLAG
    if char in _DIGITS:
        return CharClass.DIGIT
    return CharClass.OTHER


@dataclass(frozen=True)
class FormatSpec:
    """A parsed conversion directive; widths are -1 when absent."""

    flags: str = ""
    min_width: int = -1
    precision: int = -1
    conversion: str = ""
    char_class: CharClass = CharClass.OTHER
    large: bool = False


def _at(text: str, index: int) -> str:
    return text[index] if index < len(text) else ""


def _parse_number(command: str, index: int) -> tuple[int, int]:
    end = index
    while classify(_at(command, end)) is CharClass.DIGIT:
        end += 1
    if end == index:
        return -1, index
    return atoi(command[index:end]), end


def parse_spec(command: str) -> FormatSpec:
    """Parse a directive such as ``%05d`` or ``%lx``."""
    if not command.startswith("%"):
        raise ValueError(f"not a conversion directive: {command!r}")
    index = 1
    while classify(_at(command, index)) is CharClass.FLAG:
        index += 1
    flags = command[1:index]
    min_width, index = _parse_number(command, index)
    precision = -1
    if _at(command, index) == ".":
        precision, index = _parse_number(command, index + 1)
    large = False
    if _at(command, index) == "l":
        large = True
        index += 1
    char = _at(command, index)
    char_class = classify(char)
    conversion = char if char_class in (CharClass.TEXT, CharClass.NUMBER) else ""
    return FormatSpec(flags, min_width, precision, conversion, char_class, large)


def apply_min_width(text: str, filler: str, right_align: bool, width: int) -> str:
    """Pad ``text`` with ``filler`` up to ``width`` characters.

    The left-aligned form keeps all but the last character of ``text``.
    """
    if len(filler) != 1:
        raise ValueError("filler must be a single character")
    if len(text) >= width:
        return text
    if right_align:
        return filler * (width - len(text)) + text
    return text[:-1] if text else filler * width


def split_format(fmt: str) -> Iterator[str]:
    """Yield the literal runs and directives of ``fmt`` in order.

    A directive takes at most one flag, its digits and up to two
    conversion characters.
    """
    pos = 0
    while pos < len(fmt):
        if fmt[pos] != "%":
            end = fmt.find("%", pos)
            if end < 0:
                end = len(fmt)
            yield fmt[pos:end]
            pos = end
            continue
        cursor = pos + 1
        if _at(fmt, cursor) == "%":
            yield fmt[pos : pos + 2]
            pos += 2
            continue
        if classify(_at(fmt, cursor)) is CharClass.FLAG:
            cursor += 1
        while classify(_at(fmt, cursor)) is CharClass.DIGIT:
            cursor += 1
        if _at(fmt, cursor) == ".":
            cursor += 1
        while classify(_at(fmt, cursor)) is CharClass.DIGIT:
            cursor += 1
        for _ in range(2):
            if classify(_at(fmt, cursor)) not in (CharClass.TEXT, CharClass.NUMBER):
                break
            cursor += 1
        yield fmt[pos:cursor]
        pos = cursor


def _next_arg(args: Iterator[Any]) -> Any:
    try:
        return next(args)
    except StopIteration:
        raise TypeError("not enough arguments for format string") from None


def _int_arg(args: Iterator[Any]) -> int:
    return operator.index(_next_arg(args))


def _convert_text(spec: FormatSpec, args: Iterator[Any]) -> Optional[str]:
    if spec.conversion == "c":
        value = _next_arg(args)
        code = ord(value) if isinstance(value, str) and len(value) == 1 else operator.index(value)
        return chr(code & 0xFF)
    if spec.conversion == "s":
        value = _next_arg(args)
        if value is None:
            return "(null)"
        if not isinstance(value, str):
            raise TypeError(f"%s expects a string, got {type(value).__name__}")
        return value.split("\0", 1)[0]
    return None


def _convert_number(spec: FormatSpec, args: Iterator[Any]) -> Optional[str]:
    conversion = spec.conversion
    if conversion in ("d", "i"):
        value = _int_arg(args)
        return itoa_signed(value, 10) if spec.large else itoa(value)
    if conversion == "u":
        return itoa_unsigned(_int_arg(args) & _U32_MASK, 10)
    if conversion in ("x", "X"):
        mask = _U64_MASK if spec.large else _U32_MASK
        text = itoa_unsigned(_int_arg(args) & mask, 16)
        return text.upper() if conversion == "X" else text
    if conversion == "p":
        return itoa_unsigned(_int_arg(args), 16)
    return None


def _render(part: str, args: Iterator[Any]) -> str:
    if not part.startswith("%"):
        return part
    if part.startswith("%%"):
        return "%"
    spec = parse_spec(part)
    if spec.char_class is CharClass.TEXT:
        text = _convert_text(spec, args)
    elif spec.char_class is CharClass.NUMBER:
        text = _convert_number(spec, args)
    else:
        text = None
    if spec.min_width > 0:
        filler = "0" if "0" in spec.flags else " "
        text = apply_min_width(text or "", filler, True, spec.min_width)
    if text is None:
        raise ValueError(f"unsupported conversion {part!r}")
    if spec.conversion == "p":
        text = "0x" + text
    return text


def format_printf(fmt: str, *args: Any) -> str:
    """Format ``args`` according to ``fmt`` and return the text."""
    fmt = fmt.split("\0", 1)[0]
    remaining = iter(args)
    return "".join(_render(part, remaining) for part in split_format(fmt))


def printf(fmt: str, *args: Any, file: Optional[TextIO] = None) -> int:
    """Write the formatted text to ``file`` (stdout by default); return its length."""
    text = format_printf(fmt, *args)
    if not text:
        return 0
    stream = sys.stdout if file is None else file
    stream.write(text)
    return len(text)