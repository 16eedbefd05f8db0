"""
Register decoder: raw Modbus words to typed Measurement records.

Reads every register of a table through a caller-supplied async read function,
decodes the returned 16-bit words per the register's declared encoding, and
returns one :class:`~energymeter.src.models.Measurement` per register.  A
register that fails to read or decode gets the sentinel value ``"xxx"`` while
its scale and label are still filled in from the table, so the batch always
contains every requested key.

Also provides the inverse (:func:`encode_value`) used by the write path.

CHANGELOG:
- 2026-10-19: Keep the sign of FLOAT32 -0, tolerate scaling noise on writes,
  decode invalid STRING bytes with replacement characters
- 2026-10-14: Reject non-finite FLOAT32 values instead of reporting "nan"
- 2026-10-08: Add encode_value for holding register writes
- 2026-10-05: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math
import struct
from collections.abc import Awaitable, Callable, Iterable

from energymeter.src.models import INVALID_VALUE, Measurement
from energymeter.src.registers import (
    ENCODINGS,
    FLOAT32,
    INT16,
    INT16LE,
    INT32,
    SCALE,
    STRING,
    UINT16,
    UINT16LE,
    UINT32,
    RegisterDef,
)

logger = logging.getLogger(__name__)

ReadFn = Callable[[int, int], Awaitable[list[int]]]
"""``read(address, count)`` returning ``count`` raw 16-bit words."""

_MIN_WORDS: dict[str, int] = {
    UINT32: 2,
    INT32: 2,
    FLOAT32: 2,
}


class DecodeError(ValueError):
    """Raised when a register response cannot be decoded."""


class RegisterReadError(RuntimeError):
    """Raised by read functions when the device answers with a Modbus error."""


# ---------------------------------------------------------------------------
# Word conversion helpers
# ---------------------------------------------------------------------------


def _to_signed16(raw: int) -> int:
    """Interpret a raw 16-bit value as signed (two's complement)."""
    val = raw & 0xFFFF
    if val >= 0x8000:
        val -= 0x10000
    return val


def _swap_bytes(raw: int) -> int:
    """Swap the two bytes of a 16-bit word (little-endian register)."""
    val = raw & 0xFFFF
    return ((val & 0xFF) << 8) | (val >> 8)


def _combine32(hi: int, lo: int) -> int:
    """Assemble two U16 registers (high word first) into unsigned 32-bit."""
    return ((hi & 0xFFFF) << 16) | (lo & 0xFFFF)


def _format_number(value: float) -> str:
    """Render a float as the shortest decimal literal (no trailing ``.0``)."""
    if value == 0 and math.copysign(1.0, value) < 0:
        return "-0"
    if value.is_integer():
        return str(int(value))
    return repr(value)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_words(encoding: str, words: list[int]) -> str:
    """Decode raw register words into a value string.

    Args:
        encoding: Register encoding (see :data:`~energymeter.src.registers.ENCODINGS`).
        words: Raw 16-bit words as returned by the device.

    Returns:
        A decimal literal (numeric encodings), the decoded text (STRING), or
        :data:`INVALID_VALUE` for an unknown encoding.

    Raises:
        DecodeError: If too few words were returned or the value is not a
            finite number.
    """
    if encoding not in ENCODINGS:
        return INVALID_VALUE

    needed = _MIN_WORDS.get(encoding, 1)
    if len(words) < needed:
        msg = f"expected at least {needed} word(s) for {encoding}, got {len(words)}"
        raise DecodeError(msg)

    if encoding == UINT16:
        return str(words[0] & 0xFFFF)
    if encoding == INT16:
        return str(_to_signed16(words[0]))
    if encoding == UINT16LE:
        return str(_swap_bytes(words[0]))
    if encoding == INT16LE:
        return str(_to_signed16(_swap_bytes(words[0])))
    if encoding == UINT32:
        return str(_combine32(words[0], words[1]))
    if encoding == INT32:
        val = _combine32(words[0], words[1])
        if val >= 0x80000000:
            val -= 0x100000000
        return str(val)
    if encoding == FLOAT32:
        raw = struct.pack(">HH", words[0] & 0xFFFF, words[1] & 0xFFFF)
        value = struct.unpack(">f", raw)[0]
        if not math.isfinite(value):
            msg = f"non-finite FLOAT32 value {value!r}"
            raise DecodeError(msg)
        return _format_number(value)
    if encoding == SCALE:
        exponent = _to_signed16(words[0])
        if exponent >= 0:
            return str(10**exponent)
        return repr(10.0**exponent)
    # STRING
    data = struct.pack(f">{len(words)}H", *(w & 0xFFFF for w in words))
    return data.rstrip(b"\x00").decode("utf-8", errors="replace")


async def read_measurements(
    registers: Iterable[RegisterDef],
    read: ReadFn,
) -> dict[str, Measurement]:
    """Read and decode a register table, one request per register.

    Registers are read strictly in table order.  A failure on one register
    (transport error, Modbus exception response, decode error) only turns
    that register into a sentinel measurement; the batch continues.

    Args:
        registers: Register definitions to read.
        read: Async ``read(address, count)`` returning raw words.

    Returns:
        ``{register_name: Measurement}`` containing every requested key.
    """
    result: dict[str, Measurement] = {}

    for reg in registers:
        value = INVALID_VALUE
        try:
            words = await read(reg.address, reg.word_length)
            value = decode_words(reg.encoding, list(words))
        except Exception as exc:
            logger.warning(
                "Register '%s' (address=%d, count=%d) unreadable, using sentinel: %s",
                reg.name,
                reg.address,
                reg.word_length,
                exc,
            )
        if value == INVALID_VALUE and reg.encoding not in ENCODINGS:
            logger.warning(
                "Register '%s': unsupported encoding '%s'", reg.name, reg.encoding
            )

        result[reg.name] = Measurement(
            value=value,
            scale=str(reg.scale_exponent),
            label=reg.label,
        )

    return result


# ---------------------------------------------------------------------------
# Encoding (write path)
# ---------------------------------------------------------------------------


def _as_int(value: float | int | str) -> int:
    if isinstance(value, str):
        value = float(value)
    if isinstance(value, float):
        # Scaling by 10 ** n leaves float noise such as 7.000000000000001.
        nearest = round(value)
        if not math.isclose(value, nearest, rel_tol=1e-9, abs_tol=1e-9):
            msg = f"value {value!r} is not integral"
            raise ValueError(msg)
        return int(nearest)
    return int(value)


def _check_range(value: int, lo: int, hi: int, encoding: str) -> None:
    if not lo <= value <= hi:
        msg = f"value {value} out of range for {encoding} ({lo}..{hi})"
        raise ValueError(msg)


def encode_value(
    encoding: str,
    value: float | int | str,
    word_length: int | None = None,
) -> list[int]:
    """Encode a value into raw register words, the inverse of :func:`decode_words`.

    Args:
        encoding: Target register encoding.
        value: Numeric value (or text for STRING).
        word_length: Pad STRING values to this many words.

    Returns:
        List of 16-bit words, high word first for 32-bit encodings.

    Raises:
        ValueError: If the value cannot be represented in *encoding*.
    """
    if encoding == UINT16:
        raw = _as_int(value)
        _check_range(raw, 0, 0xFFFF, encoding)
        return [raw]
    if encoding == INT16:
        raw = _as_int(value)
        _check_range(raw, -0x8000, 0x7FFF, encoding)
        return [raw & 0xFFFF]
    if encoding == UINT16LE:
        raw = _as_int(value)
        _check_range(raw, 0, 0xFFFF, encoding)
        return [_swap_bytes(raw)]
    if encoding == INT16LE:
        raw = _as_int(value)
        _check_range(raw, -0x8000, 0x7FFF, encoding)
        return [_swap_bytes(raw & 0xFFFF)]
    if encoding in (UINT32, INT32):
        raw = _as_int(value)
        if encoding == UINT32:
            _check_range(raw, 0, 0xFFFFFFFF, encoding)
        else:
            _check_range(raw, -0x80000000, 0x7FFFFFFF, encoding)
        raw &= 0xFFFFFFFF
        return [raw >> 16, raw & 0xFFFF]
    if encoding == FLOAT32:
        try:
            packed = struct.pack(">f", float(value))
        except OverflowError as exc:
            raise ValueError(f"value {value!r} too large for FLOAT32") from exc
        return list(struct.unpack(">HH", packed))
    if encoding == SCALE:
        number = float(value)
        if number <= 0:
            msg = f"SCALE value must be positive, got {value!r}"
            raise ValueError(msg)
        exponent = round(math.log10(number))
        _check_range(exponent, -0x8000, 0x7FFF, encoding)
        return [exponent & 0xFFFF]
    if encoding == STRING:
        data = str(value).encode("utf-8")
        if len(data) % 2:
            data += b"\x00"
        if word_length is not None:
            if len(data) > word_length * 2:
                msg = f"text needs {len(data) // 2} words, register has {word_length}"
                raise ValueError(msg)
            data = data.ljust(word_length * 2, b"\x00")
        return list(struct.unpack(f">{len(data) // 2}H", data))

    msg = f"unsupported encoding '{encoding}'"
    raise ValueError(msg)
