"""
Utility functions for EmergencyCash.

Token unit conversion, uint256 bounds, hex helpers and time.
"""

import time
from decimal import Decimal, InvalidOperation
from typing import Union

UINT256_MAX = 2 ** 256 - 1


def now_epoch() -> int:
    """Get current Unix timestamp as integer."""
    return int(time.time())


def parse_units(amount: Union[str, int, Decimal], decimals: int) -> int:
    """
    Convert a human decimal amount into integer token units.

    "1.0" at 6 decimals is 1000000. Amounts that need more precision than
    the token has are rejected rather than rounded.
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValueError(f"Not a decimal amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Not a finite amount: {amount!r}")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    return int(scaled)


def format_units(units: int, decimals: int) -> str:
    """Inverse of parse_units, without trailing zeros beyond one decimal."""
    value = Decimal(units).scaleb(-decimals)
    text = format(value.normalize(), 'f')
    if '.' not in text:
        text += '.0'
    return text


def check_uint256(value: int, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{field_name} must be an integer")
    if value < 0 or value > UINT256_MAX:
        raise ValueError(f"{field_name} out of uint256 range")
    return value


def to_0x_hex(data: bytes) -> str:
    """Lowercase hex with 0x prefix."""
    return "0x" + bytes(data).hex()


def from_0x_hex(s: str) -> bytes:
    """Decode hex with or without 0x prefix."""
    if not isinstance(s, str):
        raise ValueError("hex value must be a string")
    s = s.strip()
    if s[:2] in ("0x", "0X"):
        s = s[2:]
    return bytes.fromhex(s)
